"""YAML record helpers shared by the storage layer."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from email_mcp_agent.exceptions import StorageIOError, ValidationError


def read_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping.

    Raises:
        FileNotFoundError: If the file does not exist (callers map this to
            their own not-found condition).
        StorageIOError: On any other read failure.
        ValidationError: If the document is not valid YAML or not a mapping.
    """

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise StorageIOError("read", path, exc) from exc

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValidationError(f"failed to parse {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"expected a mapping in {path}, got {type(data).__name__}")
    return data


def dump_yaml(data: dict[str, Any]) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def write_yaml_atomic(path: Path, data: dict[str, Any]) -> int:
    """Write a mapping via a temp file and `os.replace`.

    Returns:
        Number of bytes written.
    """

    payload = dump_yaml(data).encode("utf-8")
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(payload)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise StorageIOError("write", path, exc) from exc
    return len(payload)
