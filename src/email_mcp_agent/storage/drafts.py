"""Saved drafts for one account.

Each draft is a YAML document at `{account_root}/drafts/draft_{id}.yaml`. Ids
are `{unix_seconds}_{random_hex}` so a directory listing sorts roughly by
creation time.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pydantic
import structlog

from email_mcp_agent.exceptions import DraftNotFoundError, EmailMcpError, StorageIOError, ValidationError
from email_mcp_agent.models import Draft, DraftSummary, SendOptions
from email_mcp_agent.storage.yaml_io import read_yaml, write_yaml_atomic

logger = structlog.get_logger()


DRAFT_PREFIX = "draft_"
DRAFT_SUFFIX = ".yaml"

_DRAFT_ID = re.compile(r"[A-Za-z0-9_-]+")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class DraftStore:
    """Create, read, update, list and delete drafts under an account root."""

    def __init__(self, account_root: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self.drafts_dir = Path(account_root) / "drafts"
        self._clock = clock or _now_utc

    def path_for(self, draft_id: str) -> Path:
        """Location of a draft file.

        Raises:
            ValidationError: If the id could name a path outside the drafts directory.
        """

        if not draft_id or not _DRAFT_ID.fullmatch(draft_id):
            raise ValidationError(f"invalid draft id: {draft_id!r}")
        return self.drafts_dir / f"{DRAFT_PREFIX}{draft_id}{DRAFT_SUFFIX}"

    def new_id(self) -> str:
        return f"{int(self._clock().timestamp())}_{uuid.uuid4().hex[:8]}"

    def create(self, options: SendOptions) -> Draft:
        draft = Draft(id=self.new_id(), created_at=self._clock(), **options.model_dump())
        self._write(draft)
        logger.info("draft_saved", draft_id=draft.id, subject=draft.subject)
        return draft

    def load(self, draft_id: str) -> Draft:
        """Read a draft.

        Raises:
            DraftNotFoundError: If no draft has this id.
            ValidationError: If the file is malformed.
        """

        path = self.path_for(draft_id)
        try:
            data = read_yaml(path)
        except FileNotFoundError as exc:
            raise DraftNotFoundError(draft_id) from exc

        try:
            return Draft.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"malformed draft {path}: {exc}") from exc

    def update(self, draft_id: str, changes: Mapping[str, Any]) -> Draft:
        """Apply field changes to a draft, keeping its id and `created_at`.

        Only `SendOptions` fields may change; `None` values are ignored.
        """

        unknown = set(changes) - set(SendOptions.model_fields)
        if unknown:
            raise ValidationError(f"cannot update draft fields: {', '.join(sorted(unknown))}")

        current = self.load(draft_id)
        merged = current.model_dump()
        merged.update({k: v for k, v in changes.items() if v is not None})
        merged["updated_at"] = self._clock()
        try:
            draft = Draft.model_validate(merged)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"invalid draft update for {draft_id}: {exc}") from exc

        self._write(draft)
        logger.info("draft_updated", draft_id=draft_id, fields=sorted(changes))
        return draft

    def list_drafts(self) -> list[DraftSummary]:
        """Summaries of every readable draft, oldest first.

        Unreadable files are skipped with a warning.
        """

        if not self.drafts_dir.exists():
            return []
        try:
            files = sorted(self.drafts_dir.glob(f"{DRAFT_PREFIX}*{DRAFT_SUFFIX}"))
        except OSError as exc:
            raise StorageIOError("list", self.drafts_dir, exc) from exc

        summaries = []
        for path in files:
            draft_id = path.name[len(DRAFT_PREFIX) : -len(DRAFT_SUFFIX)]
            try:
                draft = self.load(draft_id)
            except EmailMcpError as exc:
                logger.warning("draft_unreadable", path=str(path), error=str(exc))
                continue
            summaries.append(
                DraftSummary(id=draft.id, created_at=draft.created_at, subject=draft.subject, to=draft.to)
            )
        return sorted(summaries, key=lambda s: (s.created_at, s.id))

    def delete(self, draft_id: str) -> None:
        path = self.path_for(draft_id)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise DraftNotFoundError(draft_id) from exc
        except OSError as exc:
            raise StorageIOError("delete", path, exc) from exc
        logger.info("draft_deleted", draft_id=draft_id)

    def _write(self, draft: Draft) -> None:
        write_yaml_atomic(self.path_for(draft.id), draft.model_dump(mode="json"))
