"""Durable account identity records.

Every account-scoped folder carries `metadata.yaml` naming the account id and
email address it belongs to. The email address is the stable attribute used to
re-associate a folder after its account id is renamed.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pydantic
import structlog

from email_mcp_agent.exceptions import EmailMcpError, NotFoundError, StorageIOError, ValidationError
from email_mcp_agent.models import AccountIdentity
from email_mcp_agent.storage.yaml_io import read_yaml, write_yaml_atomic

logger = structlog.get_logger()


IDENTITY_FILENAME = "metadata.yaml"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AccountIdentityStore:
    """Reads, writes and scans account identity records."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _now_utc

    @staticmethod
    def path_for(folder: Path) -> Path:
        return Path(folder) / IDENTITY_FILENAME

    def write(self, path: Path, account_id: str, email_address: str) -> AccountIdentity:
        """Create or refresh an identity record.

        `created_at` is kept from an existing valid record; `updated_at` is
        always refreshed.
        """

        now = self._clock()
        created_at = now
        try:
            created_at = self.read(path).created_at
        except NotFoundError:
            pass
        except ValidationError as exc:
            logger.warning("account_identity_replaced", path=str(path), error=str(exc))

        identity = AccountIdentity(
            account_id=account_id,
            email_address=email_address,
            created_at=created_at,
            updated_at=now,
        )
        write_yaml_atomic(path, identity.model_dump(mode="json"))
        return identity

    def read(self, path: Path) -> AccountIdentity:
        """Load an identity record.

        Raises:
            NotFoundError: If the record does not exist.
            ValidationError: If the record is malformed.
            StorageIOError: On other read failures.
        """

        try:
            data = read_yaml(path)
        except FileNotFoundError as exc:
            raise NotFoundError(f"account metadata not found: {path}") from exc

        try:
            return AccountIdentity.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"malformed account metadata {path}: {exc}") from exc

    def scan(self, root: Path) -> dict[str, AccountIdentity]:
        """Map folder name to identity for every subdirectory of `root`.

        Folders without a readable record are skipped with a warning. A missing
        root yields an empty mapping.
        """

        root = Path(root)
        if not root.exists():
            return {}

        try:
            children = sorted(p for p in root.iterdir() if p.is_dir())
        except OSError as exc:
            raise StorageIOError("list", root, exc) from exc

        folders: dict[str, AccountIdentity] = {}
        for folder in children:
            try:
                folders[folder.name] = self.read(self.path_for(folder))
            except EmailMcpError as exc:
                logger.warning(
                    "account_folder_without_metadata",
                    folder=folder.name,
                    error=str(exc),
                )
        return folders
