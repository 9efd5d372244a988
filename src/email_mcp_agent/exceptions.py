"""Custom exceptions for Email MCP Agent."""

from __future__ import annotations

from pathlib import Path


class EmailMcpError(Exception):
    """Base exception for all Email MCP Agent errors."""


class ConfigurationError(EmailMcpError):
    """Exception raised for configuration related errors."""


class AuthenticationError(EmailMcpError):
    """Exception raised for authentication failures."""


class MailTransportError(EmailMcpError):
    """Exception raised when the IMAP/SMTP transport fails."""


class ValidationError(EmailMcpError):
    """Exception raised for malformed records or invalid request parameters."""


class NotFoundError(EmailMcpError):
    """Exception raised when a cache entry, record or account does not exist."""


class AccountNotFoundError(NotFoundError):
    """Exception raised when an account id is not configured."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class DraftNotFoundError(NotFoundError):
    """Exception raised when a draft id has no saved draft."""

    def __init__(self, draft_id: str) -> None:
        super().__init__(f"draft not found: {draft_id}")
        self.draft_id = draft_id


class NotCachedError(NotFoundError):
    """Exception raised when a message is not available in the content cache.

    Callers should fetch the message again from the mail server.
    """

    def __init__(self, message_id: str, reason: str = "email not in cache") -> None:
        super().__init__(f"{reason}: {message_id}. Fetch the email again to re-cache it.")
        self.message_id = message_id


class ExpiredError(NotCachedError):
    """Exception raised when a cached message is older than the expiry window."""

    def __init__(self, message_id: str) -> None:
        super().__init__(message_id, reason="cache entry expired")


class ConflictError(EmailMcpError):
    """Exception raised when a migration target already exists."""


class StorageIOError(EmailMcpError):
    """Exception raised for filesystem failures at the storage boundary."""

    def __init__(self, operation: str, path: Path | str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to {operation} {path}{detail}")
        self.operation = operation
        self.path = Path(path)


class MigrationError(EmailMcpError):
    """Exception raised when a single folder migration fails."""

    def __init__(
        self,
        old_folder: str,
        new_account_id: str,
        cause: BaseException,
        rollback_error: BaseException | None = None,
    ) -> None:
        if rollback_error is not None:
            detail = f"{cause}; rollback failed: {rollback_error}"
        else:
            detail = str(cause)
        super().__init__(f"migration failed for {old_folder} -> {new_account_id}: {detail}")
        self.old_folder = old_folder
        self.new_account_id = new_account_id
        self.cause = cause
        self.rollback_error = rollback_error
