"""Interface of the mail transport collaborator.

The storage and service layers only depend on this protocol; the IMAP/SMTP
implementation lives in `imap_client` and tests substitute fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from email_mcp_agent.models import AttachmentResult, Email, EmailHeader, FetchOptions, Folder, SendOptions


class MailTransport(Protocol):
    """Operations the service needs from the mail servers of one account."""

    async def list_folders(self) -> list[Folder]: ...

    async def fetch_headers(self, options: FetchOptions) -> list[EmailHeader]: ...

    async def fetch_email(self, message_id: str) -> Email: ...

    async def fetch_attachments(
        self,
        message_id: str,
        names: list[str] | None,
        destination: Path,
        max_size: int,
    ) -> list[AttachmentResult]: ...

    async def send_email(self, options: SendOptions) -> None: ...
