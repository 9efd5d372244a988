"""Mail transport models.

These are the shapes exchanged with the IMAP/SMTP collaborator. Bodies are only
present on `Email`; header listings use `EmailHeader` to keep responses small.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class Attachment(BaseModel):
    """Attachment descriptor (name and size only, never the payload)."""

    filename: str = Field(description="Attachment file name")
    size: int = Field(default=0, ge=0, description="Decoded size in bytes")
    content_type: str | None = Field(default=None, description="MIME content type")
    cache_id: str | None = Field(default=None, description="Ledger id once stored on disk")


class EmailHeader(BaseModel):
    """Email envelope without body content."""

    message_id: str = Field(description="RFC 822 Message-ID")
    folder: str = Field(default="INBOX", description="Mailbox the message was listed from")
    sender: str = Field(default="", description="Raw From header")
    to: list[str] = Field(default_factory=list, description="To addresses")
    cc: list[str] = Field(default_factory=list, description="Cc addresses")
    subject: str = Field(default="", description="Subject header")
    date: datetime | None = Field(default=None, description="Parsed Date header")
    has_attachments: bool = Field(default=False)
    is_unread: bool = Field(default=False)
    size: int | None = Field(default=None, description="RFC 822 size in bytes")


class Email(BaseModel):
    """A full message as returned by the transport."""

    message_id: str = Field(description="RFC 822 Message-ID")
    folder: str = Field(default="INBOX")
    sender: str = Field(default="", description="Raw From header")
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = Field(default="")
    date: datetime | None = Field(default=None)
    body: str = Field(default="", description="Plain text body")
    html_body: str = Field(default="", description="Raw HTML body")
    attachments: list[Attachment] = Field(default_factory=list)
    in_reply_to: str | None = Field(default=None)
    references: list[str] = Field(default_factory=list)


class FetchOptions(BaseModel):
    """Filters for header listing."""

    folder: str = Field(default="INBOX")
    since_date: datetime | None = Field(default=None)
    until_date: datetime | None = Field(default=None)
    sender: str | None = Field(default=None, description="Match on From header")
    subject_contains: str | None = Field(default=None)
    unread_only: bool = Field(default=False)
    limit: int = Field(default=50, gt=0)


class SendOptions(BaseModel):
    """Outgoing message parameters."""

    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = Field(default="")
    body: str = Field(default="")
    html_body: str = Field(default="")
    attachments: list[str] = Field(default_factory=list, description="Paths of files to attach")
    reply_to_message_id: str | None = Field(default=None)
    references: list[str] = Field(default_factory=list)


class Folder(BaseModel):
    """IMAP mailbox summary."""

    name: str
    message_count: int = 0
    unread_count: int = 0


class AttachmentResult(BaseModel):
    """Outcome of storing one attachment on disk."""

    filename: str
    size: int = 0
    content_type: str | None = None
    path: str | None = None
    cache_id: str | None = None
    error: str | None = None
