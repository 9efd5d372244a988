"""Cache bookkeeping and cached-content models.

Field aliases match the on-disk YAML keys so records written by earlier
versions of the service keep loading.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from email_mcp_agent.models.email import Attachment


class CacheKind(str, Enum):
    """Kind of data a ledger entry points at."""

    CONTENT = "content"
    ATTACHMENT = "attachment"


class CacheEntry(BaseModel):
    """One cached item tracked by the ledger."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="Content-derived key")
    kind: CacheKind = Field(alias="type")
    size: int = Field(alias="size_bytes", ge=0)
    created_at: datetime = Field(alias="cached_at")
    accessed_at: datetime
    location: str = Field(alias="file_path", description="File or directory backing the entry")


class CacheLedgerRecord(BaseModel):
    """Persisted ledger document (`cache/cache_metadata.yaml`)."""

    model_config = ConfigDict(populate_by_name=True)

    # Stored as cache_version, the key earlier releases wrote and still read back.
    version: int = Field(default=1, alias="cache_version")
    total_size: int = Field(default=0, alias="total_size_bytes")
    entries: list[CacheEntry] = Field(default_factory=list)


class CacheStats(BaseModel):
    """Summary of one account's ledger."""

    total_size_bytes: int
    max_size_bytes: int
    entry_count: int
    content_count: int
    attachment_count: int
    expired_count: int = Field(default=0, description="Entries past the ledger age bound awaiting the next sweep")
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    current_time: datetime


class BodyFormat(str, Enum):
    TEXT = "text"
    RAW_HTML = "raw_html"


class BodySource(str, Enum):
    TEXT_BODY = "text_body"
    HTML_CONVERTED = "html_converted"
    HTML_BODY = "html_body"
    NONE = "none"


class CachedEmailMetadata(BaseModel):
    """Envelope and body sizes stored beside the body files of a cached message."""

    message_id: str
    account_id: str
    folder: str = "INBOX"
    sender: str = ""
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    subject: str = ""
    date: datetime | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    cached_at: datetime

    text_body_size: int = 0
    html_body_size: int = 0
    converted_text_size: int = 0


class BodyInfo(BaseModel):
    text_size: int
    html_size: int
    has_text: bool
    has_html: bool
    preview: str


class EmailCacheInfo(BaseModel):
    """Metadata plus preview returned after fetch-and-cache."""

    message_id: str
    sender: str
    to: list[str]
    cc: list[str] = Field(default_factory=list)
    subject: str
    date: datetime | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    body: BodyInfo


class ReadBodyResult(BaseModel):
    """One chunk of a cached body.

    `offset`, `limit`, `total_size` and `remaining` are byte positions in the
    selected representation.
    """

    content: str
    format: BodyFormat
    source: BodySource
    total_size: int
    offset: int
    limit: int
    remaining: int
    is_complete: bool
