"""Data models for Email MCP Agent.

This package contains Pydantic models for data validation and serialization.
"""

from email_mcp_agent.models.account import AccountIdentity, AccountSummary, MigrationPlan
from email_mcp_agent.models.cache import (
    BodyFormat,
    BodyInfo,
    BodySource,
    CachedEmailMetadata,
    CacheEntry,
    CacheKind,
    CacheLedgerRecord,
    CacheStats,
    EmailCacheInfo,
    ReadBodyResult,
)
from email_mcp_agent.models.draft import Draft, DraftSendReport, DraftSendResult, DraftSummary
from email_mcp_agent.models.email import (
    Attachment,
    AttachmentResult,
    Email,
    EmailHeader,
    FetchOptions,
    Folder,
    SendOptions,
)

__all__ = [
    "AccountIdentity",
    "AccountSummary",
    "Attachment",
    "AttachmentResult",
    "BodyFormat",
    "BodyInfo",
    "BodySource",
    "CacheEntry",
    "CacheKind",
    "CacheLedgerRecord",
    "CacheStats",
    "CachedEmailMetadata",
    "Draft",
    "DraftSendReport",
    "DraftSendResult",
    "DraftSummary",
    "Email",
    "EmailCacheInfo",
    "EmailHeader",
    "FetchOptions",
    "Folder",
    "MigrationPlan",
    "ReadBodyResult",
    "SendOptions",
]
