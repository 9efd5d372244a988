"""Draft models.

A draft is a saved `SendOptions` plus an id and timestamps. Drafts live under
`{account_root}/drafts/draft_{id}.yaml`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from email_mcp_agent.models.email import SendOptions


class Draft(SendOptions):
    """A composed message saved for later editing or sending."""

    id: str = Field(min_length=1)
    created_at: datetime
    updated_at: datetime | None = None

    def to_send_options(self) -> SendOptions:
        return SendOptions.model_validate(self.model_dump(include=set(SendOptions.model_fields)))


class DraftSummary(BaseModel):
    """Listing view of a draft."""

    id: str
    created_at: datetime
    subject: str = ""
    to: list[str] = Field(default_factory=list)


class DraftSendResult(BaseModel):
    """Outcome for one draft in a bulk send."""

    draft_id: str
    subject: str = ""
    to: list[str] = Field(default_factory=list)
    status: Literal["sent", "failed", "simulated"]
    error: str | None = None


class DraftSendReport(BaseModel):
    """Summary of a bulk send of every saved draft."""

    total_drafts: int = 0
    sent: int = 0
    failed: int = 0
    dry_run: bool = False
    delay_seconds: int = 0
    results: list[DraftSendResult] = Field(default_factory=list)
