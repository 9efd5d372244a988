"""Account identity models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field


class AccountIdentity(BaseModel):
    """Identity record stored at `{root}/{account_id}/metadata.yaml`."""

    account_id: str = Field(min_length=1)
    email_address: str = Field(min_length=1)
    created_at: datetime
    updated_at: datetime


class AccountSummary(BaseModel):
    """Public view of a configured account."""

    id: str
    email: str
    provider: str
    is_default: bool


@dataclass(frozen=True)
class MigrationPlan:
    """A folder rename decided during a single configuration load."""

    old_folder_name: str
    new_account_id: str
    email_address: str
    identity: AccountIdentity
