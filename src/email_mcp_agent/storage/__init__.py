"""File-based storage for account identities and cached message content.

Layout under the files root::

    {root}/{account_id}/metadata.yaml
    {root}/{account_id}/cache/cache_metadata.yaml
    {root}/{account_id}/cache/emails/{content_id}/...
    {root}/{account_id}/cache/attachments/...
    {root}/{account_id}/drafts/draft_{id}.yaml
"""

from .drafts import DraftStore
from .email_cache import EmailContentStore, generate_content_id
from .identity import AccountIdentityStore
from .ledger import CacheLedger, EvictionPlan, plan_eviction

__all__ = [
    "AccountIdentityStore",
    "CacheLedger",
    "DraftStore",
    "EmailContentStore",
    "EvictionPlan",
    "generate_content_id",
    "plan_eviction",
]
