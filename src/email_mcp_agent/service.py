"""Account-aware email operations exposed to the tool-dispatch layer.

`AccountRegistry` owns the per-account resources (ledger, content store, draft
store and mail transport) and builds each bundle exactly once. `EmailService`
implements the fetch, cache, read, draft and send operations on top of it.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from email_mcp_agent.config import AccountConfig, MultiAccountConfig, Settings, get_settings
from email_mcp_agent.exceptions import EmailMcpError, ValidationError
from email_mcp_agent.mail.imap_client import ImapSmtpTransport
from email_mcp_agent.mail.transport import MailTransport
from email_mcp_agent.models import (
    AccountSummary,
    AttachmentResult,
    CacheKind,
    CacheStats,
    Draft,
    DraftSendReport,
    DraftSendResult,
    DraftSummary,
    EmailCacheInfo,
    EmailHeader,
    FetchOptions,
    Folder,
    ReadBodyResult,
    SendOptions,
)
from email_mcp_agent.storage import CacheLedger, DraftStore, EmailContentStore

logger = structlog.get_logger()


TransportFactory = Callable[[AccountConfig], MailTransport]

DEFAULT_DRAFT_SEND_DELAY = 5
MIN_DRAFT_SEND_DELAY = 2
MAX_DRAFT_SEND_DELAY = 60


@dataclass
class AccountHandles:
    """Resources owned by one account."""

    account: AccountConfig
    ledger: CacheLedger
    content: EmailContentStore
    drafts: DraftStore
    transport: MailTransport | None = None


class AccountRegistry:
    """Lazily built, memoized per-account handles.

    A registry-wide lock hands out one lock per account id; construction for a
    given id happens under that id's lock so concurrent first access builds a
    single bundle.
    """

    def __init__(
        self,
        config: MultiAccountConfig,
        transport_factory: TransportFactory = ImapSmtpTransport,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self._transport_factory = transport_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._handles: dict[str, AccountHandles] = {}

    def _key_lock(self, account_id: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(account_id, threading.Lock())

    def get(self, account_id: str | None = None) -> AccountHandles:
        """Return the handles for an account (empty id means the default)."""

        account = self.config.get_account(account_id)
        key = account.account_id

        handles = self._handles.get(key)
        if handles is not None:
            return handles

        with self._key_lock(key):
            handles = self._handles.get(key)
            if handles is None:
                ledger = CacheLedger(account.account_root, self.config.cache_max_size, clock=self._clock)
                content = EmailContentStore(account.account_root, ledger, clock=self._clock)
                drafts = DraftStore(account.account_root, clock=self._clock)
                handles = AccountHandles(account=account, ledger=ledger, content=content, drafts=drafts)
                self._handles[key] = handles
                logger.info("account_handles_created", account_id=key)
        return handles

    def transport(self, account_id: str | None = None) -> MailTransport:
        """Return the mail transport for an account, creating it on first use.

        Raises:
            ConfigurationError: If the account lacks credentials or endpoints.
        """

        handles = self.get(account_id)
        handles.account.validate_for_operation()
        if handles.transport is None:
            with self._key_lock(handles.account.account_id):
                if handles.transport is None:
                    handles.transport = self._transport_factory(handles.account)
        return handles.transport


class EmailService:
    """Operations available to the automated caller.

    Every operation takes an optional `account_id`; an empty value selects the
    configured default account.
    """

    def __init__(
        self,
        config: MultiAccountConfig,
        registry: AccountRegistry | None = None,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.registry = registry or AccountRegistry(config)
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def fetch_and_cache(
        self,
        message_id: str,
        preview_length: int | None = None,
        account_id: str | None = None,
    ) -> EmailCacheInfo:
        """Cache a message if needed and return its metadata with a preview.

        A message that is absent or expired is fetched from the mail server
        again; a live cached copy is served without network access.
        """

        if not message_id:
            raise ValidationError("message_id parameter is required")
        length = self.settings.preview_length if preview_length is None else preview_length

        handles = self.registry.get(account_id)
        if not handles.content.is_cached(message_id):
            transport = self.registry.transport(account_id)
            email = await transport.fetch_email(message_id)
            handles.content.save(email, handles.account.account_id)
        else:
            logger.debug("email_cache_hit", message_id=message_id, account_id=handles.account.account_id)

        return handles.content.get_cache_info(message_id, length)

    def read_cached_body(
        self,
        message_id: str,
        format: str = "text",
        offset: int = 0,
        limit: int | None = None,
        account_id: str | None = None,
    ) -> ReadBodyResult:
        """Read a chunk of a cached body.

        Raises:
            NotCachedError: If the message must be fetched again first.
        """

        if not message_id:
            raise ValidationError("message_id parameter is required")
        handles = self.registry.get(account_id)
        return handles.content.read_chunk(
            message_id,
            format=format or "text",
            offset=offset,
            limit=self.settings.read_limit if limit is None else limit,
        )

    def list_accounts(self) -> list[AccountSummary]:
        """Configured accounts, default first, then by id."""

        summaries = [
            AccountSummary(
                id=account_id,
                email=account.email_address,
                provider=account.provider,
                is_default=account_id == self.config.default_account_id,
            )
            for account_id, account in self.config.accounts.items()
        ]
        return sorted(summaries, key=lambda s: (not s.is_default, s.id))

    def cache_stats(self, account_id: str | None = None) -> CacheStats:
        return self.registry.get(account_id).ledger.stats()

    def clear_cache(self, account_id: str | None = None) -> int:
        return self.registry.get(account_id).ledger.clear()

    async def list_folders(self, account_id: str | None = None) -> list[Folder]:
        return await self.registry.transport(account_id).list_folders()

    async def fetch_headers(
        self,
        options: FetchOptions | None = None,
        account_id: str | None = None,
    ) -> list[EmailHeader]:
        return await self.registry.transport(account_id).fetch_headers(options or FetchOptions())

    async def fetch_attachments(
        self,
        message_id: str,
        names: list[str] | None = None,
        fetch_all: bool = False,
        account_id: str | None = None,
    ) -> list[AttachmentResult]:
        """Store attachments in the account's attachment cache.

        Each stored file is registered with the ledger as an `attachment`
        entry and its ledger id is returned as `cache_id`.
        """

        if not message_id:
            raise ValidationError("message_id parameter is required")
        if not names and not fetch_all:
            raise ValidationError("provide attachment_names or set fetch_all")

        handles = self.registry.get(account_id)
        transport = self.registry.transport(account_id)
        results = await transport.fetch_attachments(
            message_id,
            None if fetch_all else names,
            handles.account.attachment_dir,
            self.config.max_attachment_size,
        )

        for result in results:
            if result.path is None:
                continue
            cache_id = Path(result.path).name
            handles.ledger.replace(cache_id, CacheKind.ATTACHMENT, result.path, result.size)
            result.cache_id = cache_id
        return results

    async def send_email(self, options: SendOptions, account_id: str | None = None) -> None:
        _check_sendable(options)
        await self.registry.transport(account_id).send_email(options)

    def create_draft(self, options: SendOptions, account_id: str | None = None) -> Draft:
        return self.registry.get(account_id).drafts.create(options)

    def list_drafts(self, account_id: str | None = None) -> list[DraftSummary]:
        return self.registry.get(account_id).drafts.list_drafts()

    def get_draft(self, draft_id: str, account_id: str | None = None) -> Draft:
        if not draft_id:
            raise ValidationError("draft_id parameter is required")
        return self.registry.get(account_id).drafts.load(draft_id)

    def update_draft(
        self,
        draft_id: str,
        changes: Mapping[str, Any],
        account_id: str | None = None,
    ) -> Draft:
        """Change the given fields of a draft; the draft keeps its id."""

        if not draft_id:
            raise ValidationError("draft_id parameter is required")
        return self.registry.get(account_id).drafts.update(draft_id, changes)

    def delete_draft(self, draft_id: str, account_id: str | None = None) -> None:
        if not draft_id:
            raise ValidationError("draft_id parameter is required")
        self.registry.get(account_id).drafts.delete(draft_id)

    async def send_draft(self, draft_id: str, account_id: str | None = None) -> Draft:
        """Send a draft and remove it from storage.

        A failure to delete the draft after a successful send is logged and
        does not fail the call.
        """

        if not draft_id:
            raise ValidationError("draft_id parameter is required")
        handles = self.registry.get(account_id)
        draft = handles.drafts.load(draft_id)
        options = draft.to_send_options()
        _check_sendable(options)

        await self.registry.transport(account_id).send_email(options)
        self._discard_sent_draft(handles.drafts, draft_id)
        logger.info("draft_sent", draft_id=draft_id, to=options.to, account_id=handles.account.account_id)
        return draft

    async def send_all_drafts(
        self,
        delay_seconds: int = DEFAULT_DRAFT_SEND_DELAY,
        dry_run: bool = False,
        stop_on_error: bool = False,
        account_id: str | None = None,
    ) -> DraftSendReport:
        """Send every saved draft, oldest first, pausing between sends.

        `delay_seconds` is clamped to 2..60. A dry run validates and reports
        each draft without contacting the mail server or deleting anything.
        Sent drafts are deleted; failed ones stay for another attempt.
        """

        delay = min(max(delay_seconds, MIN_DRAFT_SEND_DELAY), MAX_DRAFT_SEND_DELAY)
        handles = self.registry.get(account_id)
        summaries = handles.drafts.list_drafts()
        report = DraftSendReport(total_drafts=len(summaries), dry_run=dry_run, delay_seconds=delay)
        if not summaries:
            return report

        transport = None if dry_run else self.registry.transport(account_id)

        for index, summary in enumerate(summaries):
            result = DraftSendResult(
                draft_id=summary.id,
                subject=summary.subject,
                to=summary.to,
                status="simulated" if dry_run else "sent",
            )
            try:
                options = handles.drafts.load(summary.id).to_send_options()
                _check_sendable(options)
                if transport is not None:
                    await transport.send_email(options)
            except EmailMcpError as exc:
                result.status = "failed"
                result.error = str(exc)
                logger.warning("draft_send_failed", draft_id=summary.id, error=str(exc))
            else:
                if transport is not None:
                    self._discard_sent_draft(handles.drafts, summary.id)

            report.results.append(result)
            if result.status == "failed":
                report.failed += 1
                if stop_on_error:
                    break
            else:
                report.sent += 1

            if transport is not None and index < len(summaries) - 1:
                await self._sleep(delay)

        logger.info(
            "drafts_sent",
            account_id=handles.account.account_id,
            sent=report.sent,
            failed=report.failed,
            dry_run=dry_run,
        )
        return report

    def _discard_sent_draft(self, drafts: DraftStore, draft_id: str) -> None:
        try:
            drafts.delete(draft_id)
        except EmailMcpError as exc:
            logger.warning("draft_delete_after_send_failed", draft_id=draft_id, error=str(exc))


def _check_sendable(options: SendOptions) -> None:
    if not options.to:
        raise ValidationError("at least one 'to' recipient is required")
    if not options.subject:
        raise ValidationError("subject is required")
    if not options.body and not options.html_body:
        raise ValidationError("either 'body' or 'html_body' is required")
