"""Unit tests for the account registry and email service."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

import email_mcp_agent.service as service_module
from email_mcp_agent.config import AccountConfig, Settings, load_config
from email_mcp_agent.exceptions import (
    ConfigurationError,
    DraftNotFoundError,
    MailTransportError,
    NotCachedError,
    ValidationError,
)
from email_mcp_agent.models import (
    AttachmentResult,
    CacheKind,
    Email,
    EmailHeader,
    FetchOptions,
    Folder,
    SendOptions,
)
from email_mcp_agent.service import AccountRegistry, EmailService
from email_mcp_agent.storage import CacheLedger
from email_mcp_agent.storage.email_cache import METADATA_FILE


class FakeTransport:
    """In-memory stand-in for the IMAP/SMTP transport."""

    def __init__(self, account: AccountConfig, messages: dict[str, Email] | None = None) -> None:
        self.account = account
        self.messages = messages or {}
        self.fetch_calls: list[str] = []
        self.sent: list[SendOptions] = []
        self.fail_subjects: set[str] = set()

    async def list_folders(self) -> list[Folder]:
        return [Folder(name="INBOX", message_count=2, unread_count=1)]

    async def fetch_headers(self, options: FetchOptions) -> list[EmailHeader]:
        return [EmailHeader(message_id=mid, folder=options.folder) for mid in self.messages][: options.limit]

    async def fetch_email(self, message_id: str) -> Email:
        self.fetch_calls.append(message_id)
        return self.messages[message_id]

    async def fetch_attachments(
        self,
        message_id: str,
        names: list[str] | None,
        destination: Path,
        max_size: int,
    ) -> list[AttachmentResult]:
        destination.mkdir(parents=True, exist_ok=True)
        results = []
        for name in names or ["report.pdf", "huge.iso"]:
            if name == "huge.iso":
                results.append(AttachmentResult(filename=name, size=max_size + 1, error="too large"))
                continue
            target = destination / f"msg_{name}"
            target.write_bytes(b"%PDF-1.4")
            results.append(AttachmentResult(filename=name, size=8, path=str(target)))
        return results

    async def send_email(self, options: SendOptions) -> None:
        if options.subject in self.fail_subjects:
            raise MailTransportError(f"send failed: 550 rejected {options.subject}")
        self.sent.append(options)


@pytest.fixture
def config(account_env: dict[str, str], tmp_path: Path):
    return load_config(
        environ=account_env,
        settings=Settings(files_root=tmp_path, default_account_id="work"),
    )


@pytest.fixture
def transports() -> dict[str, FakeTransport]:
    return {}


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def service(config, transports, sleeps, sample_email: Email, clock) -> EmailService:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def factory(account: AccountConfig) -> FakeTransport:
        transport = FakeTransport(account, {sample_email.message_id: sample_email})
        transports[account.account_id] = transport
        return transport

    registry = AccountRegistry(config, factory, clock=clock)
    return EmailService(config, registry, Settings(preview_length=20, read_limit=16), sleep=fake_sleep)


class TestAccountRegistry:
    """Test suite for AccountRegistry."""

    def test_handles_are_memoized(self, config, clock) -> None:
        """Test that each account gets exactly one bundle."""
        registry = AccountRegistry(config, FakeTransport, clock=clock)

        first = registry.get("work")
        second = registry.get("")

        assert first is second
        assert registry.get("personal") is not first

    def test_transport_is_created_lazily_once(self, config, clock) -> None:
        """Test that the transport factory runs on first use only."""
        created = []

        def factory(account: AccountConfig) -> FakeTransport:
            created.append(account.account_id)
            return FakeTransport(account)

        registry = AccountRegistry(config, factory, clock=clock)
        registry.get("work")
        assert created == []

        registry.transport("work")
        registry.transport("work")

        assert created == ["work"]

    def test_transport_validates_account(self, config, clock) -> None:
        """Test that an account without credentials cannot connect."""
        registry = AccountRegistry(config, FakeTransport, clock=clock)
        registry.get("work").account.password = ""

        with pytest.raises(ConfigurationError, match="password"):
            registry.transport("work")

    def test_concurrent_first_access_builds_one_bundle(
        self, config, clock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that racing first lookups for one account share a single bundle."""
        constructed = []
        start = threading.Barrier(8)

        class SlowLedger(CacheLedger):
            def __init__(self, *args, **kwargs) -> None:
                constructed.append(threading.get_ident())
                time.sleep(0.05)
                super().__init__(*args, **kwargs)

        monkeypatch.setattr(service_module, "CacheLedger", SlowLedger)
        registry = AccountRegistry(config, FakeTransport, clock=clock)

        def lookup(_: int):
            start.wait()
            return registry.get("work")

        with ThreadPoolExecutor(max_workers=8) as pool:
            bundles = list(pool.map(lookup, range(8)))

        assert len(constructed) == 1
        assert all(bundle is bundles[0] for bundle in bundles)


class TestEmailService:
    """Test suite for EmailService."""

    @pytest.mark.asyncio
    async def test_fetch_and_cache_then_hit(self, service: EmailService, transports, sample_email: Email) -> None:
        """Test that a second fetch is served from the cache."""
        first = await service.fetch_and_cache(sample_email.message_id)
        second = await service.fetch_and_cache(sample_email.message_id)

        assert first.body.preview == sample_email.body[:20]
        assert second.subject == sample_email.subject
        assert transports["work"].fetch_calls == [sample_email.message_id]

    @pytest.mark.asyncio
    async def test_expired_cache_is_refetched(
        self, service: EmailService, transports, sample_email: Email, clock
    ) -> None:
        """Test that an expired message goes back to the mail server."""
        await service.fetch_and_cache(sample_email.message_id)
        clock.advance(hours=97)

        await service.fetch_and_cache(sample_email.message_id)

        assert transports["work"].fetch_calls == [sample_email.message_id] * 2

    @pytest.mark.asyncio
    async def test_corrupt_metadata_is_refetched(
        self, service: EmailService, transports, sample_email: Email
    ) -> None:
        """Test that an unreadable cached record is replaced by a fresh fetch."""
        await service.fetch_and_cache(sample_email.message_id)
        content = service.registry.get().content
        (content.email_dir(sample_email.message_id) / METADATA_FILE).write_text("message_id: [unterminated\n")

        info = await service.fetch_and_cache(sample_email.message_id)

        assert info.subject == sample_email.subject
        assert transports["work"].fetch_calls == [sample_email.message_id] * 2
        assert service.cache_stats().content_count == 1

    @pytest.mark.asyncio
    async def test_accounts_are_isolated(self, service: EmailService, sample_email: Email) -> None:
        """Test that caching for one account is invisible to another."""
        await service.fetch_and_cache(sample_email.message_id, account_id="work")

        with pytest.raises(NotCachedError):
            service.read_cached_body(sample_email.message_id, account_id="personal")

    @pytest.mark.asyncio
    async def test_read_cached_body_uses_default_limit(self, service: EmailService, sample_email: Email) -> None:
        """Test that the configured read limit applies when none is given."""
        await service.fetch_and_cache(sample_email.message_id)

        result = service.read_cached_body(sample_email.message_id)

        assert result.limit == 16
        assert result.content == sample_email.body[:16]
        assert result.is_complete is False

    def test_read_requires_message_id(self, service: EmailService) -> None:
        """Test parameter validation for reads."""
        with pytest.raises(ValidationError):
            service.read_cached_body("")

    def test_list_accounts_puts_default_first(self, service: EmailService) -> None:
        """Test account listing order."""
        accounts = service.list_accounts()

        assert [a.id for a in accounts] == ["work", "personal"]
        assert accounts[0].is_default is True
        assert accounts[0].provider == "outlook"

    @pytest.mark.asyncio
    async def test_cache_stats_and_clear(self, service: EmailService, sample_email: Email) -> None:
        """Test cache statistics and clearing for an account."""
        await service.fetch_and_cache(sample_email.message_id)

        stats = service.cache_stats()
        assert stats.content_count == 1
        assert stats.total_size_bytes > 0

        assert service.clear_cache() == 1
        assert service.cache_stats().entry_count == 0

    @pytest.mark.asyncio
    async def test_fetch_attachments_registers_ledger_entries(self, service: EmailService) -> None:
        """Test that stored attachments are tracked by the ledger."""
        results = await service.fetch_attachments("<m@x>", fetch_all=True)

        stored = [r for r in results if r.path]
        assert [r.cache_id for r in stored] == ["msg_report.pdf"]
        assert results[1].error == "too large"

        entries = service.registry.get().ledger.load().entries
        assert [(e.id, e.kind) for e in entries] == [("msg_report.pdf", CacheKind.ATTACHMENT)]
        assert entries[0].location == "cache/attachments/msg_report.pdf"

    @pytest.mark.asyncio
    async def test_fetch_attachments_requires_selection(self, service: EmailService) -> None:
        """Test that callers must name attachments or ask for all."""
        with pytest.raises(ValidationError):
            await service.fetch_attachments("<m@x>")

    @pytest.mark.asyncio
    async def test_list_folders_and_headers(self, service: EmailService, sample_email: Email) -> None:
        """Test pass-through transport operations."""
        folders = await service.list_folders()
        headers = await service.fetch_headers(FetchOptions(limit=5))

        assert folders[0].name == "INBOX"
        assert [h.message_id for h in headers] == [sample_email.message_id]

    @pytest.mark.asyncio
    async def test_send_email(self, service: EmailService, transports) -> None:
        """Test sending through the selected account."""
        options = SendOptions(to=["friend@example.com"], subject="Hi", body="Hello")

        await service.send_email(options, account_id="personal")

        assert transports["personal"].sent == [options]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options",
        [
            SendOptions(subject="Hi", body="Hello"),
            SendOptions(to=["a@b.c"], body="Hello"),
            SendOptions(to=["a@b.c"], subject="Hi"),
        ],
    )
    async def test_send_email_validation(self, service: EmailService, options: SendOptions) -> None:
        """Test that incomplete outgoing messages are rejected."""
        with pytest.raises(ValidationError):
            await service.send_email(options)


class TestDrafts:
    """Test suite for the draft operations of EmailService."""

    def test_create_get_and_list(self, service: EmailService, clock) -> None:
        """Test that drafts are saved per account and listed oldest first."""
        first = service.create_draft(SendOptions(to=["a@x.com"], subject="First", body="one"))
        clock.advance(minutes=1)
        second = service.create_draft(SendOptions(to=["b@x.com"], subject="Second", body="two"))

        assert service.get_draft(first.id).body == "one"
        assert [d.id for d in service.list_drafts()] == [first.id, second.id]
        assert service.list_drafts(account_id="personal") == []

    def test_update_keeps_id_and_created_at(self, service: EmailService, clock) -> None:
        """Test that an update changes only the given fields."""
        draft = service.create_draft(SendOptions(to=["a@x.com"], subject="Draft", body="v1"))
        clock.advance(minutes=5)

        updated = service.update_draft(draft.id, {"body": "v2", "cc": ["c@x.com"], "subject": None})

        assert updated.id == draft.id
        assert updated.body == "v2"
        assert updated.cc == ["c@x.com"]
        assert updated.subject == "Draft"
        assert updated.created_at == draft.created_at
        assert updated.updated_at == clock.now
        assert service.get_draft(draft.id).model_dump() == updated.model_dump()

    def test_update_rejects_unknown_fields(self, service: EmailService) -> None:
        """Test that identity fields of a draft cannot be overwritten."""
        draft = service.create_draft(SendOptions(subject="Draft"))

        with pytest.raises(ValidationError):
            service.update_draft(draft.id, {"id": "other"})

    def test_delete(self, service: EmailService) -> None:
        """Test deleting a draft and deleting it again."""
        draft = service.create_draft(SendOptions(subject="Draft"))

        service.delete_draft(draft.id)

        with pytest.raises(DraftNotFoundError):
            service.get_draft(draft.id)
        with pytest.raises(DraftNotFoundError):
            service.delete_draft(draft.id)

    @pytest.mark.asyncio
    async def test_send_draft_sends_and_removes(self, service: EmailService, transports) -> None:
        """Test that a sent draft goes out through the account and is deleted."""
        draft = service.create_draft(
            SendOptions(to=["a@x.com"], subject="Hi", body="Hello", reply_to_message_id="<orig@x>"),
            account_id="personal",
        )

        await service.send_draft(draft.id, account_id="personal")

        sent = transports["personal"].sent
        assert [(s.to, s.subject, s.reply_to_message_id) for s in sent] == [(["a@x.com"], "Hi", "<orig@x>")]
        assert service.list_drafts(account_id="personal") == []

    @pytest.mark.asyncio
    async def test_incomplete_draft_is_not_sent(self, service: EmailService) -> None:
        """Test that a draft without recipients stays in storage."""
        draft = service.create_draft(SendOptions(subject="Hi", body="Hello"))

        with pytest.raises(ValidationError):
            await service.send_draft(draft.id)

        assert service.get_draft(draft.id).subject == "Hi"

    @pytest.mark.asyncio
    async def test_failed_send_keeps_draft(self, service: EmailService, transports) -> None:
        """Test that a transport failure leaves the draft in place."""
        draft = service.create_draft(SendOptions(to=["a@x.com"], subject="Bounce", body="x"))
        service.registry.transport("work")
        transports["work"].fail_subjects.add("Bounce")

        with pytest.raises(MailTransportError):
            await service.send_draft(draft.id)

        assert [d.id for d in service.list_drafts()] == [draft.id]

    @pytest.mark.asyncio
    async def test_send_all_reports_each_draft(
        self, service: EmailService, transports, sleeps: list[float], clock
    ) -> None:
        """Test a bulk send with one rejected and one incomplete draft."""
        ok = service.create_draft(SendOptions(to=["a@x.com"], subject="One", body="1"))
        clock.advance(seconds=1)
        rejected = service.create_draft(SendOptions(to=["b@x.com"], subject="Bounce", body="2"))
        clock.advance(seconds=1)
        empty = service.create_draft(SendOptions(to=["c@x.com"], subject="Three"))
        service.registry.transport("work")
        transports["work"].fail_subjects.add("Bounce")

        report = await service.send_all_drafts(delay_seconds=1)

        assert report.total_drafts == 3
        assert report.sent == 1
        assert report.failed == 2
        assert report.delay_seconds == 2
        assert [(r.draft_id, r.status) for r in report.results] == [
            (ok.id, "sent"),
            (rejected.id, "failed"),
            (empty.id, "failed"),
        ]
        assert "550 rejected" in report.results[1].error
        assert sleeps == [2, 2]
        assert sorted(d.id for d in service.list_drafts()) == sorted([rejected.id, empty.id])

    @pytest.mark.asyncio
    async def test_send_all_stops_on_error(self, service: EmailService, transports, clock) -> None:
        """Test that stop_on_error leaves later drafts unsent."""
        service.create_draft(SendOptions(to=["b@x.com"], subject="Bounce", body="1"))
        clock.advance(seconds=1)
        later = service.create_draft(SendOptions(to=["a@x.com"], subject="Later", body="2"))
        service.registry.transport("work")
        transports["work"].fail_subjects.add("Bounce")

        report = await service.send_all_drafts(delay_seconds=90, stop_on_error=True)

        assert report.delay_seconds == 60
        assert [r.status for r in report.results] == ["failed"]
        assert transports["work"].sent == []
        assert later.id in [d.id for d in service.list_drafts()]

    @pytest.mark.asyncio
    async def test_send_all_dry_run(self, service: EmailService, transports, sleeps: list[float]) -> None:
        """Test that a dry run neither sends, waits nor deletes."""
        service.create_draft(SendOptions(to=["a@x.com"], subject="One", body="1"))
        service.create_draft(SendOptions(to=["b@x.com"], subject="Two", body="2"))

        report = await service.send_all_drafts(dry_run=True)

        assert report.dry_run is True
        assert [r.status for r in report.results] == ["simulated", "simulated"]
        assert "work" not in transports
        assert sleeps == []
        assert len(service.list_drafts()) == 2

    @pytest.mark.asyncio
    async def test_send_all_without_drafts(self, service: EmailService, transports) -> None:
        """Test a bulk send with nothing saved."""
        report = await service.send_all_drafts()

        assert report.total_drafts == 0
        assert report.results == []
        assert "work" not in transports
