"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from email_mcp_agent.models import Email


class FakeClock:
    """Controllable time source for storage components."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock fixed at a known instant."""
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def account_root(tmp_path: Path) -> Path:
    """Provide an empty account-scoped root directory."""
    root = tmp_path / "files" / "work"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def sample_email() -> Email:
    """Provide a plain-text message with one attachment descriptor."""
    return Email(
        message_id="<abc123@mail.example.com>",
        sender="Python Weekly <newsletter@python.org>",
        to=["user@example.com"],
        subject="Weekly Newsletter - Python Tips",
        date=datetime(2024, 5, 30, 9, 15, tzinfo=timezone.utc),
        body="Welcome to this week's Python tips!\n\nIn this issue: async best practices.",
        attachments=[{"filename": "tips.pdf", "size": 2048, "content_type": "application/pdf"}],
    )


@pytest.fixture
def html_only_email() -> Email:
    """Provide a message that only carries an HTML body."""
    return Email(
        message_id="<html-only@mail.example.com>",
        sender="billing@example.com",
        to=["user@example.com"],
        subject="Your invoice",
        html_body="<html><body><h1>Invoice</h1><p>Amount due: <b>42 EUR</b></p></body></html>",
    )


@pytest.fixture
def account_env() -> dict[str, str]:
    """Provide environment variables for two configured accounts."""
    return {
        "ACCOUNT_work_EMAIL": "me@work.example",
        "ACCOUNT_work_PASSWORD": "secret-work",
        "ACCOUNT_personal_EMAIL": "me@gmail.com",
        "ACCOUNT_personal_PASSWORD": "secret-personal",
        "ACCOUNT_personal_PROVIDER": "gmail",
        "ACCOUNT_work_PROVIDER": "outlook",
    }
