"""Unit tests for account identity records."""

from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from email_mcp_agent.exceptions import NotFoundError, ValidationError
from email_mcp_agent.storage.identity import AccountIdentityStore


class TestAccountIdentityStore:
    """Test suite for AccountIdentityStore."""

    def test_write_then_read(self, tmp_path: Path, clock) -> None:
        """Test creating a new identity record."""
        store = AccountIdentityStore(clock=clock)
        path = store.path_for(tmp_path / "work")

        written = store.write(path, "work", "me@work.example")

        loaded = store.read(path)
        assert loaded == written
        assert loaded.created_at == clock.now
        assert loaded.updated_at == clock.now
        raw = yaml.safe_load(path.read_text())
        assert set(raw) == {"account_id", "email_address", "created_at", "updated_at"}

    def test_rewrite_preserves_created_at(self, tmp_path: Path, clock) -> None:
        """Test that refreshing a record only moves updated_at."""
        store = AccountIdentityStore(clock=clock)
        path = store.path_for(tmp_path / "work")
        first = store.write(path, "work", "me@work.example")
        clock.advance(days=3)

        second = store.write(path, "job", "me@work.example")

        assert second.created_at == first.created_at
        assert second.updated_at == first.updated_at + timedelta(days=3)
        assert second.account_id == "job"

    def test_rewrite_replaces_malformed_record(self, tmp_path: Path, clock) -> None:
        """Test that a corrupt record is overwritten with a fresh one."""
        store = AccountIdentityStore(clock=clock)
        path = store.path_for(tmp_path / "work")
        path.parent.mkdir()
        path.write_text("account_id: [unclosed\n")

        identity = store.write(path, "work", "me@work.example")

        assert identity.created_at == clock.now
        assert store.read(path).email_address == "me@work.example"

    def test_read_missing_record(self, tmp_path: Path) -> None:
        """Test reading a folder with no identity record."""
        with pytest.raises(NotFoundError):
            AccountIdentityStore().read(tmp_path / "metadata.yaml")

    def test_read_record_missing_fields(self, tmp_path: Path) -> None:
        """Test that an incomplete record is rejected."""
        path = tmp_path / "metadata.yaml"
        path.write_text("account_id: work\n")

        with pytest.raises(ValidationError):
            AccountIdentityStore().read(path)

    def test_scan_skips_folders_without_metadata(self, tmp_path: Path, clock) -> None:
        """Test that scan only reports folders with a readable record."""
        store = AccountIdentityStore(clock=clock)
        store.write(store.path_for(tmp_path / "b"), "b", "b@example.com")
        store.write(store.path_for(tmp_path / "a"), "a", "a@example.com")
        (tmp_path / "stray").mkdir()
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "metadata.yaml").write_text("not: [valid\n")
        (tmp_path / "loose-file.txt").write_text("ignored")

        found = store.scan(tmp_path)

        assert list(found) == ["a", "b"]
        assert found["a"].email_address == "a@example.com"

    def test_scan_missing_root(self, tmp_path: Path) -> None:
        """Test that a missing files root has no accounts."""
        assert AccountIdentityStore().scan(tmp_path / "nope") == {}
