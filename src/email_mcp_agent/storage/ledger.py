"""Size- and age-bounded bookkeeping for one account's cache.

The ledger lives at `{account_root}/cache/cache_metadata.yaml` and records every
cached item with its size and timestamps. Eviction happens in two phases: an
age sweep that drops everything older than `max_age`, then a size sweep that
drops the oldest-cached entries until the total fits in `max_size`.

Entry locations are stored relative to the account root so that a migrated
(renamed) account folder keeps a valid ledger.
"""

from __future__ import annotations

import os
import shutil
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pydantic
import structlog

from email_mcp_agent.exceptions import EmailMcpError, NotFoundError, ValidationError
from email_mcp_agent.models import CacheEntry, CacheKind, CacheLedgerRecord, CacheStats
from email_mcp_agent.storage.yaml_io import read_yaml, write_yaml_atomic

logger = structlog.get_logger()


LEDGER_FILENAME = "cache_metadata.yaml"
LEDGER_VERSION = 1
DEFAULT_MAX_AGE = timedelta(hours=24)

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EvictionPlan:
    """Result of `plan_eviction`: which entries stay and which go."""

    keep: list[CacheEntry] = field(default_factory=list)
    expired: list[CacheEntry] = field(default_factory=list)
    oversize: list[CacheEntry] = field(default_factory=list)

    @property
    def delete(self) -> list[CacheEntry]:
        return [*self.expired, *self.oversize]

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.keep)


def plan_eviction(
    entries: Iterable[CacheEntry],
    *,
    now: datetime,
    max_age: timedelta,
    max_size: int,
) -> EvictionPlan:
    """Decide which entries to evict without touching the filesystem.

    Args:
        entries: Current ledger entries.
        now: Reference time for the age sweep.
        max_age: Entries at least this old are always removed.
        max_size: Size bound applied after the age sweep.

    Returns:
        EvictionPlan with `keep` sorted oldest-created first whenever the size
        sweep ran. Ties on `created_at` keep ledger order (stable sort).
    """

    keep: list[CacheEntry] = []
    expired: list[CacheEntry] = []
    for entry in entries:
        if now - entry.created_at >= max_age:
            expired.append(entry)
        else:
            keep.append(entry)

    total = sum(e.size for e in keep)
    oversize: list[CacheEntry] = []
    if total > max_size:
        keep.sort(key=lambda e: e.created_at)
        while total > max_size and keep:
            victim = keep.pop(0)
            total -= victim.size
            oversize.append(victim)

    return EvictionPlan(keep=keep, expired=expired, oversize=oversize)


class CacheLedger:
    """Durable record of cache entries for one account-scoped root.

    All operations hold a re-entrant lock; mutations are read-modify-write
    cycles over the YAML record and must not interleave.
    """

    def __init__(
        self,
        account_root: Path,
        max_size: int,
        *,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Clock | None = None,
    ) -> None:
        """Create a ledger.

        Args:
            account_root: Account-scoped root directory.
            max_size: Maximum total size in bytes.
            max_age: Age after which entries are always evicted.
            clock: Time source, injectable for tests.
        """

        self._root = Path(account_root)
        self._path = self._root / "cache" / LEDGER_FILENAME
        self.max_size = max_size
        self.max_age = max_age
        self._clock = clock or _now_utc
        self._lock = threading.RLock()

        self._relocate_legacy_record()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> CacheLedgerRecord:
        """Read the persisted record; a missing file is an empty ledger."""

        with self._lock:
            try:
                data = read_yaml(self._path)
            except FileNotFoundError:
                return CacheLedgerRecord(version=LEDGER_VERSION)
            try:
                return CacheLedgerRecord.model_validate(data)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"malformed cache ledger {self._path}: {exc}") from exc

    def add_or_touch(self, entry_id: str, kind: CacheKind | str, location: Path | str, size: int) -> CacheEntry:
        """Register a cached item, or refresh `accessed_at` if already tracked.

        Eviction runs when the new total exceeds `max_size`; an item larger than
        `max_size` on its own is accepted and evicted straight away.
        """

        with self._lock:
            record = self.load()
            now = self._clock()

            for entry in record.entries:
                if entry.id == entry_id:
                    entry.accessed_at = now
                    self._save(record)
                    return entry

            entry = CacheEntry(
                id=entry_id,
                kind=CacheKind(kind),
                size=size,
                created_at=now,
                accessed_at=now,
                location=self._to_location(location),
            )
            record.entries.append(entry)
            record.total_size += size
            self._save(record)
            logger.debug("cache_entry_added", id=entry_id, kind=entry.kind.value, size=size)

            if record.total_size > self.max_size:
                self._evict(record)
            return entry

    def replace(self, entry_id: str, kind: CacheKind | str, location: Path | str, size: int) -> CacheEntry:
        """Register an item whose backing data was rewritten.

        Any existing entry with the same id is dropped first, so the new entry
        starts with fresh `created_at` and `size` values.
        """

        with self._lock:
            record = self.load()
            stale = [e for e in record.entries if e.id == entry_id]
            if stale:
                record.entries = [e for e in record.entries if e.id != entry_id]
                record.total_size = max(0, record.total_size - sum(e.size for e in stale))
                self._save(record)
                logger.debug("cache_entry_replaced", id=entry_id, old_size=stale[0].size, size=size)
            return self.add_or_touch(entry_id, kind, location, size)

    def get(self, entry_id: str) -> CacheEntry:
        """Return an entry and refresh its `accessed_at`.

        Raises:
            NotFoundError: If the id is not tracked.
        """

        with self._lock:
            record = self.load()
            for entry in record.entries:
                if entry.id == entry_id:
                    entry.accessed_at = self._clock()
                    self._save(record)
                    return entry
        raise NotFoundError(f"cache entry not found: {entry_id}")

    def is_live(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at < self.max_age

    def evict(self) -> EvictionPlan:
        """Run the age sweep and, if still over budget, the size sweep."""

        with self._lock:
            return self._evict(self.load())

    def clear(self) -> int:
        """Delete every tracked item and reset the ledger.

        Returns:
            Number of entries removed.
        """

        with self._lock:
            record = self.load()
            removed = len(record.entries)
            self._save(CacheLedgerRecord(version=record.version or LEDGER_VERSION))
            for entry in record.entries:
                self._delete_backing(entry)
        logger.info("cache_cleared", path=str(self._path), entries_removed=removed)
        return removed

    def stats(self) -> CacheStats:
        with self._lock:
            record = self.load()

        created = [e.created_at for e in record.entries]
        expired = [e for e in record.entries if not self.is_live(e)]
        return CacheStats(
            total_size_bytes=record.total_size,
            max_size_bytes=self.max_size,
            entry_count=len(record.entries),
            content_count=sum(1 for e in record.entries if e.kind is CacheKind.CONTENT),
            attachment_count=sum(1 for e in record.entries if e.kind is CacheKind.ATTACHMENT),
            expired_count=len(expired),
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
            current_time=self._clock(),
        )

    def _evict(self, record: CacheLedgerRecord) -> EvictionPlan:
        plan = plan_eviction(
            record.entries,
            now=self._clock(),
            max_age=self.max_age,
            max_size=self.max_size,
        )
        record.entries = plan.keep
        record.total_size = plan.total_size
        self._save(record)

        for entry in plan.delete:
            self._delete_backing(entry)

        if plan.delete:
            logger.info(
                "cache_evicted",
                expired=len(plan.expired),
                oversize=len(plan.oversize),
                total_size=record.total_size,
                max_size=self.max_size,
            )
        return plan

    def _save(self, record: CacheLedgerRecord) -> None:
        record.version = record.version or LEDGER_VERSION
        write_yaml_atomic(self._path, record.model_dump(mode="json", by_alias=True))

    def _to_location(self, location: Path | str) -> str:
        path = Path(location)
        try:
            return path.absolute().relative_to(self._root.absolute()).as_posix()
        except ValueError:
            return str(path)

    def resolve(self, entry: CacheEntry) -> Path:
        path = Path(entry.location)
        return path if path.is_absolute() else self._root / path

    def _delete_backing(self, entry: CacheEntry) -> None:
        path = self.resolve(entry)
        try:
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
        except OSError as exc:
            logger.warning("cache_entry_delete_failed", id=entry.id, path=str(path), error=str(exc))

    def _relocate_legacy_record(self) -> None:
        # Older releases kept the ledger at {account_root}/metadata.yaml, which is
        # now the identity record. Only a document carrying cache_version moves.
        legacy = self._root / "metadata.yaml"
        try:
            data = read_yaml(legacy)
        except (FileNotFoundError, EmailMcpError):
            return
        if not data.get("cache_version"):
            return

        try:
            if self._path.exists():
                legacy.unlink()
            else:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(legacy, self._path)
        except OSError as exc:
            logger.warning("cache_ledger_relocation_failed", path=str(legacy), error=str(exc))
            return
        logger.info("cache_ledger_relocated", old_path=str(legacy), new_path=str(self._path))
