"""Keep account folder names in sync with renamed account ids.

Folders are matched to configured accounts by the email address stored in
their identity record. A folder whose account was renamed is moved to the new
id and relabelled; folders whose email no longer matches any account are left
alone.
"""

from __future__ import annotations

import os
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from email_mcp_agent.exceptions import (
    ConflictError,
    EmailMcpError,
    MigrationError,
    NotFoundError,
    StorageIOError,
)
from email_mcp_agent.models import MigrationPlan
from email_mcp_agent.storage.identity import AccountIdentityStore

logger = structlog.get_logger()


@dataclass
class MigrationReport:
    """Outcome of one detect-and-execute pass."""

    plans: list[MigrationPlan] = field(default_factory=list)
    completed: list[MigrationPlan] = field(default_factory=list)
    errors: list[MigrationError] = field(default_factory=list)


def detect_migrations(
    files_root: Path,
    current_accounts: Mapping[str, str],
    identity_store: AccountIdentityStore | None = None,
) -> list[MigrationPlan]:
    """Compare on-disk folders with the configured accounts.

    Args:
        files_root: Directory holding one folder per account.
        current_accounts: Configured mapping of account id to email address.
        identity_store: Store used to scan identity records.

    Returns:
        One plan per folder that should be renamed. When several folders share
        an email address only the most recently updated one is planned.
    """

    store = identity_store or AccountIdentityStore()
    existing = store.scan(Path(files_root))

    folders_by_email: dict[str, list[str]] = defaultdict(list)
    for folder_name, identity in existing.items():
        folders_by_email[identity.email_address].append(folder_name)

    plans: list[MigrationPlan] = []
    orphaned: list[str] = []

    for folder_name, identity in sorted(existing.items()):
        email = identity.email_address
        if folder_name == identity.account_id and current_accounts.get(identity.account_id) == email:
            continue

        matching_id = next(
            (account_id for account_id, addr in sorted(current_accounts.items()) if addr == email),
            None,
        )
        if matching_id is None:
            orphaned.append(folder_name)
            continue
        if matching_id == folder_name:
            continue

        candidates = folders_by_email[email]
        if len(candidates) > 1:
            newest = max(candidates, key=lambda name: (existing[name].updated_at, name))
            if folder_name != newest:
                logger.warning(
                    "account_folder_conflict",
                    folder=folder_name,
                    email=email,
                    candidates=sorted(candidates),
                    selected=newest,
                )
                orphaned.append(folder_name)
                continue

        plans.append(
            MigrationPlan(
                old_folder_name=folder_name,
                new_account_id=matching_id,
                email_address=email,
                identity=identity,
            )
        )

    if orphaned:
        logger.warning(
            "account_folders_orphaned",
            count=len(orphaned),
            folders=orphaned,
            hint="folders are preserved but unused; delete them manually if not needed",
        )
    return plans


def execute_migration(
    files_root: Path,
    plan: MigrationPlan,
    identity_store: AccountIdentityStore | None = None,
) -> Path:
    """Rename a folder to its new account id and rewrite its identity record.

    Returns:
        Path of the migrated folder.

    Raises:
        NotFoundError: If the source folder is missing.
        ConflictError: If the destination already exists.
        StorageIOError: If the rename itself fails.
        MigrationError: If relabelling fails; the rename is rolled back and a
            failed rollback is recorded on the error.
    """

    store = identity_store or AccountIdentityStore()
    old_path = Path(files_root) / plan.old_folder_name
    new_path = Path(files_root) / plan.new_account_id

    if not old_path.is_dir():
        raise NotFoundError(f"source folder does not exist: {old_path}")
    if new_path.exists():
        raise ConflictError(f"target folder already exists: {new_path} (cannot overwrite)")

    try:
        os.rename(old_path, new_path)
    except OSError as exc:
        raise StorageIOError("rename", old_path, exc) from exc

    try:
        store.write(store.path_for(new_path), plan.new_account_id, plan.email_address)
    except EmailMcpError as exc:
        try:
            os.rename(new_path, old_path)
        except OSError as rollback_exc:
            logger.error(
                "account_migration_rollback_failed",
                old_folder=plan.old_folder_name,
                new_account_id=plan.new_account_id,
                error=str(exc),
                rollback_error=str(rollback_exc),
            )
            raise MigrationError(
                plan.old_folder_name, plan.new_account_id, exc, rollback_error=rollback_exc
            ) from exc
        raise MigrationError(plan.old_folder_name, plan.new_account_id, exc) from exc

    logger.info(
        "account_folder_migrated",
        old_folder=plan.old_folder_name,
        new_account_id=plan.new_account_id,
        email=plan.email_address,
    )
    return new_path


def execute_all_migrations(
    files_root: Path,
    plans: list[MigrationPlan],
    identity_store: AccountIdentityStore | None = None,
) -> list[MigrationError]:
    """Run every plan independently and collect the failures."""

    errors: list[MigrationError] = []
    for plan in plans:
        try:
            execute_migration(files_root, plan, identity_store)
        except MigrationError as exc:
            errors.append(exc)
        except EmailMcpError as exc:
            errors.append(MigrationError(plan.old_folder_name, plan.new_account_id, exc))
    return errors


def run_migrations(
    files_root: Path,
    current_accounts: Mapping[str, str],
    identity_store: AccountIdentityStore | None = None,
) -> MigrationReport:
    """Detect and execute migrations, logging failures instead of raising."""

    store = identity_store or AccountIdentityStore()
    plans = detect_migrations(files_root, current_accounts, store)
    report = MigrationReport(plans=plans)
    if not plans:
        return report

    logger.info("account_migrations_detected", count=len(plans))
    report.errors = execute_all_migrations(files_root, plans, store)
    failed = {(e.old_folder, e.new_account_id) for e in report.errors}
    report.completed = [p for p in plans if (p.old_folder_name, p.new_account_id) not in failed]

    for error in report.errors:
        logger.warning("account_migration_failed", error=str(error))
    if not report.errors:
        logger.info("account_migrations_completed", count=len(plans))
    return report
