"""Account folder migration."""

from .migration import (
    MigrationReport,
    detect_migrations,
    execute_all_migrations,
    execute_migration,
    run_migrations,
)

__all__ = [
    "MigrationReport",
    "detect_migrations",
    "execute_all_migrations",
    "execute_migration",
    "run_migrations",
]
