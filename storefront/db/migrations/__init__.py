"""SQL migration system for the storefront database.

Provides:
- Ordered discovery of ``*.sql`` migration units
- Per-unit transactional apply, recorded in a ledger table
- Unit-level rollback from registered reverse scripts
- CLI operations for migrate/rollback/status/create/seed

Usage:
    from storefront.db import ConnectionPool
    from storefront.db.migrations import MigrationRunner

    pool = ConnectionPool()
    runner = MigrationRunner.from_config(pool)

    report = await runner.run()
    await runner.rollback("0003_orders")

CLI Usage:
    python -m storefront.db.migrations migrate
    python -m storefront.db.migrations rollback 0003_orders
    python -m storefront.db.migrations status
    python -m storefront.db.migrations create add_gift_wrapping
"""

from .base import (
    ErrorKind,
    LedgerConflictError,
    LedgerEntry,
    MigrationApplyError,
    MigrationConnectionError,
    MigrationError,
    MigrationOutcome,
    MigrationRecord,
    MigrationSourceError,
    MigrationStatus,
    MigrationUnit,
    RollbackNotFoundError,
    RunReport,
    UnitStatus,
)

from .source import (
    MigrationSource,
    RollbackSource,
    create_migration,
)

from .runner import (
    MigrationRunner,
    rollback_migration,
    run_migrations,
)

__all__ = [
    # Base types
    "ErrorKind",
    "LedgerEntry",
    "MigrationOutcome",
    "MigrationRecord",
    "MigrationStatus",
    "MigrationUnit",
    "RunReport",
    "UnitStatus",
    # Errors
    "MigrationError",
    "MigrationConnectionError",
    "MigrationSourceError",
    "MigrationApplyError",
    "LedgerConflictError",
    "RollbackNotFoundError",
    # Sources
    "MigrationSource",
    "RollbackSource",
    "create_migration",
    # Runner
    "MigrationRunner",
    "run_migrations",
    "rollback_migration",
]
