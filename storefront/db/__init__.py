"""Database layer for the storefront backend.

Provides:
- Environment-based configuration
- Connection pooling with explicit transactions and health checks
- SQL schema migrations with a ledger table
- Seed data loading

Usage:
    from storefront.db import ConnectionPool, get_config
    from storefront.db.migrations import MigrationRunner

    pool = ConnectionPool(get_config())
    await MigrationRunner.from_config(pool).run()

    async with pool.transaction() as conn:
        await conn.execute("INSERT INTO customers (email) VALUES (?)", ("a@b.c",))

Environment Variables:
    DATABASE_URL: sqlite:///path/to/storefront.db (or a plain path)
    DB_POOL_SIZE: Connection pool size
    DB_CONNECT_TIMEOUT: Connection timeout in seconds
    DB_QUERY_TIMEOUT: Busy timeout in seconds
    DB_RETRY_ATTEMPTS / DB_RETRY_DELAY / DB_RETRY_BACKOFF: Startup retry policy
    MIGRATIONS_DIR / ROLLBACKS_DIR / SEEDS_DIR: SQL file locations
    MIGRATIONS_TABLE: Ledger table name
"""

from .config import (
    DatabaseConfig,
    Environment,
    get_config,
    set_config,
)

from .connection import (
    Connection,
    ConnectionError,
    ConnectionPool,
    ConnectionStats,
    QueryError,
    QueryErrorKind,
    split_statements,
    translate_error,
)

from .seed import SeedError, run_seeds

__all__ = [
    # Config
    "DatabaseConfig",
    "Environment",
    "get_config",
    "set_config",
    # Connection
    "Connection",
    "ConnectionError",
    "ConnectionPool",
    "ConnectionStats",
    "QueryError",
    "QueryErrorKind",
    "split_statements",
    "translate_error",
    # Seeds
    "SeedError",
    "run_seeds",
]
