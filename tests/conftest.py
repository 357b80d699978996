"""Pytest fixtures for storefront tests."""

from collections.abc import AsyncGenerator, Callable, Generator
from pathlib import Path

import pytest
import pytest_asyncio

from storefront.db.config import DatabaseConfig, set_config
from storefront.db.connection import ConnectionPool
from storefront.db.migrations import MigrationRunner

# -------------------------------------------------------------------
# Configuration
# -------------------------------------------------------------------


@pytest.fixture
def migrations_dir(tmp_path: Path) -> Path:
    """Create an empty migrations directory with a rollbacks subdirectory."""
    migrations = tmp_path / "migrations"
    (migrations / "rollbacks").mkdir(parents=True)
    return migrations


@pytest.fixture
def db_config(tmp_path: Path, migrations_dir: Path) -> DatabaseConfig:
    """Create a configuration pointing at a temporary database file."""
    return DatabaseConfig(
        url=f"sqlite:///{tmp_path / 'storefront_test.db'}",
        pool_size=2,
        connect_timeout=5.0,
        query_timeout=5.0,
        retry_attempts=2,
        retry_delay=0.0,
        retry_backoff=1.0,
        migrations_dir=migrations_dir,
        rollbacks_dir=migrations_dir / "rollbacks",
        seeds_dir=tmp_path / "seeds",
        migrations_table="schema_migrations",
        app_env="development",
    )


@pytest.fixture(autouse=True)
def reset_global_config() -> Generator[None, None, None]:
    """Make sure no test leaks a global configuration."""
    set_config(None)
    yield
    set_config(None)


# -------------------------------------------------------------------
# Database
# -------------------------------------------------------------------


@pytest_asyncio.fixture
async def pool(db_config: DatabaseConfig) -> AsyncGenerator[ConnectionPool, None]:
    """Create a connection pool and close it after the test."""
    pool = ConnectionPool(db_config)
    yield pool
    await pool.close()


@pytest.fixture
def runner(pool: ConnectionPool, db_config: DatabaseConfig) -> MigrationRunner:
    """Create a MigrationRunner over the temporary directories."""
    return MigrationRunner.from_config(pool, db_config)


@pytest.fixture
def write_migration(migrations_dir: Path) -> Callable[..., Path]:
    """Return a helper that writes a migration (and optional rollback) file."""

    def _write(name: str, sql: str, rollback: str | None = None) -> Path:
        path = migrations_dir / f"{name}.sql"
        path.write_text(sql)
        if rollback is not None:
            (migrations_dir / "rollbacks" / f"{name}.sql").write_text(rollback)
        return path

    return _write
