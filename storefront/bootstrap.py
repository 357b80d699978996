"""Startup bootstrap for the database.

Connects with retry-with-backoff, then applies pending migrations.
Neither a connection failure nor a migration failure stops the
process: both are logged and kept on the returned BootstrapState,
which the health endpoint reports.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .db.config import DatabaseConfig, get_config
from .db.connection import ConnectionError, ConnectionPool, QueryError
from .db.migrations import MigrationError, MigrationRunner

logger = logging.getLogger(__name__)


@dataclass
class BootstrapState:
    """What happened during startup."""

    connected: bool = False
    attempts: int = 0
    migrations_ran: bool = False
    applied: list[str] = field(default_factory=list)
    migration_error: Optional[str] = None

    @property
    def migration_status(self) -> str:
        if not self.migrations_ran:
            return "skipped"
        return "failed" if self.migration_error else "ok"


async def connect_with_retry(
    pool: ConnectionPool,
    attempts: int = 5,
    delay: float = 3.0,
    backoff: float = 2.0,
    state: Optional[BootstrapState] = None,
) -> bool:
    """Initialize the pool and confirm the database answers.

    Args:
        pool: Connection pool to initialize
        attempts: Maximum number of attempts
        delay: Sleep before the second attempt in seconds
        backoff: Multiplier applied to the sleep after each failure
        state: Optional state to record the attempt count on

    Returns:
        True once connected, False after the last failed attempt
    """
    wait = delay
    for attempt in range(1, attempts + 1):
        if state is not None:
            state.attempts = attempt
        try:
            await pool.initialize()
            health = await pool.health_check()
            if health["status"] == "healthy":
                logger.info("Database connected successfully")
                return True
            error = health.get("error", "unhealthy")
        except ConnectionError as e:
            error = str(e)

        remaining = attempts - attempt
        logger.warning(
            f"Database connection attempt {attempt} failed ({remaining} retries left): {error}"
        )
        if remaining:
            await asyncio.sleep(wait)
            wait *= backoff

    return False


async def bootstrap_database(
    pool: ConnectionPool,
    runner: Optional[MigrationRunner] = None,
    config: Optional[DatabaseConfig] = None,
) -> BootstrapState:
    """Connect and migrate at startup.

    Args:
        pool: Connection pool owned by the application
        runner: Migration runner (built from config if None)
        config: Optional configuration override

    Returns:
        BootstrapState describing the outcome
    """
    cfg = config or get_config()
    runner = runner or MigrationRunner.from_config(pool, cfg)
    state = BootstrapState()

    state.connected = await connect_with_retry(
        pool,
        attempts=cfg.retry_attempts,
        delay=cfg.retry_delay,
        backoff=cfg.retry_backoff,
        state=state,
    )
    if not state.connected:
        logger.error("Critical: Database connection failed. Health check will report unhealthy.")
        return state

    state.migrations_ran = True
    try:
        report = await runner.run()
        state.applied = report.applied
        logger.info("Migrations completed")
    except (MigrationError, QueryError) as e:
        state.migration_error = str(e)
        report = getattr(e, "report", None)
        if report:
            state.applied = report.applied
        logger.error(f"Migration failed: {e}")

    return state
