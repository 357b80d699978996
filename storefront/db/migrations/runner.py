"""Migration runner for applying and rolling back migrations.

Provides:
- Apply pending migrations, each in its own transaction
- Rollback a single applied migration
- Migration status reporting

The ledger table is the only record of what has been applied. A unit
whose file changes after it was recorded is never re-applied.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from ..config import IDENTIFIER_RE, DatabaseConfig, get_config
from ..connection import (
    Connection,
    ConnectionError,
    ConnectionPool,
    QueryError,
    QueryErrorKind,
)
from .base import (
    LedgerConflictError,
    LedgerEntry,
    MigrationApplyError,
    MigrationConnectionError,
    MigrationError,
    MigrationOutcome,
    MigrationRecord,
    MigrationStatus,
    MigrationUnit,
    RollbackNotFoundError,
    RunReport,
    UnitStatus,
)
from .source import MigrationSource, RollbackSource

logger = logging.getLogger(__name__)

# SQL for the ledger table
LEDGER_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.debug(f"Unparseable ledger timestamp: {value!r}")
        return None


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)


class MigrationRunner:
    """Runner for executing migrations against one database.

    Assumes it is the only runner working on that database; nothing
    here locks out a second process.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        source: MigrationSource,
        rollbacks: Optional[RollbackSource] = None,
        table: str = "schema_migrations",
    ):
        """Initialize the runner.

        Args:
            pool: Connection pool owned by the caller
            source: Where migration units are read from
            rollbacks: Where rollback payloads are read from
            table: Ledger table name
        """
        if not IDENTIFIER_RE.match(table):
            raise ValueError(f"Invalid ledger table name: {table!r}")

        self.pool = pool
        self.source = source
        self.rollbacks = rollbacks
        self.table = table

    @classmethod
    def from_config(
        cls,
        pool: ConnectionPool,
        config: Optional[DatabaseConfig] = None,
    ) -> "MigrationRunner":
        """Build a runner from configured directories and table name."""
        cfg = config or get_config()
        return cls(
            pool,
            MigrationSource(cfg.migrations_dir),
            RollbackSource(cfg.rollbacks_dir),
            table=cfg.migrations_table,
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncGenerator[Connection, None]:
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except ConnectionError as e:
            raise MigrationConnectionError(f"Cannot connect to database: {e}") from e

    async def _ensure_ledger(self, conn: Connection) -> None:
        """Ensure the ledger table exists."""
        await conn.execute(LEDGER_TABLE_SQL.format(table=self.table))

    async def _load_applied(self, conn: Connection) -> set[str]:
        """Get the names recorded in the ledger."""
        rows = await conn.query(f"SELECT name FROM {self.table}")
        return {r["name"] for r in rows}

    async def get_ledger(self) -> list[LedgerEntry]:
        """Get all ledger entries ordered by name."""
        async with self._connection() as conn:
            await self._ensure_ledger(conn)
            rows = await conn.query(
                f"SELECT id, name, applied_at FROM {self.table} ORDER BY name"
            )
        return [
            LedgerEntry(
                id=r["id"],
                name=r["name"],
                applied_at=_parse_timestamp(r["applied_at"]),
            )
            for r in rows
        ]

    async def get_pending(self) -> list[MigrationUnit]:
        """Get units that have no ledger entry, in application order."""
        async with self._connection() as conn:
            await self._ensure_ledger(conn)
            applied = await self._load_applied(conn)
        return self.source.load(exclude=applied)

    async def get_status(self) -> list[UnitStatus]:
        """Get status of every known unit.

        Ledger entries with no file in the source are reported as orphaned.
        """
        ledger = {entry.name: entry for entry in await self.get_ledger()}
        statuses: list[UnitStatus] = []

        for name in self.source.names():
            entry = ledger.pop(name, None)
            if entry:
                statuses.append(
                    UnitStatus(name, MigrationStatus.APPLIED, entry.applied_at)
                )
            else:
                statuses.append(UnitStatus(name, MigrationStatus.PENDING))

        for entry in ledger.values():
            statuses.append(UnitStatus(entry.name, MigrationStatus.ORPHANED, entry.applied_at))

        statuses.sort(key=lambda s: s.name)
        return statuses

    async def _apply(self, conn: Connection, unit: MigrationUnit) -> MigrationRecord:
        """Execute one unit and record it, in a single transaction."""
        start_time = time.monotonic()
        try:
            async with conn.transaction():
                try:
                    await conn.execute_script(unit.sql)
                except QueryError as e:
                    raise MigrationApplyError(unit.name, e) from e

                try:
                    await conn.execute(
                        f"INSERT INTO {self.table} (name) VALUES (?)",
                        (unit.name,),
                    )
                except QueryError as e:
                    if e.kind == QueryErrorKind.UNIQUE_VIOLATION:
                        raise LedgerConflictError(unit.name) from e
                    raise MigrationApplyError(unit.name, e) from e

        except (QueryError, ConnectionError) as e:
            # BEGIN or COMMIT itself failed
            raise MigrationApplyError(unit.name, e) from e

        return MigrationRecord(
            name=unit.name,
            outcome=MigrationOutcome.APPLIED,
            execution_time_ms=_elapsed_ms(start_time),
        )

    def _record_failure(self, name: str, error: MigrationError, report: RunReport) -> None:
        """Add the failed outcome to the report and attach the report to the error."""
        report.add(
            MigrationRecord(
                name=name,
                outcome=MigrationOutcome.FAILED,
                error=str(error),
            )
        )
        error.report = report
        logger.error(f"Failed to apply migration {name}: {error}")

    async def _apply_shielded(
        self,
        conn: Connection,
        unit: MigrationUnit,
        report: RunReport,
    ) -> None:
        """Apply a unit so cancellation is only observed once it settles."""
        task = asyncio.ensure_future(self._apply(conn, unit))
        try:
            report.add(await asyncio.shield(task))
        except asyncio.CancelledError:
            logger.warning(f"Cancellation requested; finishing migration {unit.name} first")
            await asyncio.wait([task])
            if not task.cancelled():
                error = task.exception()
                if error is None:
                    report.add(task.result())
                elif isinstance(error, MigrationError):
                    self._record_failure(unit.name, error, report)
            raise

    async def run(self) -> RunReport:
        """Apply all pending migrations in name order.

        Returns:
            Report of applied and skipped units

        Raises:
            MigrationConnectionError: No connection could be obtained
            MigrationSourceError: The migration directory is unreadable
            MigrationApplyError: A unit failed; later units were not attempted
            LedgerConflictError: Another runner recorded the unit first
            QueryError: The ledger table could not be created or read
        """
        report = RunReport()

        async with self._connection() as conn:
            await self._ensure_ledger(conn)
            applied = await self._load_applied(conn)

            paths = self.source.discover()
            pending = {
                unit.name: unit
                for unit in (self.source.load_unit(p) for p in paths if p.stem not in applied)
            }
            logger.info(
                f"Found {len(paths)} migration(s), {len(pending)} pending"
            )

            for path in paths:
                name = path.stem
                if name not in pending:
                    report.add(MigrationRecord(name=name, outcome=MigrationOutcome.SKIPPED))
                    logger.info(f"Skipping migration {name} (already applied)")
                    continue

                logger.info(f"Applying migration {name}...")
                try:
                    await self._apply_shielded(conn, pending[name], report)
                except MigrationError as e:
                    self._record_failure(name, e, report)
                    raise

                logger.info(
                    f"Applied {name} in {report.records[-1].execution_time_ms}ms"
                )

        if report.applied:
            logger.info(
                f"Applied {len(report.applied)} migration(s), "
                f"skipped {len(report.skipped)}"
            )
        else:
            logger.info("Schema is up to date")

        return report

    async def rollback(self, name: str) -> MigrationRecord:
        """Rollback a single migration using its registered reverse payload.

        Args:
            name: Unit name

        Returns:
            Record of the rolled back unit

        Raises:
            RollbackNotFoundError: No rollback payload is registered for the unit
            MigrationConnectionError: No connection could be obtained
            MigrationApplyError: The reverse statements failed; nothing changed
        """
        payload = self.rollbacks.get(name) if self.rollbacks else None
        if payload is None:
            raise RollbackNotFoundError(name)

        logger.info(f"Rolling back migration {name}...")
        start_time = time.monotonic()

        async with self._connection() as conn:
            await self._ensure_ledger(conn)
            try:
                async with conn.transaction():
                    await conn.execute_script(payload)
                    deleted = await conn.execute(
                        f"DELETE FROM {self.table} WHERE name = ?",
                        (name,),
                    )
            except (QueryError, ConnectionError) as e:
                logger.error(f"Failed to rollback migration {name}: {e}")
                raise MigrationApplyError(name, e) from e

        if not deleted:
            logger.warning(f"Migration {name} had no ledger entry")

        execution_time_ms = _elapsed_ms(start_time)
        logger.info(f"Rolled back {name} in {execution_time_ms}ms")
        return MigrationRecord(
            name=name,
            outcome=MigrationOutcome.ROLLED_BACK,
            execution_time_ms=execution_time_ms,
        )


# Convenience functions


async def run_migrations(
    pool: ConnectionPool,
    config: Optional[DatabaseConfig] = None,
) -> RunReport:
    """Apply pending migrations using configured directories.

    Args:
        pool: Connection pool
        config: Optional configuration override

    Returns:
        Run report
    """
    runner = MigrationRunner.from_config(pool, config)
    return await runner.run()


async def rollback_migration(
    pool: ConnectionPool,
    name: str,
    config: Optional[DatabaseConfig] = None,
) -> MigrationRecord:
    """Rollback one migration using configured directories."""
    runner = MigrationRunner.from_config(pool, config)
    return await runner.rollback(name)
