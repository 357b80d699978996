"""Tests for the migration runner."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from storefront.db.config import DEFAULT_MIGRATIONS_DIR, DatabaseConfig
from storefront.db.connection import ConnectionPool, QueryError
from storefront.db.migrations import (
    ErrorKind,
    LedgerConflictError,
    MigrationApplyError,
    MigrationConnectionError,
    MigrationOutcome,
    MigrationRecord,
    MigrationRunner,
    MigrationSource,
    MigrationSourceError,
    MigrationStatus,
    RollbackNotFoundError,
    RollbackSource,
)
from storefront.db.migrations.runner import LEDGER_TABLE_SQL
from tests.helpers.db import ledger_names, table_exists


class TestRun:
    """Tests for MigrationRunner.run()."""

    @pytest.mark.asyncio
    async def test_empty_source(self, runner, pool):
        """An empty migrations directory is a successful no-op."""
        report = await runner.run()

        assert report.success
        assert report.records == []
        assert await table_exists(pool, "schema_migrations")

    @pytest.mark.asyncio
    async def test_applies_and_records(self, runner, pool, write_migration):
        """Pending units are executed and recorded in the ledger."""
        write_migration("0001_products", "CREATE TABLE products (id INTEGER PRIMARY KEY);")

        report = await runner.run()

        assert report.applied == ["0001_products"]
        assert report.records[0].execution_time_ms is not None
        assert await table_exists(pool, "products")
        assert await ledger_names(pool) == ["0001_products"]

    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, runner, write_migration):
        """Running twice converges: the second run only skips."""
        write_migration("0001_a", "CREATE TABLE a (x INTEGER);")
        write_migration("0002_b", "CREATE TABLE b (x INTEGER);")

        first = await runner.run()
        ledger_after_first = await runner.get_ledger()
        second = await runner.run()
        ledger_after_second = await runner.get_ledger()

        assert first.applied == ["0001_a", "0002_b"]
        assert second.applied == []
        assert second.skipped == ["0001_a", "0002_b"]
        assert ledger_after_first == ledger_after_second

    @pytest.mark.asyncio
    async def test_applies_in_name_order(self, runner, pool, write_migration):
        """Units run in ascending name order regardless of creation order."""
        write_migration("003_c", "INSERT INTO events (unit) VALUES ('c');")
        write_migration("001_a", """
            CREATE TABLE events (seq INTEGER PRIMARY KEY AUTOINCREMENT, unit TEXT);
            INSERT INTO events (unit) VALUES ('a');
        """)
        write_migration("002_b", "INSERT INTO events (unit) VALUES ('b');")

        report = await runner.run()

        assert report.applied == ["001_a", "002_b", "003_c"]
        rows = await pool.query("SELECT unit FROM events ORDER BY seq")
        assert [r["unit"] for r in rows] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_failed_unit_leaves_no_trace(self, runner, pool, write_migration):
        """A valid statement followed by an invalid one is rolled back entirely."""
        write_migration("0001_broken", """
            CREATE TABLE good (x INTEGER);
            INSERT INTO missing_table VALUES (1);
        """)

        with pytest.raises(MigrationApplyError) as exc_info:
            await runner.run()

        assert exc_info.value.unit_name == "0001_broken"
        assert exc_info.value.kind == ErrorKind.APPLY
        assert isinstance(exc_info.value.cause, QueryError)
        assert not await table_exists(pool, "good")
        assert await ledger_names(pool) == []

    @pytest.mark.asyncio
    async def test_fail_fast(self, runner, pool, write_migration):
        """Units before the failure stay committed; units after are not attempted."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        write_migration("002_b", "CREATE TABLE b (x INTEGER); THIS IS NOT SQL;")
        write_migration("003_c", "CREATE TABLE c (x INTEGER);")

        with pytest.raises(MigrationApplyError) as exc_info:
            await runner.run()

        report = exc_info.value.report
        assert report.applied == ["001_a"]
        assert report.failed.name == "002_b"
        assert "003_c" not in [r.name for r in report.records]

        assert await ledger_names(pool) == ["001_a"]
        assert await table_exists(pool, "a")
        assert not await table_exists(pool, "b")
        assert not await table_exists(pool, "c")

    @pytest.mark.asyncio
    async def test_skips_preseeded_ledger_entries(self, runner, pool, write_migration):
        """Recorded units are skipped without executing their payload."""
        await pool.execute(LEDGER_TABLE_SQL.format(table="schema_migrations"))
        await pool.execute("INSERT INTO schema_migrations (name) VALUES ('001_a')")
        write_migration("001_a", "THIS WOULD FAIL IF EXECUTED;")
        write_migration("002_b", "CREATE TABLE b (x INTEGER);")

        report = await runner.run()

        assert report.skipped == ["001_a"]
        assert report.applied == ["002_b"]
        assert await ledger_names(pool) == ["001_a", "002_b"]

    @pytest.mark.asyncio
    async def test_edited_unit_is_not_reapplied(self, runner, pool, write_migration):
        """The ledger is trusted; payload changes after recording go unnoticed."""
        path = write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        await runner.run()

        path.write_text("CREATE TABLE a_renamed (x INTEGER);")
        report = await runner.run()

        assert report.skipped == ["001_a"]
        assert not await table_exists(pool, "a_renamed")

    @pytest.mark.asyncio
    async def test_ignores_non_sql_files(self, runner, migrations_dir, write_migration):
        """Only *.sql files directly inside the directory are units."""
        (migrations_dir / "README.md").write_text("# notes")
        (migrations_dir / "rollbacks" / "001_a.sql").write_text("DROP TABLE a;")
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")

        report = await runner.run()

        assert [r.name for r in report.records] == ["001_a"]

    @pytest.mark.asyncio
    async def test_missing_source_directory(self, pool, tmp_path):
        """An unreadable source fails before anything is applied."""
        runner = MigrationRunner(pool, MigrationSource(tmp_path / "nowhere"))

        with pytest.raises(MigrationSourceError) as exc_info:
            await runner.run()

        assert exc_info.value.kind == ErrorKind.SOURCE

    @pytest.mark.asyncio
    async def test_unreadable_unit_fails_before_any_apply(
        self, runner, pool, write_migration
    ):
        """An unreadable later unit stops the run before earlier units are applied."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        path = write_migration("002_b", "CREATE TABLE b (x INTEGER);")
        path.write_bytes(b"\xff\xfe not utf-8")

        with pytest.raises(MigrationSourceError) as exc_info:
            await runner.run()

        assert exc_info.value.kind == ErrorKind.SOURCE
        assert not await table_exists(pool, "a")
        assert await ledger_names(pool) == []

    @pytest.mark.asyncio
    async def test_connection_failure(self, db_config, tmp_path, write_migration):
        """No connection means no unit is touched."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        bad_config = DatabaseConfig(
            url=f"sqlite:///{tmp_path / 'missing' / 'dir' / 'db.sqlite'}",
            migrations_dir=db_config.migrations_dir,
            pool_size=1,
        )
        pool = ConnectionPool(bad_config)
        runner = MigrationRunner.from_config(pool, bad_config)

        try:
            with pytest.raises(MigrationConnectionError) as exc_info:
                await runner.run()
        finally:
            await pool.close()

        assert exc_info.value.kind == ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_ledger_conflict_is_classified(self, runner, pool, write_migration):
        """A unique violation on the ledger insert is a conflict, not a bad unit."""
        write_migration("001_a", "CREATE TABLE IF NOT EXISTS a (x INTEGER);")
        await runner.run()

        # Simulate a second runner that read the ledger before the first committed
        with patch.object(runner, "_load_applied", AsyncMock(return_value=set())):
            with pytest.raises(LedgerConflictError) as exc_info:
                await runner.run()

        assert exc_info.value.unit_name == "001_a"
        assert exc_info.value.kind == ErrorKind.LEDGER_CONFLICT
        assert await ledger_names(pool) == ["001_a"]

    @pytest.mark.asyncio
    async def test_custom_ledger_table(self, pool, migrations_dir, write_migration):
        """The ledger table name is configurable."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        runner = MigrationRunner(pool, MigrationSource(migrations_dir), table="applied_units")

        await runner.run()

        assert await ledger_names(pool, "applied_units") == ["001_a"]

    def test_invalid_ledger_table_name(self, migrations_dir):
        with pytest.raises(ValueError, match="Invalid ledger table name"):
            MigrationRunner(
                MagicMock(), MigrationSource(migrations_dir), table="x; DROP TABLE y"
            )

    @pytest.mark.asyncio
    async def test_cancellation_waits_for_unit(self, runner, write_migration):
        """Cancelling mid-unit lets the unit finish and stops before the next."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        write_migration("002_b", "CREATE TABLE b (x INTEGER);")

        started = asyncio.Event()
        finished: list[str] = []

        async def slow_apply(conn, unit):
            started.set()
            await asyncio.sleep(0.05)
            finished.append(unit.name)
            return MigrationRecord(unit.name, MigrationOutcome.APPLIED, 50)

        with patch.object(runner, "_apply", side_effect=slow_apply):
            task = asyncio.create_task(runner.run())
            await started.wait()
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert finished == ["001_a"]

    @pytest.mark.asyncio
    async def test_cancellation_keeps_unit_failure(self, runner, write_migration, caplog):
        """A unit that fails after cancellation is still reported as failed."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        write_migration("002_b", "CREATE TABLE b (x INTEGER);")

        started = asyncio.Event()
        error = MigrationApplyError("001_a", QueryError("no such table: gems"))

        async def slow_failing_apply(conn, unit):
            started.set()
            await asyncio.sleep(0.05)
            raise error

        with patch.object(runner, "_apply", side_effect=slow_failing_apply) as apply_mock:
            task = asyncio.create_task(runner.run())
            await started.wait()
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert apply_mock.await_count == 1
        assert error.report is not None
        assert error.report.failed.name == "001_a"
        assert "no such table: gems" in error.report.failed.error
        assert "Failed to apply migration 001_a" in caplog.text


class TestRollback:
    """Tests for MigrationRunner.rollback()."""

    @pytest.mark.asyncio
    async def test_rollback_removes_entry(self, runner, pool, write_migration):
        """Reverse statements run and the ledger entry is deleted."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);", rollback="DROP TABLE a;")
        await runner.run()

        record = await runner.rollback("001_a")

        assert record.outcome == MigrationOutcome.ROLLED_BACK
        assert await ledger_names(pool) == []
        assert not await table_exists(pool, "a")

        # The unit is pending again
        report = await runner.run()
        assert report.applied == ["001_a"]

    @pytest.mark.asyncio
    async def test_rollback_not_found(self, runner, pool, write_migration):
        """Unknown units fail without touching the ledger."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        await runner.run()

        with pytest.raises(RollbackNotFoundError) as exc_info:
            await runner.rollback("999_missing")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert await ledger_names(pool) == ["001_a"]

    @pytest.mark.asyncio
    async def test_rollback_without_rollback_source(self, pool, migrations_dir):
        runner = MigrationRunner(pool, MigrationSource(migrations_dir))

        with pytest.raises(RollbackNotFoundError):
            await runner.rollback("001_a")

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_entry(self, runner, pool, write_migration):
        """A failing reverse script changes nothing."""
        write_migration(
            "001_a",
            "CREATE TABLE a (x INTEGER);",
            rollback="DROP TABLE a; DROP TABLE never_existed;",
        )
        await runner.run()

        with pytest.raises(MigrationApplyError) as exc_info:
            await runner.rollback("001_a")

        assert exc_info.value.unit_name == "001_a"
        assert await ledger_names(pool) == ["001_a"]
        assert await table_exists(pool, "a")


class TestStatus:
    """Tests for pending and status reporting."""

    @pytest.mark.asyncio
    async def test_get_pending(self, runner, write_migration):
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        write_migration("002_b", "CREATE TABLE b (x INTEGER);")

        assert [u.name for u in await runner.get_pending()] == ["001_a", "002_b"]
        await runner.run()
        assert await runner.get_pending() == []

    @pytest.mark.asyncio
    async def test_get_status(self, runner, pool, write_migration):
        """Applied, pending and orphaned units are all reported."""
        write_migration("001_a", "CREATE TABLE a (x INTEGER);")
        await runner.run()
        write_migration("002_b", "CREATE TABLE b (x INTEGER);")
        await pool.execute("INSERT INTO schema_migrations (name) VALUES ('000_removed')")

        statuses = {s.name: s for s in await runner.get_status()}

        assert statuses["001_a"].status == MigrationStatus.APPLIED
        assert statuses["001_a"].applied_at is not None
        assert statuses["002_b"].status == MigrationStatus.PENDING
        assert statuses["000_removed"].status == MigrationStatus.ORPHANED
        assert list(statuses) == ["000_removed", "001_a", "002_b"]


class TestShippedMigrations:
    """The migrations shipped with the package apply and roll back cleanly."""

    @pytest.mark.asyncio
    async def test_apply_and_roll_back_all(self, pool):
        runner = MigrationRunner(
            pool,
            MigrationSource(DEFAULT_MIGRATIONS_DIR),
            RollbackSource(DEFAULT_MIGRATIONS_DIR / "rollbacks"),
        )

        report = await runner.run()

        assert report.applied == MigrationSource(DEFAULT_MIGRATIONS_DIR).names()
        for table in ("products", "customers", "admins", "cart_items", "orders", "consultations"):
            assert await table_exists(pool, table)

        # The updated_at trigger came through intact
        triggers = await pool.query(
            "SELECT name FROM sqlite_master WHERE type = 'trigger'"
        )
        assert [t["name"] for t in triggers] == ["trg_products_updated_at"]

        for name in reversed(report.applied):
            await runner.rollback(name)

        assert await ledger_names(pool) == []
        assert not await table_exists(pool, "products")
