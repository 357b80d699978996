"""CLI for database migrations.

Usage:
    python -m storefront.db.migrations migrate
    python -m storefront.db.migrations rollback 0003_orders
    python -m storefront.db.migrations status
    python -m storefront.db.migrations create add_gift_wrapping
    python -m storefront.db.migrations seed
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from textwrap import dedent
from typing import Optional

from ..config import DatabaseConfig, get_config
from ..connection import ConnectionPool, QueryError
from ..seed import SeedError, run_seeds
from .base import MigrationError, MigrationStatus
from .runner import MigrationRunner
from .source import MigrationSource, RollbackSource, create_migration

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_config(args: argparse.Namespace) -> DatabaseConfig:
    """Apply command-line overrides to the environment configuration."""
    overrides = {}
    if args.database:
        overrides["url"] = args.database
    if args.migrations_dir:
        overrides["migrations_dir"] = Path(args.migrations_dir)
        # Default rollbacks dir follows the migrations dir
        overrides["rollbacks_dir"] = Path(args.migrations_dir) / "rollbacks"
    if args.rollbacks_dir:
        overrides["rollbacks_dir"] = Path(args.rollbacks_dir)
    if args.seeds_dir:
        overrides["seeds_dir"] = Path(args.seeds_dir)
    return replace(get_config(), **overrides)


async def cmd_migrate(runner: MigrationRunner) -> int:
    """Apply pending migrations."""
    pending = await runner.get_pending()
    if not pending:
        print("No pending migrations")
        return 0

    print(f"Pending migrations: {len(pending)}")
    for unit in pending:
        print(f"  - {unit.name}")
    print()

    try:
        report = await runner.run()
    except MigrationError as e:
        if e.report and e.report.applied:
            print(f"Applied {len(e.report.applied)} migration(s) before the failure:")
            for name in e.report.applied:
                print(f"  + {name}")
        print(f"\nFailed: {e}")
        return 1

    print(f"Applied {len(report.applied)} migration(s):")
    for record in report.records:
        if record.name in report.applied:
            print(f"  + {record.name} ({record.execution_time_ms}ms)")

    return 0


async def cmd_rollback(runner: MigrationRunner, name: str) -> int:
    """Rollback one applied migration."""
    try:
        record = await runner.rollback(name)
    except MigrationError as e:
        print(f"Failed: {e}")
        return 1

    print(f"Rolled back {record.name} ({record.execution_time_ms}ms)")
    return 0


async def cmd_status(runner: MigrationRunner, config: DatabaseConfig) -> int:
    """Show migration status."""
    statuses = await runner.get_status()

    if not statuses:
        print("No migrations found")
        return 0

    print(f"Migration status for database: {config.database_path}")
    print("-" * 60)

    for status in statuses:
        status_icon = {
            MigrationStatus.PENDING: "[ ]",
            MigrationStatus.APPLIED: "[x]",
            MigrationStatus.ORPHANED: "[?]",
        }.get(status.status, "[?]")

        line = f"{status_icon} {status.name}"
        if status.applied_at:
            line += f" (applied: {status.applied_at.strftime('%Y-%m-%d %H:%M')})"
        if status.status == MigrationStatus.ORPHANED:
            line += " (no migration file)"

        print(line)

    print("-" * 60)

    applied = sum(1 for s in statuses if s.status == MigrationStatus.APPLIED)
    pending = sum(1 for s in statuses if s.status == MigrationStatus.PENDING)
    print(f"Total: {len(statuses)} | Applied: {applied} | Pending: {pending}")

    return 0


def cmd_create(config: DatabaseConfig, name: str) -> int:
    """Create a new migration file."""
    try:
        migration_path, rollback_path = create_migration(
            MigrationSource(config.migrations_dir),
            RollbackSource(config.rollbacks_dir),
            name,
        )
    except (FileExistsError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Created migration: {migration_path}")
    print(f"Created rollback:  {rollback_path}")
    print()
    print("Edit the files to add your SQL statements.")
    return 0


async def cmd_seed(pool: ConnectionPool, config: DatabaseConfig) -> int:
    """Run seed files."""
    try:
        completed = await run_seeds(pool, config.seeds_dir)
    except SeedError as e:
        print(f"Failed: {e}")
        return 1

    print(f"Ran {len(completed)} seed file(s)")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="Storefront database migration management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=dedent("""
            Examples:
              # Apply all pending migrations
              python -m storefront.db.migrations migrate

              # Rollback one migration
              python -m storefront.db.migrations rollback 0003_orders

              # Check status against another database
              python -m storefront.db.migrations --database sqlite:///staging.db status

              # Create new migration
              python -m storefront.db.migrations create add_gift_wrapping
        """),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--database",
        help="Database URL (overrides DATABASE_URL)",
    )
    parser.add_argument(
        "--migrations-dir",
        help="Migrations directory (overrides MIGRATIONS_DIR)",
    )
    parser.add_argument(
        "--rollbacks-dir",
        help="Rollbacks directory (overrides ROLLBACKS_DIR)",
    )
    parser.add_argument(
        "--seeds-dir",
        help="Seeds directory (overrides SEEDS_DIR)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("migrate", help="Apply pending migrations")

    rollback_parser = subparsers.add_parser(
        "rollback",
        help="Rollback one applied migration",
    )
    rollback_parser.add_argument(
        "name",
        help="Migration name (e.g., 0003_orders)",
    )

    subparsers.add_parser("status", help="Show migration status")

    create_parser_cmd = subparsers.add_parser(
        "create",
        help="Create a new migration file",
    )
    create_parser_cmd.add_argument(
        "name",
        help="Migration name (e.g., add_gift_wrapping)",
    )

    subparsers.add_parser("seed", help="Run seed files")

    return parser


async def async_main(args: argparse.Namespace, config: DatabaseConfig) -> int:
    """Async main entry point."""
    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}")
        return 1

    pool = ConnectionPool(config)
    runner = MigrationRunner.from_config(pool, config)

    try:
        if args.command == "migrate":
            return await cmd_migrate(runner)
        elif args.command == "rollback":
            return await cmd_rollback(runner, args.name)
        elif args.command == "status":
            return await cmd_status(runner, config)
        elif args.command == "seed":
            return await cmd_seed(pool, config)
        else:
            print(f"Unknown command: {args.command}")
            return 1
    except (MigrationError, QueryError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        await pool.close()


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    config = build_config(args)

    # create only touches the filesystem
    if args.command == "create":
        sys.exit(cmd_create(config, args.name))

    exit_code = asyncio.run(async_main(args, config))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
