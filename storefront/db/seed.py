"""Seed data loading.

Runs every ``*.sql`` file in the seeds directory in name order.
Seeds are not recorded anywhere, so they should be written to be
safe to run more than once (``INSERT OR IGNORE`` and the like).
"""

import logging
from pathlib import Path

from .connection import ConnectionError, ConnectionPool, QueryError

logger = logging.getLogger(__name__)


class SeedError(Exception):
    """A seed file failed to run."""

    def __init__(self, seed_file: str, cause: BaseException):
        super().__init__(f"Seed {seed_file} failed: {cause}")
        self.seed_file = seed_file
        self.cause = cause


async def run_seeds(pool: ConnectionPool, seeds_dir: Path) -> list[str]:
    """Run all seed files, each in its own transaction.

    Args:
        pool: Connection pool
        seeds_dir: Directory containing seed SQL files

    Returns:
        Names of the seed files that ran

    Raises:
        SeedError: On the first failing file; later files are not run
    """
    seeds_dir = Path(seeds_dir)
    if not seeds_dir.is_dir():
        logger.info(f"Seeds directory not found: {seeds_dir}")
        return []

    seed_files = sorted(p for p in seeds_dir.glob("*.sql") if p.is_file())
    completed: list[str] = []

    logger.info(f"Starting database seeding ({len(seed_files)} file(s))")
    for seed_file in seed_files:
        logger.info(f"Running seed: {seed_file.name}")
        try:
            sql = seed_file.read_text(encoding="utf-8")
            async with pool.transaction() as conn:
                await conn.execute_script(sql)
        except (OSError, QueryError, ConnectionError) as e:
            logger.error(f"Seeding failed at {seed_file.name}: {e}")
            raise SeedError(seed_file.name, e) from e

        completed.append(seed_file.name)

    logger.info("All seeds completed successfully")
    return completed
