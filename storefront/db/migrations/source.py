"""Migration sources on disk.

Provides:
- Discovery of ``*.sql`` migration units in a directory, ordered by name
- Lookup of rollback payloads keyed by unit name
- Creation of new, numbered migration files
"""

import logging
import re
from pathlib import Path
from textwrap import dedent
from typing import Optional

from .base import MigrationSourceError, MigrationUnit

logger = logging.getLogger(__name__)

MIGRATION_SUFFIX = ".sql"
VERSION_WIDTH = 4

_VERSION_RE = re.compile(r"^(\d+)")


def _read_sql(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MigrationSourceError(f"Cannot read migration file {path}: {e}") from e


class MigrationSource:
    """Directory of migration units.

    Every ``*.sql`` file directly inside the directory is a unit named
    after its file stem. Ascending lexicographic order of names is the
    application order, so names should start with a zero-padded number
    (``0001_initial_schema.sql``). Other files and subdirectories are
    ignored.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def discover(self) -> list[Path]:
        """List migration files sorted by unit name.

        Raises:
            MigrationSourceError: If the directory cannot be listed
        """
        if not self.directory.is_dir():
            raise MigrationSourceError(f"Migrations directory not found: {self.directory}")

        try:
            paths = [
                p
                for p in self.directory.iterdir()
                if p.suffix == MIGRATION_SUFFIX and p.is_file()
            ]
        except OSError as e:
            raise MigrationSourceError(
                f"Cannot list migrations directory {self.directory}: {e}"
            ) from e

        paths.sort(key=lambda p: p.stem)
        logger.debug(f"Discovered {len(paths)} migration files in {self.directory}")
        return paths

    def names(self) -> list[str]:
        """Get all unit names in application order."""
        return [p.stem for p in self.discover()]

    def load_unit(self, path: Path) -> MigrationUnit:
        """Read a single migration file."""
        return MigrationUnit(name=path.stem, path=path, sql=_read_sql(path))

    def load(self, exclude: Optional[set[str]] = None) -> list[MigrationUnit]:
        """Load units in application order.

        Args:
            exclude: Unit names to leave out without reading their files

        Returns:
            Loaded units
        """
        exclude = exclude or set()
        return [self.load_unit(p) for p in self.discover() if p.stem not in exclude]

    def next_version(self) -> str:
        """Get the zero-padded number for the next migration."""
        numbers = [
            int(match.group(1))
            for match in (_VERSION_RE.match(name) for name in self.names())
            if match
        ]
        return str(max(numbers, default=0) + 1).zfill(VERSION_WIDTH)


class RollbackSource:
    """Directory of rollback payloads, one ``<unit name>.sql`` per unit."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}{MIGRATION_SUFFIX}"

    def has(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def get(self, name: str) -> Optional[str]:
        """Get the rollback SQL registered for a unit.

        Returns:
            The payload, or None if no rollback file exists
        """
        path = self.path_for(name)
        if not path.is_file():
            return None
        return _read_sql(path)


def normalize_name(name: str) -> str:
    """Turn free text into a migration file slug."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    if not slug:
        raise ValueError(f"Invalid migration name: {name!r}")
    return slug


def create_migration(
    source: MigrationSource,
    rollbacks: RollbackSource,
    name: str,
) -> tuple[Path, Path]:
    """Create an empty migration file and its rollback file.

    Args:
        source: Migration source to add to
        rollbacks: Rollback source to add to
        name: Human-readable migration name

    Returns:
        Tuple of (migration path, rollback path)

    Raises:
        FileExistsError: If the migration file already exists
    """
    source.directory.mkdir(parents=True, exist_ok=True)
    unit_name = f"{source.next_version()}_{normalize_name(name)}"

    migration_path = source.directory / f"{unit_name}{MIGRATION_SUFFIX}"
    if migration_path.exists():
        raise FileExistsError(f"Migration file already exists: {migration_path}")

    title = unit_name.split("_", 1)[1].replace("_", " ")
    migration_path.write_text(
        dedent(f"""\
            -- Migration {unit_name}: {title}
            -- Statements run verbatim inside a single transaction.

        """)
    )

    rollbacks.directory.mkdir(parents=True, exist_ok=True)
    rollback_path = rollbacks.path_for(unit_name)
    rollback_path.write_text(
        dedent(f"""\
            -- Rollback for {unit_name}
            -- Reverse the statements of the migration; runs in a single transaction.

        """)
    )

    logger.info(f"Created migration {unit_name}")
    return migration_path, rollback_path
