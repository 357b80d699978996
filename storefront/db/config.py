"""Database configuration.

Environment-based configuration for the storefront database,
its migration directories and the startup retry policy.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

PACKAGE_DIR = Path(__file__).parent
DEFAULT_MIGRATIONS_DIR = PACKAGE_DIR / "migrations" / "versions"
DEFAULT_SEEDS_DIR = PACKAGE_DIR / "seeds"

SQLITE_URL_PREFIX = "sqlite:///"
MEMORY_DATABASE = ":memory:"

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class DatabaseConfig:
    """Database connection and migration configuration.

    Attributes:
        url: Database URL (``sqlite:///path/to/file.db`` or a plain path)
        pool_size: Connection pool size
        connect_timeout: Connection timeout in seconds
        query_timeout: Busy timeout for locked databases in seconds
        retry_attempts: Startup connection attempts before giving up
        retry_delay: Delay before the first retry in seconds
        retry_backoff: Multiplier applied to the delay after each failed attempt
        migrations_dir: Directory containing migration SQL files
        rollbacks_dir: Directory containing rollback SQL files
        seeds_dir: Directory containing seed SQL files
        migrations_table: Name of the ledger table
        app_env: Deployment environment name
    """

    url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///storefront.db")
    )
    pool_size: int = field(default_factory=lambda: int(os.getenv("DB_POOL_SIZE", "5")))
    connect_timeout: float = field(
        default_factory=lambda: float(os.getenv("DB_CONNECT_TIMEOUT", "10.0"))
    )
    query_timeout: float = field(
        default_factory=lambda: float(os.getenv("DB_QUERY_TIMEOUT", "30.0"))
    )
    retry_attempts: int = field(
        default_factory=lambda: int(os.getenv("DB_RETRY_ATTEMPTS", "5"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("DB_RETRY_DELAY", "3.0"))
    )
    retry_backoff: float = field(
        default_factory=lambda: float(os.getenv("DB_RETRY_BACKOFF", "2.0"))
    )
    migrations_dir: Path = field(
        default_factory=lambda: Path(os.getenv("MIGRATIONS_DIR", str(DEFAULT_MIGRATIONS_DIR)))
    )
    rollbacks_dir: Optional[Path] = field(
        default_factory=lambda: Path(os.environ["ROLLBACKS_DIR"])
        if os.getenv("ROLLBACKS_DIR")
        else None
    )
    seeds_dir: Path = field(
        default_factory=lambda: Path(os.getenv("SEEDS_DIR", str(DEFAULT_SEEDS_DIR)))
    )
    migrations_table: str = field(
        default_factory=lambda: os.getenv("MIGRATIONS_TABLE", "schema_migrations")
    )
    app_env: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))

    def __post_init__(self) -> None:
        self.migrations_dir = Path(self.migrations_dir)
        self.seeds_dir = Path(self.seeds_dir)
        # Rollbacks live next to the migrations unless configured otherwise
        if self.rollbacks_dir is None:
            self.rollbacks_dir = self.migrations_dir / "rollbacks"
        else:
            self.rollbacks_dir = Path(self.rollbacks_dir)

    @property
    def database_path(self) -> str:
        """Filesystem path (or ``:memory:``) the SQLite driver opens."""
        if self.url.startswith(SQLITE_URL_PREFIX):
            return self.url[len(SQLITE_URL_PREFIX):] or MEMORY_DATABASE
        return self.url

    @property
    def is_memory(self) -> bool:
        """Check if the database lives only in memory."""
        return self.database_path == MEMORY_DATABASE

    @property
    def effective_pool_size(self) -> int:
        """Pool size actually used.

        Each connection to ``:memory:`` opens a distinct database,
        so an in-memory database is served by a single connection.
        """
        if self.is_memory:
            return 1
        return max(1, self.pool_size)

    @property
    def environment(self) -> Environment:
        """Resolve the deployment environment, defaulting to development."""
        try:
            return Environment(self.app_env.lower())
        except ValueError:
            return Environment.DEVELOPMENT

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.url:
            errors.append("DATABASE_URL is required")
        elif "://" in self.url and not self.url.startswith(SQLITE_URL_PREFIX):
            errors.append("DATABASE_URL must be a sqlite:/// URL or a file path")

        if self.pool_size < 1:
            errors.append("DB_POOL_SIZE must be at least 1")

        if self.retry_attempts < 1:
            errors.append("DB_RETRY_ATTEMPTS must be at least 1")

        if self.retry_delay < 0 or self.retry_backoff < 1:
            errors.append("DB_RETRY_DELAY must be >= 0 and DB_RETRY_BACKOFF >= 1")

        if not IDENTIFIER_RE.match(self.migrations_table):
            errors.append(
                "MIGRATIONS_TABLE must be letters, digits and underscores, not starting with a digit"
            )

        if self.environment == Environment.PRODUCTION and self.is_memory:
            errors.append("An in-memory database cannot be used in production")

        return errors


# Global configuration instance
_config: Optional[DatabaseConfig] = None


def get_config() -> DatabaseConfig:
    """Get the global database configuration.

    Returns:
        DatabaseConfig instance
    """
    global _config
    if _config is None:
        _config = DatabaseConfig()
    return _config


def set_config(config: Optional[DatabaseConfig]) -> None:
    """Set the global database configuration.

    Args:
        config: Configuration to use (None resets to environment defaults)
    """
    global _config
    _config = config
