"""Database connection management.

Provides async connection pooling, explicit transactions and a
health check over SQLite (via aiosqlite). Driver exceptions are
translated here into ConnectionError / QueryError with a typed
QueryErrorKind so callers never inspect driver messages.
"""

import asyncio
import logging
import re
import sqlite3
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

import aiosqlite

from .config import DatabaseConfig, get_config

logger = logging.getLogger(__name__)

Params = Union[dict[str, Any], tuple[Any, ...], list[Any], None]

_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)


class QueryErrorKind(str, Enum):
    """Semantic category of a failed statement."""

    UNIQUE_VIOLATION = "unique_violation"
    CONSTRAINT = "constraint"
    SYNTAX = "syntax"
    OPERATIONAL = "operational"
    TIMEOUT = "timeout"


class ConnectionError(Exception):
    """Database connection error."""

    pass


class QueryError(Exception):
    """Database query error."""

    def __init__(self, message: str, kind: QueryErrorKind = QueryErrorKind.OPERATIONAL):
        super().__init__(message)
        self.kind = kind


def translate_error(exc: BaseException) -> Exception:
    """Translate a driver exception into ConnectionError or QueryError.

    Args:
        exc: Exception raised by aiosqlite / sqlite3

    Returns:
        Equivalent typed exception (not raised)
    """
    if isinstance(exc, (ConnectionError, QueryError)):
        return exc

    if isinstance(exc, asyncio.TimeoutError):
        return QueryError("Query timeout", QueryErrorKind.TIMEOUT)

    message = str(exc)
    lowered = message.lower()

    if isinstance(exc, aiosqlite.IntegrityError):
        if "unique constraint failed" in lowered or "primary key" in lowered:
            return QueryError(message, QueryErrorKind.UNIQUE_VIOLATION)
        return QueryError(message, QueryErrorKind.CONSTRAINT)

    if isinstance(exc, aiosqlite.OperationalError):
        if "unable to open database" in lowered:
            return ConnectionError(f"Failed to connect: {message}")
        if "database is locked" in lowered or "database is busy" in lowered:
            return QueryError(message, QueryErrorKind.TIMEOUT)
        if "syntax error" in lowered or "incomplete input" in lowered:
            return QueryError(message, QueryErrorKind.SYNTAX)
        return QueryError(message, QueryErrorKind.OPERATIONAL)

    if isinstance(exc, aiosqlite.Error):
        return QueryError(message, QueryErrorKind.OPERATIONAL)

    return QueryError(f"Query failed: {message}", QueryErrorKind.OPERATIONAL)


def _has_code(statement: str) -> bool:
    """Check if a chunk holds anything besides comments and separators."""
    return bool(_COMMENT_RE.sub("", statement).strip().strip(";").strip())


def split_statements(script: str) -> list[str]:
    """Split an SQL script into complete statements.

    The script is not parsed or validated; it is cut at semicolons
    that sqlite3 reports as ending a complete statement, so
    semicolons inside strings, comments and trigger bodies are kept.

    Args:
        script: Opaque SQL text

    Returns:
        Statements in source order
    """
    statements: list[str] = []
    buffer = ""

    *pieces, tail = script.split(";")
    for piece in pieces:
        buffer += piece + ";"
        if sqlite3.complete_statement(buffer):
            if _has_code(buffer):
                statements.append(buffer.strip())
            buffer = ""

    # Trailing text without a terminating semicolon
    buffer += tail
    if _has_code(buffer):
        statements.append(buffer.strip())

    return statements


def _log_duration(sql: str, start_time: float) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        duration_ms = (time.monotonic() - start_time) * 1000
        statement = " ".join(sql.split())
        logger.debug(f"Executed query in {duration_ms:.1f}ms: {statement[:120]}")


@dataclass
class ConnectionStats:
    """Connection pool statistics."""

    total_connections: int = 0
    active_connections: int = 0
    idle_connections: int = 0
    failed_connections: int = 0
    total_queries: int = 0
    failed_queries: int = 0
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None


class Connection:
    """A single database connection wrapper.

    The driver runs in autocommit mode; transactions are opened
    explicitly with ``transaction()``.
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize connection.

        Args:
            config: Database configuration
        """
        self.config = config
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if connection is active."""
        return self._db is not None

    @property
    def in_transaction(self) -> bool:
        """Check if a transaction is open on this connection."""
        return self._db is not None and self._db.in_transaction

    async def connect(self) -> None:
        """Open the database connection."""
        async with self._lock:
            if self._db is not None:
                return

            try:
                db = await asyncio.wait_for(
                    aiosqlite.connect(
                        self.config.database_path,
                        isolation_level=None,
                        timeout=self.config.query_timeout,
                    ),
                    timeout=self.config.connect_timeout,
                )
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                self._db = db
                logger.debug(f"Connected to database: {self.config.database_path}")

            except asyncio.TimeoutError as e:
                raise ConnectionError(
                    f"Connection timeout after {self.config.connect_timeout}s"
                ) from e
            except aiosqlite.Error as e:
                raise ConnectionError(f"Failed to connect: {e}") from e

    async def disconnect(self) -> None:
        """Close connection."""
        async with self._lock:
            if self._db:
                try:
                    await self._db.close()
                except Exception as e:
                    logger.warning(f"Error closing connection: {e}")
                finally:
                    self._db = None

    async def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.connect()
        assert self._db is not None
        return self._db

    async def query(self, sql: str, params: Params = None) -> list[dict[str, Any]]:
        """Execute a statement and return its rows.

        Args:
            sql: SQL statement
            params: Positional or named parameters

        Returns:
            List of rows as dicts
        """
        db = await self._ensure_connected()
        start_time = time.monotonic()

        try:
            async with db.execute(sql, params if params is not None else ()) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise translate_error(e) from e

        _log_duration(sql, start_time)
        return [dict(row) for row in rows]

    async def execute(self, sql: str, params: Params = None) -> int:
        """Execute a single statement.

        Args:
            sql: SQL statement
            params: Positional or named parameters

        Returns:
            Number of rows affected
        """
        db = await self._ensure_connected()
        start_time = time.monotonic()

        try:
            cursor = await db.execute(sql, params if params is not None else ())
            rowcount = cursor.rowcount
            await cursor.close()
        except aiosqlite.Error as e:
            raise translate_error(e) from e

        _log_duration(sql, start_time)
        return rowcount

    async def execute_script(self, script: str) -> int:
        """Execute every statement of an SQL script in order.

        Runs on the current transaction, if any.

        Args:
            script: Opaque SQL text

        Returns:
            Number of statements executed
        """
        statements = split_statements(script)
        for statement in statements:
            await self.execute(statement)
        return len(statements)

    async def _rollback(self) -> None:
        if not self.in_transaction:
            return
        try:
            await self.execute("ROLLBACK")
        except QueryError as e:
            logger.warning(f"Rollback failed: {e}")

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["Connection", None]:
        """Run the enclosed block in one transaction.

        Usage:
            async with conn.transaction():
                await conn.execute("INSERT INTO products (sku) VALUES (?)", ("R-001",))

        Commits on normal exit; rolls back and re-raises on any exception.
        """
        if self.in_transaction:
            raise QueryError("Nested transactions are not supported")

        await self.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except (Exception, asyncio.CancelledError):
            await self._rollback()
            raise

        try:
            await self.execute("COMMIT")
        except QueryError:
            await self._rollback()
            raise


class ConnectionPool:
    """Connection pool for the storefront database.

    Owned by whoever creates it; pass it explicitly to the
    components that need database access.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        """Initialize connection pool.

        Args:
            config: Database configuration (global config if None)
        """
        self.config = config or get_config()

        self._connections: list[Connection] = []
        self._available: asyncio.Queue[Connection] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._initialized = False
        self._stats = ConnectionStats()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def stats(self) -> ConnectionStats:
        """Get pool statistics."""
        self._stats.idle_connections = self._available.qsize()
        return self._stats

    async def initialize(self) -> None:
        """Open the pool's connections.

        Raises:
            ConnectionError: If no connection could be opened
        """
        async with self._lock:
            if self._initialized:
                return

            size = self.config.effective_pool_size
            for i in range(size):
                conn = Connection(self.config)
                try:
                    await conn.connect()
                    self._connections.append(conn)
                    await self._available.put(conn)
                    self._stats.total_connections += 1
                    self._stats.last_connected = datetime.now(timezone.utc)
                except ConnectionError as e:
                    self._stats.failed_connections += 1
                    self._stats.last_error = str(e)
                    logger.warning(f"Failed to create connection {i+1}: {e}")

            if not self._connections:
                raise ConnectionError(
                    f"Failed to create any connections: {self._stats.last_error}"
                )

            self._initialized = True
            logger.info(
                f"Connection pool initialized: {len(self._connections)} connections "
                f"to {self.config.database_path}"
            )

    async def close(self) -> None:
        """Close all connections in the pool."""
        async with self._lock:
            for conn in self._connections:
                await conn.disconnect()

            self._connections.clear()
            self._available = asyncio.Queue()
            self._initialized = False

            logger.info("Connection pool closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Acquire a connection from the pool.

        Usage:
            async with pool.acquire() as conn:
                rows = await conn.query("SELECT * FROM products")

        Yields:
            Connection instance
        """
        if not self._initialized:
            await self.initialize()

        conn = await self._available.get()
        self._stats.active_connections += 1

        try:
            if not conn.is_connected:
                await conn.connect()
            yield conn
        finally:
            self._stats.active_connections -= 1
            await self._available.put(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """Acquire a connection and run the enclosed block in one transaction."""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def query(self, sql: str, params: Params = None) -> list[dict[str, Any]]:
        """Execute a query using a pooled connection.

        Args:
            sql: SQL statement
            params: Query parameters

        Returns:
            Query results
        """
        async with self.acquire() as conn:
            self._stats.total_queries += 1
            try:
                return await conn.query(sql, params)
            except QueryError:
                self._stats.failed_queries += 1
                raise

    async def execute(self, sql: str, params: Params = None) -> int:
        """Execute a statement using a pooled connection."""
        async with self.acquire() as conn:
            self._stats.total_queries += 1
            try:
                return await conn.execute(sql, params)
            except QueryError:
                self._stats.failed_queries += 1
                raise

    async def health_check(self) -> dict[str, Any]:
        """Check that the database answers a trivial query.

        Returns:
            Dict with status, database state, timestamp and error (if any)
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            await self.query("SELECT 1 AS health")
            return {
                "status": "healthy",
                "database": "connected",
                "timestamp": timestamp,
            }
        except (ConnectionError, QueryError) as e:
            self._stats.last_error = str(e)
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "timestamp": timestamp,
                "error": str(e),
            }
