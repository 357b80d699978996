"""
Storefront backend service - health surface over the database layer.

The lifespan handler owns the connection pool: it runs the startup
bootstrap (connect with retry, apply migrations) and closes the pool
on shutdown. Startup never fails on database problems; /api/health
reports them instead.
"""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel, Field

from . import __version__
from .bootstrap import BootstrapState, bootstrap_database
from .db.config import DatabaseConfig, get_config
from .db.connection import ConnectionPool
from .db.migrations import MigrationRunner

logger = logging.getLogger(__name__)


class MigrationHealth(BaseModel):
    status: str
    applied: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class ServicesHealth(BaseModel):
    database: dict[str, Any]
    migrations: MigrationHealth


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    environment: str
    services: ServicesHealth


def create_app(config: Optional[DatabaseConfig] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Database configuration (global config if None)
    """
    cfg = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        logger.info(f"Starting storefront backend ({cfg.environment.value})")
        errors = cfg.validate()
        for error in errors:
            logger.warning(f"Configuration problem: {error}")

        pool = ConnectionPool(cfg)
        app.state.pool = pool
        if errors:
            logger.error("Invalid configuration; skipping database bootstrap")
            app.state.bootstrap = BootstrapState(migration_error="; ".join(errors))
        else:
            app.state.bootstrap = await bootstrap_database(
                pool, MigrationRunner.from_config(pool, cfg), cfg
            )
        yield
        logger.info("Shutting down storefront backend")
        await pool.close()

    app = FastAPI(
        title="Storefront Backend",
        description="Database health for the storefront and admin back office",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint."""
        pool: ConnectionPool = request.app.state.pool
        state: BootstrapState = request.app.state.bootstrap

        database = await pool.health_check()
        migrations = MigrationHealth(
            status=state.migration_status,
            applied=state.applied,
            error=state.migration_error,
        )
        degraded = database["status"] != "healthy" or migrations.status != "ok"

        return HealthResponse(
            status="degraded" if degraded else "healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=__version__,
            environment=cfg.environment.value,
            services=ServicesHealth(database=database, migrations=migrations),
        )

    return app


def main() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
    )


if __name__ == "__main__":
    main()
