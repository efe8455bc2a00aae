"""
FastAPI application factory and configuration.

This module creates the FastAPI application instance,
configures routes and lifespan events.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from psycopg_pool import ConnectionPool

from idverify.adapters.repository.postgres import run_migrations
from idverify.api.dependencies import (
    build_gateway,
    build_registration_service,
    build_task_runner,
)
from idverify.api.v1 import router as v1_router
from idverify.config.settings import get_settings

logger = logging.getLogger(__name__)

# OpenAPI tags for documentation grouping
tags_metadata = [
    {
        "name": "v1",
        "description": "Identity Registration API v1 - Register, confirm and verify identities",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    Manages application startup and shutdown:
    - Creates database connection pool and runs migrations
    - Connects the verification gateway and starts the task runner
    - Purges stale drafts, then schedules the periodic sweep
    - Stops the runner, then closes the gateway and the pool on shutdown
    """
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    logger.info("Starting application...")
    logger.info("Connecting to database...")

    # Create connection pool with explicit sizing
    pool = ConnectionPool(
        conninfo=settings.database_url,
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
    )

    logger.info("Running database migrations...")
    run_migrations(pool)

    gateway = build_gateway(settings)
    gateway.connect()

    runner = build_task_runner(settings)
    service = build_registration_service(pool, gateway, runner, settings)
    runner.start()

    service.purge_stale_drafts()
    runner.schedule_periodic(
        settings.draft_purge_interval_seconds, service.purge_stale_drafts, name="draft-purge"
    )

    # Store shared objects in app state for dependency injection
    app.state.pool = pool
    app.state.gateway = gateway
    app.state.task_runner = runner
    app.state.registration_service = service

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    runner.close()
    gateway.close()
    pool.close()
    logger.info("Task runner, gateway and connection pool closed")


app = FastAPI(
    title="idverify",
    description="Identity Registration API - Draft identities promoted through OCR, "
    "OTP and face-enrollment gates",
    version="0.1.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Include v1 API routes
app.include_router(v1_router, prefix="/v1")


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    """
    Health check endpoint with database validation.

    Returns 200 OK if application and database are healthy.
    Raises exception if database connection fails.
    """
    pool = request.app.state.pool
    with pool.connection() as conn:
        conn.execute("SELECT 1")

    return {"status": "healthy"}
