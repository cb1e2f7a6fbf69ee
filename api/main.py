"""
FastAPI application factory.

This file:
1. Creates the FastAPI app
2. Runs startup logic (create DB tables, build the JobSystem, start the promoter)
3. Registers all routers (jobs, health)
4. Runs shutdown logic (stop promoter and sweeper, close Redis, dispose the DB pool)

The API process submits jobs and runs the promoter; it never executes
handlers. Workers run in the separate worker process (worker/main.py).

To run:  uvicorn api.main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config.settings import settings
from models.base import Base, engine
from scheduler.runtime import JobSystem
from api.routers import jobs, health

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Runs on startup (before yield) and shutdown (after yield).

    Startup:
    - Creates all DB tables if they don't exist (safe to run multiple times)
    - Builds the JobSystem (outbox, broker, dispatcher, promoter)
    - Starts the periodic promoter and retention sweeper

    Shutdown:
    - Stops them, closes Redis connections
    - Disposes the DB engine (closes connection pool)
    """
    # ── Startup ─────────────────────────────────────────────────
    logger.info("Creating database tables...")
    Base.metadata.create_all(engine)

    app.state.jobs = JobSystem.from_settings()
    app.state.jobs.start(
        run_promoter=settings.API_RUN_PROMOTER,
        run_workers=False,
        run_sweeper=settings.API_RUN_PROMOTER,
    )
    logger.info(f"API ready — queue: {settings.QUEUE_NAME}")

    yield  # app is running and serving requests between startup and shutdown

    # ── Shutdown ────────────────────────────────────────────────
    app.state.jobs.stop()
    engine.dispose()
    logger.info("API shut down")


def create_app() -> FastAPI:
    """Factory function that builds and configures the FastAPI application."""
    app = FastAPI(
        title="Booking Job Outbox",
        description="Durable deferred jobs: PostgreSQL outbox, Redis broker, periodic promoter",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Register routers — each one adds its endpoints to the app
    app.include_router(health.router)
    app.include_router(jobs.router)

    return app


# This is what uvicorn imports: `uvicorn api.main:app`
app = create_app()
