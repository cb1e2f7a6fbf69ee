"""
Worker process entry point.

This is a SEPARATE process from the FastAPI API server.
It runs three background components from one JobSystem:

    1. Promoter — every minute, moves due pending records from PostgreSQL
       into the Redis broker (first pass a few seconds after startup)
    2. RetentionSweeper — deletes finished records past their retention
    3. WorkerPool — pops ready jobs from Redis and runs their handlers
       in a thread pool

The main thread just waits for Ctrl+C (SIGINT) or SIGTERM, then shuts
everything down in order: promoter → sweeper → workers → Redis.

To run:
    python -m worker.main

Handlers are registered by the host application before start; a job name
without a handler fails its attempts with "Unknown job type".
"""

import logging
import signal
import threading

from config.settings import settings
from models.base import Base, engine
from scheduler.runtime import JobSystem

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    # Safe to call multiple times; the API may have created the table already.
    logger.info("Ensuring database tables exist...")
    Base.metadata.create_all(engine)

    system = JobSystem.from_settings()
    system.start(run_promoter=True, run_workers=True, run_sweeper=True)

    # ── Graceful shutdown on Ctrl+C or SIGTERM ──────────────────
    shutdown_event = threading.Event()

    def shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info("Worker process running. Press Ctrl+C to stop.")

    # Block the main thread until shutdown signal
    # (using Event.wait() instead of signal.pause() for Windows compatibility)
    shutdown_event.wait()
    system.stop()

    logger.info("Worker process exited")


if __name__ == "__main__":
    main()
