"""
Job executor — runs a single broker job inside a worker thread.

    1. Load the job record; if it is no longer promoted (cancelled, or
       already finished), drop the broker job without running anything
    2. Find the handler registered for the job name
    3. Call handler.run(payload)
    4. On success: mark the record completed, store the result
    5. On failure: delegate to RetryHandler (broker retry or mark_failed)

Thread safety: each outbox call opens and closes its own session and
handlers are expected to be stateless, so many threads can call execute()
at once without locks.
"""

import logging
import time
from uuid import UUID

from broker.base import AbstractBroker, BrokerError, QueuedJob
from jobs.registry import JobRegistry
from models.enums import JobStatus
from outbox.errors import OutboxError
from outbox.service import OutboxService
from worker.retry import RetryHandler

logger = logging.getLogger(__name__)


class JobExecutor:

    def __init__(
        self,
        outbox: OutboxService,
        broker: AbstractBroker,
        registry: JobRegistry,
        retry_handler: RetryHandler | None = None,
    ):
        self._outbox = outbox
        self._broker = broker
        self._registry = registry
        self._retry_handler = retry_handler or RetryHandler(outbox, broker)

    def execute(self, job: QueuedJob) -> dict:
        """
        Execute a single job. Called by WorkerPool from a thread.

        Returns:
            dict with execution status (for logging/debugging, not stored)
        """
        record_id = UUID(job.record_id) if job.record_id else None
        record = self._outbox.get(record_id) if record_id else None

        # ── Step 1: Is the record still waiting for us? ─────────
        if record is None or record.status != JobStatus.PROMOTED.value:
            status = record.status if record else "missing"
            logger.warning(f"Job {job.token} record is {status}, skipping")
            self._ack(job)
            return {"status": "skipped", "token": job.token}

        # ── Step 2: Find handler and execute ────────────────────
        try:
            handler = self._registry.get_handler(job.name)
            start_time = time.monotonic()
            result = handler.run(job.payload) or {}
            elapsed = time.monotonic() - start_time
        except Exception as e:
            logger.error(f"Job {job.token} [{job.name}] failed: {e}")
            self._retry_handler.handle_failure(job, record.id, str(e))
            return {"status": "failed", "token": job.token, "error": str(e)}

        # ── Step 3: Mark COMPLETED ──────────────────────────────
        try:
            self._outbox.mark_completed(
                record.id, {**result, "execution_time_sec": round(elapsed, 3)}
            )
        except OutboxError as e:
            logger.error(f"Job {job.token} ran but its record could not be completed: {e}")
        self._ack(job)

        logger.info(f"Job {job.token} [{job.name}] completed in {elapsed:.3f}s")
        return {"status": "completed", "token": job.token}

    def _ack(self, job: QueuedJob) -> None:
        try:
            self._broker.ack(job)
        except BrokerError as e:
            logger.error(f"Could not ack job {job.token}: {e}")
