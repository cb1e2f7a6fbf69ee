"""
Worker pool — manages a thread pool that executes jobs from the broker.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    WorkerPool                            │
    │                                                         │
    │  Feeder Thread                                          │
    │  ┌───────────────────────┐                              │
    │  │ broker.dequeue()      │  ← BZPOPMIN blocks until a   │
    │  │ (ready set)           │    job is ready              │
    │  └──────────┬────────────┘                              │
    │             │ submit()                                   │
    │             ▼                                            │
    │  ┌──────────────────────────────────────────┐           │
    │  │ ThreadPoolExecutor (WORKER_POOL_SIZE)     │           │
    │  │  JobExecutor.execute(job) per thread      │           │
    │  └──────────────────────────────────────────┘           │
    └─────────────────────────────────────────────────────────┘

The feeder waits on a semaphore before popping, so it never takes more
jobs off the broker than there are free threads. Jobs stay in Redis (and
survive a crash of this process) until a thread is ready for them.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

from broker.base import AbstractBroker, BrokerUnavailableError
from config.settings import settings
from worker.executor import JobExecutor

logger = logging.getLogger(__name__)


class WorkerPool:

    def __init__(
        self,
        broker: AbstractBroker,
        job_executor: JobExecutor,
        pool_size: int = settings.WORKER_POOL_SIZE,
        poll_interval: float = settings.WORKER_POLL_INTERVAL,
    ):
        self._broker = broker
        self._job_executor = job_executor
        self._pool_size = pool_size
        self._poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(
            max_workers=pool_size,
            thread_name_prefix="job-worker",
        )
        self._slots = threading.Semaphore(pool_size)
        self._running = False
        self._feeder: threading.Thread | None = None

    def start(self) -> None:
        """Start the feeder thread that hands jobs to the thread pool."""
        self._running = True
        self._feeder = threading.Thread(target=self._feed_loop, name="job-feeder", daemon=True)
        self._feeder.start()
        logger.info(f"Worker pool started with {self._pool_size} threads")

    def stop(self) -> None:
        """Stop taking new jobs, then wait for running ones to finish."""
        self._running = False
        if self._feeder is not None:
            self._feeder.join(self._poll_interval * 2 + 1)
            self._feeder = None
        self._executor.shutdown(wait=True)
        logger.info("Worker pool stopped")

    def _feed_loop(self) -> None:
        """
        Continuously pop ready jobs and submit them to the thread pool.

        dequeue() returns None after poll_interval seconds without a job,
        so the loop checks self._running regularly and can exit cleanly.
        """
        while self._running:
            if not self._slots.acquire(timeout=self._poll_interval):
                continue
            try:
                job = self._broker.dequeue(timeout=self._poll_interval)
            except BrokerUnavailableError as e:
                self._slots.release()
                logger.warning(f"Broker unavailable, worker pool idling: {e}")
                time.sleep(self._poll_interval)
                continue
            except Exception as e:
                self._slots.release()
                logger.error(f"Dequeue error: {e}", exc_info=True)
                continue

            if job is None:
                self._slots.release()
                continue

            logger.debug(f"Dispatching job {job.token} to thread pool")
            future: Future = self._executor.submit(self._job_executor.execute, job)
            future.add_done_callback(self._on_job_done)

    def _on_job_done(self, future: Future) -> None:
        """
        Callback fired when a worker thread finishes executing a job.

        Frees the slot and logs unhandled exceptions — all normal
        success/failure handling happens inside JobExecutor.execute().
        """
        self._slots.release()
        exc = future.exception()
        if exc:
            logger.error(f"Unhandled worker exception: {exc}")
