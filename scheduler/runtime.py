"""
JobSystem — owns every long-lived piece of the job subsystem.

Built once per process (API lifespan, worker entry point, tests) and passed
to whoever needs it; there are no module-level queue or worker handles.

    JobSystem
     ├── registry     job name → dedup strategy / handler
     ├── outbox       job record store access
     ├── broker       Redis queue (producer side)
     ├── dispatcher   enqueue() entry point
     ├── promoter     periodic store → broker promotion
     ├── sweeper      periodic retention expiry
     └── pool         worker threads (only where start(run_workers=True))

Shutdown order is fixed: promoter → sweeper → worker pool → broker
connections, so nothing is still pushing into a queue that is closing.
"""

import logging
from typing import Optional
from uuid import UUID

from redis import Redis

from broker.base import AbstractBroker, BrokerError
from broker.redis_queue import RedisJobQueue
from config.settings import settings
from jobs.cleanup import CleanupJob
from jobs.registry import JobRegistry, build_default_registry
from models.job import JobRecord
from models.timeutils import utcnow
from outbox.service import OutboxService
from scheduler.dispatcher import Dispatcher
from scheduler.promoter import Promoter, RetentionSweeper
from worker.executor import JobExecutor
from worker.pool import WorkerPool

logger = logging.getLogger(__name__)


class JobSystem:

    def __init__(
        self,
        session_factory,
        broker: AbstractBroker,
        registry: Optional[JobRegistry] = None,
        worker_broker: Optional[AbstractBroker] = None,
        clock=utcnow,
    ):
        self.registry = registry or build_default_registry()
        self.outbox = OutboxService(session_factory, self.registry, clock=clock)
        self.registry.register("DatabaseCleanup", CleanupJob(self.outbox))

        self.broker = broker
        # blocking pops need their own connection (and a longer socket timeout)
        self.worker_broker = worker_broker or broker
        self.dispatcher = Dispatcher(self.outbox, broker, clock=clock)
        self.promoter = Promoter(self.outbox, broker, clock=clock)
        self.sweeper = RetentionSweeper(self.outbox)
        self.pool: Optional[WorkerPool] = None

    @classmethod
    def from_settings(cls, session_factory=None, registry: Optional[JobRegistry] = None) -> "JobSystem":
        """Production wiring: PostgreSQL sessions and two Redis connections."""
        if session_factory is None:
            from models.base import SessionLocal
            session_factory = SessionLocal

        redis_client = Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        )
        worker_client = Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT + settings.WORKER_POLL_INTERVAL,
            socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        )
        return cls(
            session_factory,
            RedisJobQueue(redis_client),
            registry=registry,
            worker_broker=RedisJobQueue(worker_client),
        )

    def build_worker_pool(self) -> WorkerPool:
        executor = JobExecutor(self.outbox, self.worker_broker, self.registry)
        return WorkerPool(self.worker_broker, executor)

    def start(self, run_promoter: bool = True, run_workers: bool = False, run_sweeper: bool = True) -> None:
        if run_promoter:
            self.promoter.start()
        if run_sweeper:
            self.sweeper.start()
        if run_workers:
            self.pool = self.build_worker_pool()
            self.pool.start()

    def stop(self) -> None:
        self.promoter.stop()
        self.sweeper.stop()
        if self.pool is not None:
            self.pool.stop()
            self.pool = None
        self.broker.close()
        if self.worker_broker is not self.broker:
            self.worker_broker.close()
        logger.info("Job system stopped")

    def cancel(self, record_id: UUID) -> JobRecord:
        """
        Cancel a record and drop its broker job if it has not started yet.

        A job a worker is already running finishes, but its completion is
        rejected because the record is no longer promoted.
        """
        record = self.outbox.cancel(record_id)
        try:
            if self.broker.remove(record.dedup_key):
                logger.info(f"Removed queued broker job for cancelled job {record.dedup_key}")
        except BrokerError as e:
            logger.warning(f"Could not remove broker job for {record.dedup_key}: {e}")
        return record
