"""
Dispatcher — the single entry point for submitting deferred work.

    caller ──enqueue()──> OutboxService.submit()      (always, durable)
                              │
                              ├─ duplicate?            → skipped
                              ├─ no broker?            → deferred
                              ├─ due beyond horizon?   → scheduled
                              └─ claim + broker.enqueue
                                    ├─ ok              → immediate
                                    ├─ token held      → release claim, deferred
                                    └─ broker error    → release claim, deferred

Once submit() returns, the job WILL run: if the fast path fails for any
reason, the record is still pending and the promoter picks it up. The
outcome tags only tell the caller which path was taken.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union
from uuid import UUID

from broker.base import (
    AbstractBroker,
    BrokerError,
    BrokerUnavailableError,
)
from config.settings import settings
from models.job import JobRecord
from models.timeutils import ensure_utc, seconds_until, utcnow
from outbox.errors import InvalidTransitionError, OutboxError
from outbox.service import OutboxService
from scheduler.handoff import hand_off

logger = logging.getLogger(__name__)


@dataclass
class EnqueueResult:
    success: bool = True
    skipped: bool = False
    immediate: bool = False
    deferred: bool = False
    scheduled: bool = False
    reason: Optional[str] = None
    job_id: Optional[UUID] = None

    @property
    def outcome(self) -> str:
        for tag in ("skipped", "immediate", "deferred", "scheduled"):
            if getattr(self, tag):
                return tag
        return "unknown"

    def to_dict(self) -> dict:
        data = {"success": self.success, self.outcome: True}
        if self.reason:
            data["reason"] = self.reason
        if self.job_id is not None:
            data["job_id"] = str(self.job_id)
        return data


def _as_timedelta(delay: Union[timedelta, float, int]) -> timedelta:
    if isinstance(delay, timedelta):
        return delay
    return timedelta(seconds=delay)


class Dispatcher:

    def __init__(
        self,
        outbox: OutboxService,
        broker: Optional[AbstractBroker],
        horizon_seconds: float = settings.IMMEDIATE_HORIZON_SECONDS,
        clock=utcnow,
    ):
        self._outbox = outbox
        self._broker = broker
        self._horizon = horizon_seconds
        self._clock = clock

    def enqueue(
        self,
        job_name: str,
        payload: dict,
        run_at: Optional[datetime] = None,
        delay: Union[timedelta, float, None] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        promotion_window_minutes: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Persist a job, then try to hand it straight to the broker if it is due soon.

        run_at wins over delay; with neither the job is due now.

        Raises:
            PersistenceError: the record could not be stored. The job is NOT scheduled.
        """
        now = self._clock()
        if run_at is None and delay is not None:
            run_at = now + _as_timedelta(delay)
        run_at = ensure_utc(run_at) if run_at is not None else now

        submitted = self._outbox.submit(
            job_name,
            payload,
            run_at=run_at,
            priority=priority,
            max_attempts=max_attempts,
            promotion_window_minutes=promotion_window_minutes,
        )
        if submitted.duplicate:
            logger.info(f"Job {job_name} skipped (duplicate)")
            return EnqueueResult(
                skipped=True,
                reason=submitted.reason,
                job_id=submitted.record.id if submitted.record else None,
            )

        record = submitted.record
        if self._broker is None:
            logger.debug(f"No broker configured, job {job_name} will be promoted later")
            return EnqueueResult(deferred=True, job_id=record.id)

        wait = seconds_until(run_at, now)
        if wait > self._horizon:
            logger.debug(f"Job {job_name} scheduled for {run_at}, will be promoted later")
            return EnqueueResult(scheduled=True, job_id=record.id)

        return self._hand_off(record, wait)

    def _hand_off(self, record: JobRecord, delay: float) -> EnqueueResult:
        attempt_budget = record.remaining_attempts
        try:
            self._outbox.mark_promoted(record.id)
        except InvalidTransitionError:
            logger.debug(f"Job {record.dedup_key} already claimed by the promoter")
            return EnqueueResult(deferred=True, job_id=record.id)
        except OutboxError as e:
            logger.warning(f"Could not claim job {record.dedup_key}, leaving it to the promoter: {e}")
            return EnqueueResult(deferred=True, job_id=record.id)

        try:
            queued = hand_off(self._outbox, self._broker, record, delay, attempt_budget)
        except BrokerUnavailableError as e:
            logger.warning(f"Broker unavailable for job {record.job_name}, will be promoted later: {e}")
            self._release(record)
            return EnqueueResult(deferred=True, job_id=record.id)
        except BrokerError as e:
            logger.error(f"Failed to add job {record.job_name} to broker: {e}")
            self._release(record)
            return EnqueueResult(deferred=True, job_id=record.id)

        if not queued:
            # token held by another active record
            self._release(record)
            return EnqueueResult(deferred=True, job_id=record.id)

        logger.debug(f"Job {record.job_name} added to broker queue with delay {delay:.1f}s")
        return EnqueueResult(immediate=True, job_id=record.id)

    def _release(self, record: JobRecord) -> None:
        try:
            self._outbox.release(record.id, record.last_attempt_at)
        except OutboxError as e:
            logger.error(f"Could not release claim on job {record.dedup_key}: {e}")
