"""
Promoter — moves due job records from the store into the broker queue.

Runs once shortly after startup, then on a fixed interval. Each pass:

    0. promoted records claimed over PROMOTED_STALE_MINUTES ago that the
       broker no longer holds go through mark_failed (see _recover_lost)
    1. find_due(): pending records with promotable_at <= now, ordered by
       priority DESC, run_at ASC, at most PROMOTION_BATCH_SIZE of them
    2. for each record, in that order:
         claim (pending → promoted)       lost the race? skip it
         hand_off(token=dedup_key)
           ok                → promoted
           already queued    → promoted (the fast path or another pass did it)
           token held        → release the claim, failed (retried next pass)
           broker down       → release the claim, failed (retried next pass)
           anything else     → release, mark_failed (uses one attempt), failed

One record's failure never stops the pass. Only failing to run the
find_due() query aborts it; the next tick tries again.

Two passes in the same process never overlap (a busy flag, not a lock held
across I/O). Passes in different processes may overlap: the claim is a
conditional UPDATE, so each record is handed to the broker by one of them.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

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
from scheduler.periodic import PeriodicTask

logger = logging.getLogger(__name__)

_PROMOTED = "promoted"
_FAILED = "failed"
_SKIPPED = "skipped"


@dataclass
class PromotionResult:
    promoted: int = 0
    failed: int = 0
    recovered: int = 0   # lost promoted records sent back through mark_failed
    busy: bool = False   # another pass was already running; nothing was done

    def to_dict(self) -> dict:
        return {
            "promoted": self.promoted,
            "failed": self.failed,
            "recovered": self.recovered,
            "busy": self.busy,
        }


class Promoter(PeriodicTask):

    def __init__(
        self,
        outbox: OutboxService,
        broker: AbstractBroker,
        interval: float = settings.PROMOTER_INTERVAL_SECONDS,
        startup_delay: float = settings.PROMOTER_STARTUP_DELAY_SECONDS,
        batch_size: int = settings.PROMOTION_BATCH_SIZE,
        stale_after_minutes: int = settings.PROMOTED_STALE_MINUTES,
        clock=utcnow,
    ):
        super().__init__("job-promoter", interval, startup_delay)
        self._outbox = outbox
        self._broker = broker
        self._batch_size = batch_size
        self._stale_after = timedelta(minutes=stale_after_minutes)
        self._clock = clock
        self._state_lock = threading.Lock()
        self._promoting = False

    def tick(self) -> None:
        self.run_once()

    def status(self) -> dict:
        return {"running": self.running, "currently_promoting": self._promoting}

    def run_once(
        self,
        now: Optional[datetime] = None,
        window_minutes: Optional[int] = None,
    ) -> PromotionResult:
        """
        Run one promotion pass.

        Args:
            now: reference time (defaults to the clock).
            window_minutes: look-ahead override; None uses each record's own window.

        Raises:
            PersistenceError: the due-soon query itself failed.
        """
        with self._state_lock:
            if self._promoting:
                logger.debug("Job promotion already in progress, skipping")
                return PromotionResult(busy=True)
            self._promoting = True
        try:
            return self._promote(ensure_utc(now) if now else self._clock(), window_minutes)
        finally:
            with self._state_lock:
                self._promoting = False

    def _promote(self, now: datetime, window_minutes: Optional[int]) -> PromotionResult:
        result = PromotionResult(recovered=self._recover_lost(now))

        due = self._outbox.find_due(now, self._batch_size, window_minutes)
        if not due:
            logger.debug("No jobs to promote")
            return result

        logger.info(f"Found {len(due)} jobs to promote to the broker")
        for record in due:
            outcome = self._promote_one(record, now)
            if outcome == _PROMOTED:
                result.promoted += 1
            elif outcome == _FAILED:
                result.failed += 1

        logger.info(
            f"Job promotion complete: {result.promoted} promoted, {result.failed} failed"
        )
        return result

    def _promote_one(self, record: JobRecord, now: datetime) -> str:
        delay = seconds_until(record.run_at, now)
        attempt_budget = record.remaining_attempts

        try:
            self._outbox.mark_promoted(record.id)
        except InvalidTransitionError:
            logger.debug(f"Job {record.dedup_key} was claimed or cancelled elsewhere, skipping")
            return _SKIPPED
        except OutboxError as e:
            logger.error(f"Could not claim job {record.dedup_key}: {e}")
            return _FAILED

        try:
            queued = hand_off(self._outbox, self._broker, record, delay, attempt_budget)
        except BrokerUnavailableError as e:
            logger.warning(f"Could not promote job {record.dedup_key} - broker unavailable: {e}")
            self._release(record)
            return _FAILED
        except Exception as e:
            logger.error(f"Failed to promote job {record.dedup_key}: {e}")
            self._reject(record, str(e))
            return _FAILED

        if not queued:
            self._release(record)
            return _FAILED

        logger.debug(
            f"Promoted job {record.dedup_key} ({record.job_name}) with delay {delay:.1f}s"
        )
        return _PROMOTED

    def _recover_lost(self, now: datetime) -> int:
        """
        Fail the attempt of promoted records the broker no longer has queued.

        A record claimed more than stale_after ago whose token is in neither
        the ready nor the delayed set was popped by a worker that never
        reported back. Its leftover body is dropped and mark_failed spends
        the attempt, so the record is promoted again or fails for good.
        """
        try:
            stale = self._outbox.find_stale_promoted(now - self._stale_after, self._batch_size)
        except OutboxError as e:
            logger.error(f"Could not look for lost jobs: {e}")
            return 0

        recovered = 0
        for record in stale:
            try:
                if self._broker.is_scheduled(record.dedup_key):
                    continue
                self._broker.remove(record.dedup_key)
            except BrokerError as e:
                logger.warning(f"Could not check broker for job {record.dedup_key}: {e}")
                continue
            try:
                self._outbox.mark_failed(record.id, "Job was lost by its worker")
            except InvalidTransitionError:
                continue
            except OutboxError as e:
                logger.error(f"Could not recover lost job {record.dedup_key}: {e}")
                continue
            logger.warning(f"Recovered lost job {record.dedup_key} ({record.job_name})")
            recovered += 1
        return recovered

    def _release(self, record: JobRecord) -> bool:
        try:
            self._outbox.release(record.id, record.last_attempt_at)
            return True
        except OutboxError as e:
            logger.error(f"Could not release claim on job {record.dedup_key}: {e}")
            return False

    def _reject(self, record: JobRecord, error_message: str) -> None:
        """The broker refused the job: undo the claim and spend one attempt on it."""
        if not self._release(record):
            return
        try:
            self._outbox.mark_failed(record.id, error_message)
        except OutboxError as e:
            logger.error(f"Could not record failure of job {record.dedup_key}: {e}")


class RetentionSweeper(PeriodicTask):
    """Deletes terminal records past their retention window (see OutboxService.expire_terminal)."""

    def __init__(
        self,
        outbox: OutboxService,
        interval: float = settings.RETENTION_SWEEP_INTERVAL_SECONDS,
        startup_delay: float = settings.PROMOTER_STARTUP_DELAY_SECONDS,
    ):
        super().__init__("job-retention", interval, startup_delay)
        self._outbox = outbox

    def tick(self) -> None:
        self._outbox.expire_terminal()
