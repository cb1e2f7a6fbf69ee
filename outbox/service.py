"""
Outbox service — the only code that reads or writes job records.

It owns the record state machine:

    pending ──claim──> promoted ──> completed
       ^                  │
       └──── mark_failed ─┤ (attempts left)
                          └──> failed (attempts exhausted) ──retry──> pending
    pending | promoted ──cancel──> cancelled

Every transition is ONE conditional UPDATE:

    UPDATE job_records SET ... WHERE id = :id AND status IN (:expected)

If another process moved the record first, the update matches zero rows and
the caller gets InvalidTransitionError instead of silently overwriting it.
No locks, no multi-record transactions; each call opens and closes its own
short session so it is safe from request handlers and worker threads alike.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Optional
from uuid import UUID

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config.settings import settings
from jobs.registry import JobRegistry
from models.enums import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus
from models.job import JobRecord
from models.timeutils import ensure_utc, promotable_at, utcnow
from outbox.errors import (
    AlreadyTerminalError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
    RejectedOperationError,
)

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]


@dataclass
class SubmitResult:
    """Outcome of submit(). A duplicate is not an error."""
    created: bool
    record: Optional[JobRecord] = None
    reason: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return not self.created


@dataclass
class RecordPage:
    records: list[JobRecord]
    total: int
    page: int
    page_size: int


class OutboxService:

    def __init__(self, session_factory, registry: JobRegistry, clock=utcnow):
        self._session_factory = session_factory
        self._registry = registry
        self._clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Job record store error: {e}")
            raise PersistenceError(str(e)) from e
        finally:
            session.close()

    # ── Submission ──────────────────────────────────────────────

    def submit(
        self,
        job_name: str,
        payload: dict,
        run_at: Optional[datetime] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        promotion_window_minutes: Optional[int] = None,
    ) -> SubmitResult:
        """
        Store a new pending record unless an active one with the same dedup key exists.

        The lookup catches the common case; the partial unique index on
        dedup_key catches two submissions racing each other. Both are
        reported the same way: SubmitResult(created=False, reason="duplicate").

        Raises:
            PersistenceError: the store is unreachable; nothing was stored.
            ValueError: invalid options.
        """
        if not job_name:
            raise ValueError("job_name is required")
        if payload is None:
            payload = {}

        now = self._clock()
        run_at = ensure_utc(run_at) if run_at is not None else now
        priority = settings.DEFAULT_PRIORITY if priority is None else priority
        max_attempts = settings.DEFAULT_MAX_ATTEMPTS if max_attempts is None else max_attempts
        window = (
            settings.DEFAULT_PROMOTION_WINDOW_MINUTES
            if promotion_window_minutes is None
            else promotion_window_minutes
        )
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window < 0:
            raise ValueError("promotion_window_minutes must not be negative")

        dedup_key = self._registry.dedup_key(job_name, payload)

        with self._session() as session:
            existing = self._find_active(session, dedup_key)
            if existing is not None:
                logger.info(
                    f"Job {dedup_key} already exists with status {existing.status}, skipping"
                )
                return SubmitResult(created=False, record=existing, reason="duplicate")

            record = JobRecord(
                job_name=job_name,
                dedup_key=dedup_key,
                payload=payload,
                run_at=run_at,
                promotable_at=promotable_at(run_at, window),
                status=JobStatus.PENDING.value,
                priority=priority,
                max_attempts=max_attempts,
                promotion_window_minutes=window,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(f"Duplicate job {dedup_key} detected (race condition), skipping")
                return SubmitResult(
                    created=False,
                    record=self._find_active(session, dedup_key),
                    reason="duplicate",
                )

        logger.debug(f"Job {dedup_key} ({job_name}) stored, run_at: {record.run_at}")
        return SubmitResult(created=True, record=record)

    @staticmethod
    def _find_active(session: Session, dedup_key: str) -> Optional[JobRecord]:
        return session.execute(
            select(JobRecord).where(
                JobRecord.dedup_key == dedup_key,
                JobRecord.status.in_(_ACTIVE),
            )
        ).scalar_one_or_none()

    # ── Transitions ─────────────────────────────────────────────

    def _transition(
        self,
        record_id: UUID,
        expected: Iterable[JobStatus],
        target: JobStatus,
        **values: Any,
    ) -> JobRecord:
        """Apply values only if the record is still in one of the expected statuses."""
        expected_values = [s.value for s in expected]
        values.setdefault("updated_at", self._clock())
        with self._session() as session:
            result = session.execute(
                update(JobRecord)
                .where(JobRecord.id == record_id, JobRecord.status.in_(expected_values))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()

            record = session.get(JobRecord, record_id)
            if record is None:
                raise JobNotFoundError(record_id)
            if result.rowcount == 0:
                raise InvalidTransitionError(record_id, record.status, target.value)
            return record

    def mark_promoted(self, record_id: UUID) -> JobRecord:
        """
        Atomically claim a pending record for the broker.

        Sets status=promoted, attempts += 1, last_attempt_at = now. Exactly one
        caller wins when several promoters (or the dispatcher's fast path) try
        to claim the same record; the others get InvalidTransitionError.
        """
        return self._transition(
            record_id,
            [JobStatus.PENDING],
            JobStatus.PROMOTED,
            status=JobStatus.PROMOTED.value,
            attempts=JobRecord.attempts + 1,
            last_attempt_at=self._clock(),
        )

    def release(self, record_id: UUID, previous_attempt_at: Optional[datetime]) -> JobRecord:
        """
        Undo a claim whose broker hand-off failed transiently.

        The record goes back to pending with the attempt and timestamp it had
        before mark_promoted, so the net effect of claim + release is no change.
        """
        return self._transition(
            record_id,
            [JobStatus.PROMOTED],
            JobStatus.PENDING,
            status=JobStatus.PENDING.value,
            attempts=case((JobRecord.attempts > 0, JobRecord.attempts - 1), else_=0),
            last_attempt_at=previous_attempt_at,
        )

    def mark_completed(self, record_id: UUID, result: Optional[dict] = None) -> JobRecord:
        now = self._clock()
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "completed_at": now,
        }
        if result is not None:
            values["result"] = result
        record = self._transition(record_id, [JobStatus.PROMOTED], JobStatus.COMPLETED, **values)
        logger.info(f"Job {record.dedup_key} ({record.job_name}) completed")
        return record

    def mark_failed(self, record_id: UUID, error_message: str) -> JobRecord:
        """
        Record one failed attempt.

        From promoted (worker failure) the attempt was already counted by the
        claim, so attempts stays as it is. From pending (the broker rejected
        the record and the claim was released) attempts += 1. Once attempts
        reaches max_attempts the record is failed for good, otherwise it goes
        back to pending for re-promotion.
        """
        now = self._clock()
        spent = case(
            (JobRecord.status == JobStatus.PROMOTED.value, JobRecord.attempts),
            else_=JobRecord.attempts + 1,
        )
        record = self._transition(
            record_id,
            [JobStatus.PENDING, JobStatus.PROMOTED],
            JobStatus.FAILED,
            status=case(
                (spent >= JobRecord.max_attempts, JobStatus.FAILED.value),
                else_=JobStatus.PENDING.value,
            ),
            attempts=spent,
            last_error=error_message,
            last_attempt_at=now,
        )
        if record.status == JobStatus.FAILED.value:
            logger.error(
                f"Job {record.dedup_key} ({record.job_name}) failed permanently "
                f"after {record.attempts}/{record.max_attempts} attempts: {error_message}"
            )
        else:
            logger.info(
                f"Job {record.dedup_key} will be retried "
                f"({record.attempts}/{record.max_attempts}): {error_message}"
            )
        return record

    # ── Administrative operations ───────────────────────────────

    def cancel(self, record_id: UUID) -> JobRecord:
        """
        Cancel a pending or promoted record.

        Raises:
            JobNotFoundError: unknown id.
            AlreadyTerminalError: the record is completed, failed or already cancelled.
        """
        record = self.get_or_raise(record_id)
        if record.status in _TERMINAL:
            raise AlreadyTerminalError(record_id, record.status)
        try:
            record = self._transition(
                record_id,
                ACTIVE_STATUSES,
                JobStatus.CANCELLED,
                status=JobStatus.CANCELLED.value,
            )
        except InvalidTransitionError as e:
            # finished between the read and the update
            raise AlreadyTerminalError(record_id, e.current) from e
        logger.info(f"Job {record.dedup_key} cancelled")
        return record

    def retry(self, record_id: UUID) -> JobRecord:
        """
        Put a failed record back in line: attempts=0, run_at=now, last_error cleared.

        Raises:
            JobNotFoundError: unknown id.
            InvalidTransitionError: the record is not failed.
            RejectedOperationError: an active record with the same dedup key exists.
        """
        record = self.get_or_raise(record_id)
        if record.status != JobStatus.FAILED.value:
            raise InvalidTransitionError(record_id, record.status, JobStatus.PENDING.value)
        now = self._clock()
        try:
            record = self._transition(
                record_id,
                [JobStatus.FAILED],
                JobStatus.PENDING,
                status=JobStatus.PENDING.value,
                attempts=0,
                run_at=now,
                promotable_at=promotable_at(now, record.promotion_window_minutes),
                last_error=None,
            )
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise RejectedOperationError(
                    f"Job {record_id} cannot be retried: an identical job is already active"
                ) from e
            raise
        logger.info(f"Job {record.dedup_key} marked for retry")
        return record

    # ── Queries ─────────────────────────────────────────────────

    def ping(self) -> bool:
        """True if the store answers a trivial query."""
        try:
            with self._session() as session:
                session.execute(select(1))
            return True
        except PersistenceError:
            return False

    def get(self, record_id: UUID) -> Optional[JobRecord]:
        with self._session() as session:
            return session.get(JobRecord, record_id)

    def get_or_raise(self, record_id: UUID) -> JobRecord:
        record = self.get(record_id)
        if record is None:
            raise JobNotFoundError(record_id)
        return record

    def list_by_status(
        self,
        status: Optional[JobStatus] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> RecordPage:
        conditions = []
        if status is not None:
            conditions.append(JobRecord.status == JobStatus(status).value)

        with self._session() as session:
            total = session.execute(
                select(func.count(JobRecord.id)).where(*conditions)
            ).scalar() or 0
            records = session.execute(
                select(JobRecord)
                .where(*conditions)
                .order_by(JobRecord.run_at.asc(), JobRecord.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars().all()

        return RecordPage(records=list(records), total=total, page=page, page_size=page_size)

    def find_due(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        window_minutes: Optional[int] = None,
    ) -> list[JobRecord]:
        """
        Pending records the promoter may hand to the broker, most urgent first.

        With window_minutes=None each record's own promotion window applies
        (promotable_at <= now). Passing a window overrides it for this scan:
        run_at <= now + window_minutes.
        """
        now = ensure_utc(now) if now is not None else self._clock()
        batch_size = settings.PROMOTION_BATCH_SIZE if batch_size is None else batch_size

        if window_minutes is None:
            due = JobRecord.promotable_at <= now
        else:
            due = JobRecord.run_at <= now + timedelta(minutes=window_minutes)

        with self._session() as session:
            records = session.execute(
                select(JobRecord)
                .where(
                    JobRecord.status == JobStatus.PENDING.value,
                    due,
                    JobRecord.attempts < JobRecord.max_attempts,
                )
                .order_by(JobRecord.priority.desc(), JobRecord.run_at.asc())
                .limit(batch_size)
            ).scalars().all()
        return list(records)

    def find_stale_promoted(
        self,
        claimed_before: datetime,
        limit: Optional[int] = None,
    ) -> list[JobRecord]:
        """Promoted records claimed before the cutoff, oldest claim first."""
        limit = settings.PROMOTION_BATCH_SIZE if limit is None else limit
        with self._session() as session:
            records = session.execute(
                select(JobRecord)
                .where(
                    JobRecord.status == JobStatus.PROMOTED.value,
                    JobRecord.last_attempt_at < ensure_utc(claimed_before),
                )
                .order_by(JobRecord.last_attempt_at.asc())
                .limit(limit)
            ).scalars().all()
        return list(records)

    def find_overdue(self, now: Optional[datetime] = None, limit: int = 100) -> list[JobRecord]:
        """Pending records whose run_at has already passed."""
        now = ensure_utc(now) if now is not None else self._clock()
        with self._session() as session:
            records = session.execute(
                select(JobRecord)
                .where(
                    JobRecord.status == JobStatus.PENDING.value,
                    JobRecord.run_at < now,
                )
                .order_by(JobRecord.priority.desc(), JobRecord.run_at.asc())
                .limit(limit)
            ).scalars().all()
        return list(records)

    def stats(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Counts per status, plus overdue/upcoming pending records."""
        now = ensure_utc(now) if now is not None else self._clock()
        counts = {status.value: 0 for status in JobStatus}

        with self._session() as session:
            rows = session.execute(
                select(JobRecord.status, func.count(JobRecord.id)).group_by(JobRecord.status)
            ).all()
            for status, count in rows:
                counts[status] = count

            pending = JobRecord.status == JobStatus.PENDING.value
            counts["overdue"] = session.execute(
                select(func.count(JobRecord.id)).where(pending, JobRecord.run_at < now)
            ).scalar() or 0
            counts["upcoming"] = session.execute(
                select(func.count(JobRecord.id)).where(pending, JobRecord.run_at > now)
            ).scalar() or 0

        counts["total"] = sum(counts[status.value] for status in JobStatus)
        return counts

    # ── Retention ───────────────────────────────────────────────

    def cleanup_older_than(self, retention_days: int = 7) -> int:
        """Delete terminal records that finished more than retention_days ago."""
        if retention_days < 0:
            raise ValueError("retention_days must not be negative")
        cutoff = self._clock() - timedelta(days=retention_days)
        finished_at = func.coalesce(JobRecord.completed_at, JobRecord.updated_at)

        with self._session() as session:
            result = session.execute(
                delete(JobRecord)
                .where(JobRecord.status.in_(_TERMINAL), finished_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        logger.info(f"Cleaned up {result.rowcount} old jobs")
        return result.rowcount

    def expire_terminal(self, now: Optional[datetime] = None) -> int:
        """
        Apply the retention windows: completed and cancelled records expire
        after COMPLETED_RETENTION_DAYS, failed ones after FAILED_RETENTION_DAYS
        so failures stay inspectable longer.
        """
        now = ensure_utc(now) if now is not None else self._clock()
        short_cutoff = now - timedelta(days=settings.COMPLETED_RETENTION_DAYS)
        long_cutoff = now - timedelta(days=settings.FAILED_RETENTION_DAYS)
        finished_at = func.coalesce(JobRecord.completed_at, JobRecord.updated_at)

        with self._session() as session:
            result = session.execute(
                delete(JobRecord)
                .where(
                    or_(
                        (JobRecord.status.in_([
                            JobStatus.COMPLETED.value,
                            JobStatus.CANCELLED.value,
                        ])) & (finished_at < short_cutoff),
                        (JobRecord.status == JobStatus.FAILED.value)
                        & (JobRecord.updated_at < long_cutoff),
                    )
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()

        if result.rowcount:
            logger.info(f"Expired {result.rowcount} terminal job records")
        return result.rowcount
