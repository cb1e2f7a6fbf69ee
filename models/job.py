"""
JobRecord ORM model — maps to the "job_records" table in PostgreSQL.

One row per unit of deferred work. This table is the source of truth: the
broker queue only ever holds copies of rows that were promoted.

Key design decisions:
- dedup_key is unique only among ACTIVE rows (partial unique index), so the
  same logical request can be submitted again once the earlier one finished.
  The index is also the backstop when two submissions race.
- promotable_at = run_at - promotion_window_minutes is stored alongside run_at.
  The promoter's due-soon scan becomes one indexed comparison that honours
  every row's own window, on any backend.
- Timestamps are UTC. SQLite drops tzinfo, so read them through ensure_utc().
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base
from models.enums import ACTIVE_STATUSES, JobStatus
from models.timeutils import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_SQL = text("status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
))


class JobRecord(Base):
    __tablename__ = "job_records"

    # ── Identity ────────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Payload & Results ───────────────────────────────────────
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ── Scheduling fields ───────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, nullable=False
    )
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    promotable_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    promotion_window_minutes: Mapped[int] = mapped_column(
        Integer, default=60, nullable=False
    )

    # ── Attempt tracking ────────────────────────────────────────
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Lifecycle timestamps ────────────────────────────────────
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "uq_job_records_active_dedup_key",
            "dedup_key",
            unique=True,
            postgresql_where=_ACTIVE_SQL,
            sqlite_where=_ACTIVE_SQL,
        ),
        Index("ix_job_records_status_run_at", "status", "run_at"),
        Index("ix_job_records_status_promotable_at", "status", "promotable_at"),
        Index("ix_job_records_status_created_at", "status", "created_at"),
        Index("ix_job_records_status_last_attempt_at", "status", "last_attempt_at"),
        Index("ix_job_records_job_name_status", "job_name", "status"),
        Index("ix_job_records_completed_at", "completed_at"),
        Index("ix_job_records_updated_at", "updated_at"),
    )

    @property
    def remaining_attempts(self) -> int:
        """Attempt budget handed to the broker, never below one."""
        return max(1, self.max_attempts - self.attempts)

    def __repr__(self) -> str:
        return f"<JobRecord {self.id} [{self.job_name}] {self.status}>"
