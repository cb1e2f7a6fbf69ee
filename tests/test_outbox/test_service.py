"""
Tests for OutboxService — the job record store.

Covers submission and dedup, every status transition (and the ones that
must be refused), the admin operations, the queries the promoter and the
API rely on, and retention.
"""

import hashlib
import logging
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models.enums import JobStatus
from models.timeutils import ensure_utc
from outbox.errors import (
    AlreadyTerminalError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
    RejectedOperationError,
)
from outbox.service import OutboxService


def _submit(outbox, recipient="client@example.com", **kwargs):
    return outbox.submit("verifyEmail", {"recipient": recipient}, **kwargs).record


def _fail_for_good(outbox, record):
    while True:
        outbox.mark_promoted(record.id)
        failed = outbox.mark_failed(record.id, "smtp down")
        if failed.status == JobStatus.FAILED.value:
            return failed


# ── Submission ──────────────────────────────────────────────────


def test_submit_creates_pending_record_with_defaults(outbox, clock):
    result = outbox.submit("verifyEmail", {"recipient": "client@example.com"})

    assert result.created
    record = result.record
    assert record.status == JobStatus.PENDING.value
    assert record.attempts == 0
    assert record.max_attempts == 5
    assert record.priority == 0
    assert record.promotion_window_minutes == 60
    assert ensure_utc(record.run_at) == clock()
    assert ensure_utc(record.promotable_at) == clock() - timedelta(minutes=60)


def test_submit_derives_dedup_key_from_registered_strategy(outbox):
    record = _submit(outbox, "client@example.com")
    digest = hashlib.sha256(b"client@example.com").hexdigest()
    assert record.dedup_key == f"verifyEmail:{digest}"


def test_duplicate_of_active_record_is_skipped(outbox):
    first = outbox.submit("verifyEmail", {"recipient": "client@example.com"})
    second = outbox.submit("verifyEmail", {"recipient": "client@example.com", "lang": "fr"})

    assert second.duplicate
    assert second.reason == "duplicate"
    assert second.record.id == first.record.id
    assert outbox.stats()["total"] == 1


def test_same_request_accepted_again_once_previous_finished(outbox):
    first = _submit(outbox)
    outbox.mark_promoted(first.id)
    outbox.mark_completed(first.id)

    again = outbox.submit("verifyEmail", {"recipient": "client@example.com"})

    assert again.created
    assert again.record.id != first.id


def test_submit_rejects_invalid_options(outbox):
    with pytest.raises(ValueError):
        outbox.submit("", {})
    with pytest.raises(ValueError):
        outbox.submit("verifyEmail", {"recipient": "a@b.c"}, max_attempts=0)
    with pytest.raises(ValueError):
        outbox.submit("verifyEmail", {"recipient": "a@b.c"}, promotion_window_minutes=-1)


def test_store_outage_raises_persistence_error(registry, clock):
    """No tables at all stands in for an unreachable database."""
    broken = OutboxService(sessionmaker(create_engine("sqlite://")), registry, clock=clock)

    with pytest.raises(PersistenceError):
        broken.submit("verifyEmail", {"recipient": "client@example.com"})


# ── Transitions ─────────────────────────────────────────────────


def test_mark_promoted_claims_once(outbox, clock):
    record = _submit(outbox)

    promoted = outbox.mark_promoted(record.id)
    assert promoted.status == JobStatus.PROMOTED.value
    assert promoted.attempts == 1
    assert ensure_utc(promoted.last_attempt_at) == clock()

    with pytest.raises(InvalidTransitionError):
        outbox.mark_promoted(record.id)


def test_release_undoes_claim(outbox):
    record = _submit(outbox)
    outbox.mark_promoted(record.id)

    released = outbox.release(record.id, record.last_attempt_at)

    assert released.status == JobStatus.PENDING.value
    assert released.attempts == 0
    assert released.last_attempt_at is None


def test_mark_completed_stores_result(outbox, clock):
    record = _submit(outbox)
    outbox.mark_promoted(record.id)

    done = outbox.mark_completed(record.id, {"messageId": "m-1"})

    assert done.status == JobStatus.COMPLETED.value
    assert done.result == {"messageId": "m-1"}
    assert ensure_utc(done.completed_at) == clock()


def test_mark_completed_requires_promoted(outbox):
    record = _submit(outbox)
    with pytest.raises(InvalidTransitionError):
        outbox.mark_completed(record.id)


def test_mark_failed_returns_to_pending_while_attempts_remain(outbox):
    record = _submit(outbox, max_attempts=5)
    outbox.mark_promoted(record.id)

    failed = outbox.mark_failed(record.id, "smtp down")

    # the claim already counted this attempt
    assert failed.status == JobStatus.PENDING.value
    assert failed.attempts == 1
    assert failed.last_error == "smtp down"


def test_mark_failed_is_terminal_at_max_attempts(outbox):
    record = _submit(outbox, max_attempts=2)

    failed = _fail_for_good(outbox, record)

    assert failed.status == JobStatus.FAILED.value
    assert failed.attempts == 2


def test_single_attempt_job_fails_on_first_failure(outbox):
    record = _submit(outbox, max_attempts=1)
    outbox.mark_promoted(record.id)

    failed = outbox.mark_failed(record.id, "smtp down")

    assert failed.status == JobStatus.FAILED.value
    assert failed.attempts == 1


def test_attempts_never_exceed_max_attempts(outbox):
    record = _submit(outbox, max_attempts=3)
    history = []

    for _ in range(3):
        outbox.mark_promoted(record.id)
        failed = outbox.mark_failed(record.id, "smtp down")
        history.append((failed.status, failed.attempts))

    assert history == [("pending", 1), ("pending", 2), ("failed", 3)]


def test_permanent_failure_is_logged_as_error(outbox, caplog):
    record = _submit(outbox, max_attempts=1)

    with caplog.at_level(logging.INFO, logger="outbox.service"):
        _fail_for_good(outbox, record)

    permanent = [r for r in caplog.records if "failed permanently" in r.getMessage()]
    assert [r.levelno for r in permanent] == [logging.ERROR]
    assert "after 1/1 attempts" in permanent[0].getMessage()


def test_mark_failed_from_pending_spends_an_attempt(outbox):
    record = _submit(outbox, max_attempts=3)
    outbox.mark_promoted(record.id)
    outbox.release(record.id, None)

    failed = outbox.mark_failed(record.id, "payload too large")

    assert failed.status == JobStatus.PENDING.value
    assert failed.attempts == 1


def test_completed_record_cannot_fail(outbox):
    record = _submit(outbox)
    outbox.mark_promoted(record.id)
    outbox.mark_completed(record.id)

    with pytest.raises(InvalidTransitionError):
        outbox.mark_failed(record.id, "too late")


def test_transition_on_unknown_id_raises_not_found(outbox):
    with pytest.raises(JobNotFoundError):
        outbox.mark_promoted(uuid.uuid4())


# ── Administrative operations ───────────────────────────────────


def test_cancel_pending_and_promoted(outbox):
    pending = _submit(outbox, "a@example.com")
    promoted = _submit(outbox, "b@example.com")
    outbox.mark_promoted(promoted.id)

    assert outbox.cancel(pending.id).status == JobStatus.CANCELLED.value
    assert outbox.cancel(promoted.id).status == JobStatus.CANCELLED.value


def test_cancel_terminal_record_is_rejected(outbox):
    record = _submit(outbox)
    outbox.mark_promoted(record.id)
    outbox.mark_completed(record.id)

    with pytest.raises(AlreadyTerminalError, match="Job already completed"):
        outbox.cancel(record.id)


def test_cancel_twice_is_rejected(outbox):
    record = _submit(outbox)
    outbox.cancel(record.id)

    with pytest.raises(AlreadyTerminalError, match="Job already cancelled"):
        outbox.cancel(record.id)


def test_cancel_unknown_id(outbox):
    with pytest.raises(JobNotFoundError):
        outbox.cancel(uuid.uuid4())


def test_retry_failed_record(outbox, clock):
    record = _submit(outbox, max_attempts=2)
    _fail_for_good(outbox, record)
    clock.advance(hours=3)

    retried = outbox.retry(record.id)

    assert retried.status == JobStatus.PENDING.value
    assert retried.attempts == 0
    assert retried.last_error is None
    assert ensure_utc(retried.run_at) == clock()


def test_retry_only_from_failed(outbox):
    record = _submit(outbox)
    with pytest.raises(InvalidTransitionError):
        outbox.retry(record.id)


def test_retry_refused_when_identical_job_is_active(outbox):
    record = _submit(outbox, max_attempts=2)
    _fail_for_good(outbox, record)
    _submit(outbox)  # same recipient, active again

    with pytest.raises(RejectedOperationError):
        outbox.retry(record.id)


# ── Queries ─────────────────────────────────────────────────────


def test_list_by_status_filters_and_paginates(outbox, clock):
    for i in range(5):
        _submit(outbox, f"user{i}@example.com", run_at=clock() + timedelta(minutes=i))
    cancelled = _submit(outbox, "gone@example.com")
    outbox.cancel(cancelled.id)

    page = outbox.list_by_status(JobStatus.PENDING, page=1, page_size=2)
    assert page.total == 5
    assert [r.payload["recipient"] for r in page.records] == [
        "user0@example.com", "user1@example.com",
    ]

    last = outbox.list_by_status(JobStatus.PENDING, page=3, page_size=2)
    assert [r.payload["recipient"] for r in last.records] == ["user4@example.com"]

    assert outbox.list_by_status().total == 6


def test_find_due_honours_each_records_window(outbox, clock):
    now = clock()
    soon = _submit(outbox, "soon@example.com", run_at=now + timedelta(minutes=30))
    _submit(outbox, "later@example.com", run_at=now + timedelta(minutes=90))
    narrow = _submit(
        outbox, "narrow@example.com",
        run_at=now + timedelta(minutes=30), promotion_window_minutes=10,
    )

    due = {r.id for r in outbox.find_due(now)}
    assert due == {soon.id}

    overridden = {r.id for r in outbox.find_due(now, window_minutes=120)}
    assert narrow.id in overridden and len(overridden) == 3


def test_find_due_orders_by_priority_then_run_at(outbox, clock):
    now = clock()
    low = _submit(outbox, "low@example.com", priority=0, run_at=now - timedelta(minutes=5))
    high = _submit(outbox, "high@example.com", priority=10, run_at=now)
    early = _submit(outbox, "early@example.com", priority=0, run_at=now - timedelta(minutes=10))

    assert [r.id for r in outbox.find_due(now)] == [high.id, early.id, low.id]


def test_find_stale_promoted(outbox, clock):
    old = _submit(outbox, "old@example.com")
    outbox.mark_promoted(old.id)
    clock.advance(minutes=90)
    fresh = _submit(outbox, "fresh@example.com")
    outbox.mark_promoted(fresh.id)
    _submit(outbox, "waiting@example.com")

    stale = outbox.find_stale_promoted(clock() - timedelta(minutes=60))

    assert [r.id for r in stale] == [old.id]


def test_find_overdue_and_stats(outbox, clock):
    now = clock()
    _submit(outbox, "late@example.com", run_at=now - timedelta(hours=1))
    _submit(outbox, "future@example.com", run_at=now + timedelta(hours=1))
    done = _submit(outbox, "done@example.com")
    outbox.mark_promoted(done.id)
    outbox.mark_completed(done.id)

    overdue = outbox.find_overdue(now)
    assert [r.payload["recipient"] for r in overdue] == ["late@example.com"]

    stats = outbox.stats(now)
    assert stats["pending"] == 2
    assert stats["completed"] == 1
    assert stats["promoted"] == 0
    assert stats["overdue"] == 1
    assert stats["upcoming"] == 1
    assert stats["total"] == 3


# ── Retention ───────────────────────────────────────────────────


def test_cleanup_older_than_removes_only_old_terminal_records(outbox, clock):
    old = _submit(outbox, "old@example.com")
    outbox.mark_promoted(old.id)
    outbox.mark_completed(old.id)
    clock.advance(days=8)

    recent = _submit(outbox, "recent@example.com")
    outbox.mark_promoted(recent.id)
    outbox.mark_completed(recent.id)
    still_pending = _submit(outbox, "pending@example.com")

    assert outbox.cleanup_older_than(7) == 1
    assert outbox.get(old.id) is None
    assert outbox.get(recent.id) is not None
    assert outbox.get(still_pending.id) is not None


def test_expire_terminal_keeps_failures_longer(outbox, clock):
    completed = _submit(outbox, "completed@example.com")
    outbox.mark_promoted(completed.id)
    outbox.mark_completed(completed.id)
    failed = _submit(outbox, "failed@example.com", max_attempts=2)
    _fail_for_good(outbox, failed)
    clock.advance(days=8)

    assert outbox.expire_terminal() == 1
    assert outbox.get(completed.id) is None
    assert outbox.get(failed.id) is not None

    clock.advance(days=90)
    assert outbox.expire_terminal() == 1
    assert outbox.get(failed.id) is None
