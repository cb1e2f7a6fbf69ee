"""
Tests for the RetryHandler.

These test the decision logic:
- If the broker's attempt budget remains → broker retry with backoff,
  the record stays promoted
- If the budget is spent → broker forgets the job, mark_failed on the record
  (back to pending, or failed once max_attempts is reached)
"""

import pytest

from broker.base import BrokerError
from broker.redis_queue import RedisJobQueue
from models.enums import JobStatus
from worker.retry import RetryHandler


def _promote(outbox, broker, max_attempts=5):
    record = outbox.submit(
        "sendReminder", {"userId": "u1"}, max_attempts=max_attempts
    ).record
    budget = record.remaining_attempts
    outbox.mark_promoted(record.id)
    broker.enqueue(
        "sendReminder", record.payload,
        idempotency_token=record.dedup_key,
        attempt_budget=budget,
        record_id=str(record.id),
    )
    return record, broker.dequeue(timeout=0.1)


def test_backoff_is_exponential(outbox, broker):
    handler = RetryHandler(outbox, broker, backoff_base=2.0)
    assert [handler.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_budget_left_goes_back_to_broker(outbox, broker, clock):
    record, job = _promote(outbox, broker, max_attempts=3)
    handler = RetryHandler(outbox, broker, backoff_base=2.0)

    assert handler.handle_failure(job, record.id, "smtp down") == "retrying"

    assert outbox.get(record.id).status == JobStatus.PROMOTED.value
    assert broker.dequeue(timeout=0.1) is None
    clock.advance(seconds=2)
    assert broker.dequeue(timeout=0.1).attempts_made == 1


def test_spent_budget_is_recorded_on_the_record(outbox, broker):
    record, job = _promote(outbox, broker, max_attempts=5)
    job.attempts_made = job.attempt_budget - 1
    handler = RetryHandler(outbox, broker)

    assert handler.handle_failure(job, record.id, "smtp down") == "recorded"

    stored = outbox.get(record.id)
    assert stored.status == JobStatus.PENDING.value
    assert stored.attempts == 1
    assert stored.last_error == "smtp down"
    assert broker.depth() == {"ready": 0, "delayed": 0}


def test_exhausted_record_is_failed(outbox, broker):
    record, job = _promote(outbox, broker, max_attempts=1)
    handler = RetryHandler(outbox, broker)

    handler.handle_failure(job, record.id, "smtp down")

    assert outbox.get(record.id).status == JobStatus.FAILED.value


class UnreachableRetryQueue(RedisJobQueue):
    def retry_later(self, job, delay):
        raise BrokerError("retry rejected")


def test_broker_retry_failure_falls_back_to_record(outbox, fake_redis, clock):
    broker = UnreachableRetryQueue(fake_redis, name="noretry", clock=clock.timestamp)
    record, job = _promote(outbox, broker, max_attempts=5)

    assert RetryHandler(outbox, broker).handle_failure(job, record.id, "boom") == "recorded"
    assert outbox.get(record.id).status == JobStatus.PENDING.value


def test_cancelled_record_is_left_alone(outbox, broker):
    record, job = _promote(outbox, broker, max_attempts=1)
    outbox.cancel(record.id)

    assert RetryHandler(outbox, broker).handle_failure(job, record.id, "boom") == "recorded"
    assert outbox.get(record.id).status == JobStatus.CANCELLED.value


@pytest.mark.parametrize("attempts_made,expected", [(0, "retrying"), (1, "retrying"), (2, "recorded")])
def test_decision_follows_attempt_budget(outbox, broker, attempts_made, expected):
    record, job = _promote(outbox, broker, max_attempts=3)
    job.attempts_made = attempts_made

    assert RetryHandler(outbox, broker).handle_failure(job, record.id, "boom") == expected
