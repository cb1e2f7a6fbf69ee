"""
Handing a claimed record to the broker under its dedup key.

The broker token outlives the record it was queued for whenever a worker
finished a job but never acked it. A token held like that must not block
the next record with the same dedup key, so a duplicate is resolved
against the store:

    token held by this record          → already queued, nothing to do
    held by a record that is active    → genuinely taken, caller backs off
    held by a finished or unknown one  → leftover: clear it, enqueue again
"""

import logging
from uuid import UUID

from broker.base import AbstractBroker, DuplicateJobError
from models.enums import ACTIVE_STATUSES
from models.job import JobRecord
from outbox.errors import OutboxError
from outbox.service import OutboxService

logger = logging.getLogger(__name__)

_ACTIVE = {s.value for s in ACTIVE_STATUSES}


def _held_by_active_record(outbox: OutboxService, record_id: str) -> bool:
    try:
        holder = outbox.get(UUID(record_id))
    except ValueError:
        return False
    except OutboxError as e:
        logger.warning(f"Could not look up record {record_id} holding a broker token: {e}")
        return True
    return holder is not None and holder.status in _ACTIVE


def hand_off(
    outbox: OutboxService,
    broker: AbstractBroker,
    record: JobRecord,
    delay: float,
    attempt_budget: int,
) -> bool:
    """
    Enqueue a claimed record. True once the broker holds a job for it.

    False means the token belongs to another active record; the caller
    should release its claim and try again later.

    Raises:
        BrokerUnavailableError, BrokerError: as AbstractBroker.enqueue.
    """
    def enqueue():
        broker.enqueue(
            record.job_name,
            record.payload,
            idempotency_token=record.dedup_key,
            delay=delay,
            attempt_budget=attempt_budget,
            priority=record.priority,
            record_id=str(record.id),
        )

    try:
        enqueue()
        return True
    except DuplicateJobError as e:
        holder = e.record_id

    if holder == str(record.id):
        logger.debug(f"Job {record.dedup_key} already in broker")
        return True
    if holder is not None and _held_by_active_record(outbox, holder):
        logger.info(f"Job {record.dedup_key} is held in the broker by record {holder}")
        return False

    logger.warning(f"Clearing leftover broker job {record.dedup_key} (record {holder})")
    broker.remove(record.dedup_key)
    try:
        enqueue()
    except DuplicateJobError as e:
        # another process queued something between the remove and the enqueue
        return e.record_id == str(record.id)
    return True
