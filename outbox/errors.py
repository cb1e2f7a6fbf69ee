"""
Exceptions raised by the outbox service.

Callers only ever see these, never raw SQLAlchemy errors:
- PersistenceError      → the store could not be reached; nothing was written
- JobNotFoundError      → no record with that id
- RejectedOperationError → the record exists but its status forbids the request
"""

from uuid import UUID


class OutboxError(Exception):
    """Base class for all outbox errors."""


class PersistenceError(OutboxError):
    """The job record store failed. The caller must not assume the job exists."""


class JobNotFoundError(OutboxError):

    def __init__(self, record_id: UUID):
        super().__init__(f"Job {record_id} not found")
        self.record_id = record_id


class RejectedOperationError(OutboxError):
    """An administrative operation was refused because of the record's state."""


class AlreadyTerminalError(RejectedOperationError):

    def __init__(self, record_id: UUID, status: str):
        super().__init__(f"Job already {status}")
        self.record_id = record_id
        self.status = status


class InvalidTransitionError(RejectedOperationError):
    """The record was not in the expected source status (or moved concurrently)."""

    def __init__(self, record_id: UUID, current: str, target: str):
        super().__init__(f"Cannot move job {record_id} from {current} to {target}")
        self.record_id = record_id
        self.current = current
        self.target = target
