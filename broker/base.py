"""
Abstract broker interface (Strategy pattern, same as jobs/base.py).

The broker is the volatile, fast execution queue that workers consume. The
dispatcher and the promoter only know this interface; RedisJobQueue is the
production implementation and tests can swap in anything that behaves alike.

Enqueue failures fall in three groups, each handled differently upstream:
- DuplicateJobError       → a job with that idempotency token is already queued
- BrokerUnavailableError  → connection refused / lost / timed out (transient)
- BrokerError             → anything else; the broker rejected this job
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


class BrokerError(Exception):
    """The broker rejected a request for a reason that retrying will not fix."""


class BrokerUnavailableError(BrokerError):
    """The broker could not be reached. The same request may succeed later."""


class DuplicateJobError(BrokerError):
    """The token is taken. record_id is the record whose job holds it, if known."""

    def __init__(self, token: str, record_id: Optional[str] = None):
        super().__init__(f"Job {token} already exists")
        self.token = token
        self.record_id = record_id


@dataclass
class QueuedJob:
    """A job as the broker holds it, keyed by its idempotency token."""
    token: str
    name: str
    payload: dict = field(default_factory=dict)
    record_id: Optional[str] = None
    priority: int = 0
    attempt_budget: int = 1
    attempts_made: int = 0

    @property
    def attempts_left(self) -> int:
        return max(0, self.attempt_budget - self.attempts_made)


class AbstractBroker(ABC):

    @abstractmethod
    def enqueue(
        self,
        name: str,
        payload: dict,
        idempotency_token: str,
        delay: float = 0.0,
        attempt_budget: int = 1,
        priority: int = 0,
        record_id: Optional[str] = None,
    ) -> QueuedJob:
        """
        Queue a job to become ready after `delay` seconds.

        Raises:
            DuplicateJobError, BrokerUnavailableError, BrokerError
        """
        ...

    @abstractmethod
    def dequeue(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        """Block up to timeout seconds for the next ready job."""
        ...

    @abstractmethod
    def ack(self, job: QueuedJob) -> None:
        """
        Forget a job that finished (successfully or for good).

        Leaves the token alone if it now belongs to a job for another record.
        """
        ...

    @abstractmethod
    def retry_later(self, job: QueuedJob, delay: float) -> None:
        """Count one failed attempt and make the job ready again after delay seconds."""
        ...

    @abstractmethod
    def remove(self, token: str) -> bool:
        """Drop a queued job that has not been picked up yet. True if it was queued."""
        ...

    @abstractmethod
    def is_scheduled(self, token: str) -> bool:
        """True if the job is waiting in the ready or delayed set (not yet popped)."""
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...

    @abstractmethod
    def depth(self) -> dict[str, int]:
        """How many jobs are ready and delayed."""
        ...

    def close(self) -> None:
        pass
