"""
Retry handler — decides what happens when a handler raises.

Two layers of retry exist and this is where they meet:

1. The broker's attempt budget (remaining attempts at promotion time).
   While it lasts, the job goes back into the broker's delayed set with
   exponential backoff: 2s, 4s, 8s, ... (RETRY_BACKOFF_BASE ** attempt).
2. Once the budget is spent, the broker forgets the job and the failure is
   recorded on the job record with mark_failed(). The record goes back to
   pending (the promoter will pick it up again) or, when max_attempts is
   reached, to failed for good.

Lifecycle on failure:
    promoted → (exception, budget left)   → broker retry, record untouched
    promoted → (exception, budget spent)  → pending | failed (the claim counted the attempt)
"""

import logging
from uuid import UUID

from broker.base import AbstractBroker, BrokerError, QueuedJob
from config.settings import settings
from outbox.errors import InvalidTransitionError, OutboxError
from outbox.service import OutboxService

logger = logging.getLogger(__name__)


class RetryHandler:

    def __init__(
        self,
        outbox: OutboxService,
        broker: AbstractBroker,
        backoff_base: float = settings.RETRY_BACKOFF_BASE,
    ):
        self._outbox = outbox
        self._broker = broker
        self._backoff_base = backoff_base

    def backoff_for(self, attempt: int) -> float:
        return self._backoff_base ** attempt

    def handle_failure(self, job: QueuedJob, record_id: UUID, error_msg: str) -> str:
        """
        Called by JobExecutor when a handler raises.

        Returns "retrying" if the broker will run the job again, otherwise
        "recorded" once the failure has been written to the job record.
        """
        if job.attempts_made + 1 < job.attempt_budget:
            delay = self.backoff_for(job.attempts_made + 1)
            try:
                self._broker.retry_later(job, delay)
                logger.info(
                    f"Job {job.token} will be retried in {delay:.0f}s "
                    f"({job.attempts_made}/{job.attempt_budget})"
                )
                return "retrying"
            except BrokerError as e:
                logger.error(f"Could not reschedule job {job.token} in the broker: {e}")

        # budget spent (or the reschedule failed): the record takes over
        try:
            self._broker.ack(job)
        except BrokerError as e:
            logger.error(f"Could not drop job {job.token} from the broker: {e}")

        try:
            self._outbox.mark_failed(record_id, error_msg)
        except InvalidTransitionError as e:
            logger.warning(f"Job {job.token} failed but its record moved on: {e}")
        except OutboxError as e:
            logger.error(f"Could not record failure of job {job.token}: {e}")
        return "recorded"
