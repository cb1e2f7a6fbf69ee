"""
Built-in maintenance job: delete finished job records past a retention period.

Example payload:
    {"retentionDays": 30}   → removes completed/failed/cancelled records
                              that finished more than 30 days ago

Submitting it through the dispatcher like any other job means cleanup runs
on a worker, is retried on failure, and shows up in the job stats.
"""

from config.settings import settings
from jobs.base import AbstractJobHandler
from outbox.service import OutboxService


class CleanupJob(AbstractJobHandler):

    def __init__(self, outbox: OutboxService):
        self._outbox = outbox

    def run(self, payload: dict) -> dict:
        retention_days = int(payload.get("retentionDays", settings.COMPLETED_RETENTION_DAYS))
        deleted = self._outbox.cleanup_older_than(retention_days)
        return {"deleted_count": deleted, "retention_days": retention_days}

    @property
    def job_name(self) -> str:
        return "DatabaseCleanup"
