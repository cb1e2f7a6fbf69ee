"""
Shared enumerations used across the entire project.

Using Python enums (inheriting from str) means:
- They serialize to JSON automatically ("pending", not "JobStatus.PENDING")
- They work as SQLAlchemy column values
- They work as FastAPI query parameters
"""

import enum


class JobStatus(str, enum.Enum):
    PENDING = "pending"        # stored, waiting for the promoter (or a retry)
    PROMOTED = "promoted"      # handed to the broker queue for execution
    COMPLETED = "completed"    # handler finished successfully
    FAILED = "failed"          # exhausted max_attempts
    CANCELLED = "cancelled"    # cancelled by an administrator


# dedup_key is unique among these
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROMOTED})

# finished; only an explicit retry moves a failed record back to pending
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
