"""
FastAPI dependency injection.

An endpoint declares `system: JobSystem = Depends(get_job_system)` and gets
the JobSystem the lifespan built at startup. Tests override get_job_system
with one wired to SQLite and fakeredis.
"""

from fastapi import Request

from scheduler.runtime import JobSystem


def get_job_system(request: Request) -> JobSystem:
    """Returns the JobSystem stored on the app during startup."""
    return request.app.state.jobs
