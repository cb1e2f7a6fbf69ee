"""
Health check endpoint.

Checks the job record store (PostgreSQL) and the broker (Redis).

The store is required: without it nothing can be submitted, so the
endpoint answers 503. A broker outage only slows jobs down (submissions
are deferred and promoted later), so it reports "degraded" with 200.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_job_system
from scheduler.runtime import JobSystem

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(system: JobSystem = Depends(get_job_system)):
    """Check that Postgres and Redis are reachable."""
    postgres_ok = system.outbox.ping()
    redis_ok = system.broker.ping()

    body = {
        "status": "healthy" if postgres_ok and redis_ok else "degraded",
        "postgres": "ok" if postgres_ok else "unavailable",
        "redis": "ok" if redis_ok else "unavailable",
    }
    if not postgres_ok:
        body["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=body)
    return body
