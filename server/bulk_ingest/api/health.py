"""Liveness and dependency health endpoints."""
import logging
from typing import Any

from fastapi import APIRouter, Depends

from bulk_ingest.api.deps import get_job_manager
from bulk_ingest.core.config import get_settings
from bulk_ingest.core.redis_manager import get_redis_client
from bulk_ingest.services.job_manager import JobManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

HEALTHY, DEGRADED, UNHEALTHY = "healthy", "degraded", "unhealthy"
_SEVERITY = {HEALTHY: 0, DEGRADED: 1, UNHEALTHY: 2}


def _component(state: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"status": state, "message": message, **extra}


def _check_job_store(manager: JobManager) -> dict[str, Any]:
    try:
        manager.ping_store()
    except Exception as exc:
        logger.error(f"Job store health check failed: {exc}")
        return _component(UNHEALTHY, f"Job store unreachable: {exc}")
    return _component(HEALTHY, "Job store reachable")


async def _check_progress_transport() -> dict[str, Any]:
    # progress is best-effort, so an outage only degrades the service
    redis_client = get_redis_client()
    try:
        await redis_client.ping()
    except Exception as exc:
        return _component(DEGRADED, f"Progress transport unreachable: {exc}")
    finally:
        await redis_client.aclose()
    return _component(HEALTHY, "Progress transport reachable")


def _check_workers() -> dict[str, Any]:
    try:
        from bulk_ingest.tasks.celery_app import celery_app

        active = celery_app.control.inspect(timeout=2.0).active()
    except Exception as exc:
        return _component(DEGRADED, f"Failed to inspect Celery workers: {exc}")
    if not active:
        return _component(DEGRADED, "No active Celery workers found")
    return _component(HEALTHY, f"{len(active)} worker(s) available", workers=sorted(active))


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Liveness probe for load balancers."""
    return {"status": "ok"}


@router.get("/health/detailed")
async def detailed_health_check(manager: JobManager = Depends(get_job_manager)) -> dict[str, Any]:
    """Report the job store, the progress transport and whichever executor runs jobs."""

    settings = get_settings()
    components = {
        "job_store": _check_job_store(manager),
        "progress": await _check_progress_transport(),
    }
    if settings.execution_mode == "celery":
        components["workers"] = _check_workers()
    else:
        components["workers"] = _component(
            HEALTHY,
            "In-process executor",
            running_jobs=manager.running_jobs(),
            max_concurrent_jobs=settings.max_concurrent_jobs,
        )

    overall = max((c["status"] for c in components.values()), key=_SEVERITY.__getitem__)
    return {"status": overall, "execution_mode": settings.execution_mode, "components": components}
