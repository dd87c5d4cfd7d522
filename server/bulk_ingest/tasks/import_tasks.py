"""Celery tasks that run import jobs on a worker.

In ``celery`` execution mode the API's JobManager queues jobs by sending
``process_import_job``. The worker builds its own JobManager against the same
database and runs the job until it completes, fails, or honours a pause/cancel
request that another process stored on the job. ``recover_stale_jobs`` runs
on the beat schedule and fails jobs whose worker disappeared without the
broker redelivering them.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from bulk_ingest.core.config import get_settings
from bulk_ingest.services.job_manager import build_job_manager
from bulk_ingest.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_import_job(job_id: str, *, redelivered: bool = False) -> dict:
    """Run one job with a JobManager that lives only for this task."""

    manager = build_job_manager(get_settings())
    try:
        status = manager.run_job(UUID(job_id), takeover=redelivered)
    finally:
        manager.shutdown(wait=False)
    logger.info(f"Import job {job_id} stopped in status {status.value}")
    return {"job_id": job_id, "status": status.value}


@celery_app.task(
    name="bulk_ingest.tasks.import_tasks.process_import_job",
    bind=True,
    acks_late=True,
    max_retries=0,
)
def process_import_job(self, job_id: str) -> dict:
    """Run a queued import job to its next stop.

    Failures are recorded on the job itself (and are resumable where that is
    safe), so the task never raises for pipeline errors. A message the broker
    redelivers after losing its worker takes over the job where the lost
    worker's last batch committed.

    Args:
        job_id: UUID string of the import job

    Returns:
        dict with the job id and the status it stopped in
    """
    redelivered = bool((self.request.delivery_info or {}).get("redelivered"))
    logger.info(f"Worker picked up import job {job_id} (task {self.request.id}, redelivered={redelivered})")
    return run_import_job(job_id, redelivered=redelivered)


@celery_app.task(name="bulk_ingest.tasks.import_tasks.recover_stale_jobs")
def recover_stale_jobs() -> list[str]:
    """Fail processing jobs that stopped committing batches, leaving them resumable."""

    settings = get_settings()
    manager = build_job_manager(settings)
    try:
        recovered = manager.recover_interrupted_jobs(idle_for=timedelta(seconds=settings.stale_job_seconds))
    finally:
        manager.shutdown(wait=False)
    if recovered:
        logger.warning(f"Recovered {len(recovered)} stale import job(s)")
    return [str(job_id) for job_id in recovered]


def enqueue_import_job(job_id: UUID) -> str:
    """Publish a job to the import queue and return the Celery task id."""

    task = process_import_job.apply_async(args=[str(job_id)])
    logger.info(f"Enqueued import job {job_id} as task {task.id}")
    return task.id
