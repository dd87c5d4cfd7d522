"""Tasks module for background job processing."""
from __future__ import annotations

from .celery_app import celery_app, get_celery_app
from .import_tasks import enqueue_import_job, process_import_job

__all__ = [
    "celery_app",
    "enqueue_import_job",
    "get_celery_app",
    "process_import_job",
]
