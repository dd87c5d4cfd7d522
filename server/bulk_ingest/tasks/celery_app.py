"""Celery application for the import worker."""

import logging

from celery import Celery
from celery.signals import after_setup_logger

from bulk_ingest.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bulk_ingest",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.config_from_object("bulk_ingest.tasks.celery_config")
celery_app.autodiscover_tasks(["bulk_ingest.tasks"])


@after_setup_logger.connect
def configure_worker_logging(logger: logging.Logger, **kwargs) -> None:
    logger.setLevel(settings.log_level.upper())


def get_celery_app() -> Celery:
    """Return the import worker's Celery application."""
    return celery_app
