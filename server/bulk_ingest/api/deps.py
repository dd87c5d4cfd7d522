"""Shared FastAPI dependencies for the import routers."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException, Request, status

from bulk_ingest.services.exceptions import InvalidInput, InvalidState, JobNotFound
from bulk_ingest.services.job_manager import JobManager


def get_job_manager(request: Request) -> JobManager:
    """Return the JobManager built by the application lifespan."""

    return request.app.state.job_manager


@contextmanager
def domain_errors() -> Iterator[None]:
    """Translate domain exceptions raised by the JobManager into HTTP errors."""

    try:
        yield
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidState as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InvalidInput as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
