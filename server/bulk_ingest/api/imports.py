"""Import job endpoints: creation, status, error log and lifecycle controls."""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from bulk_ingest.api.deps import domain_errors, get_job_manager
from bulk_ingest.schemas.import_job import (
    ImportErrorPage,
    ImportErrorResponse,
    ImportJobCreate,
    ImportJobResponse,
    ImportWarningPage,
    ImportWarningResponse,
)
from bulk_ingest.services.job_manager import JobManager
from bulk_ingest.services.templates import build_csv_template, build_xlsx_template

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.post(
    "",
    response_model=ImportJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an uploaded file as an import job",
    description=(
        "Creates a pending import job for a file the upload layer has already stored. "
        "With auto_start the job is queued for processing immediately."
    ),
)
def create_import(
    payload: ImportJobCreate,
    manager: JobManager = Depends(get_job_manager),
) -> ImportJobResponse:
    with domain_errors():
        job = manager.create_job(
            payload.filename,
            payload.stored_file_path,
            payload.file_size_bytes,
            payload.owner_id,
            object_type=payload.object_type,
            column_mapping=payload.column_mapping,
            options=payload.options,
        )
        if payload.auto_start:
            job = manager.start_job(job.id)
    return ImportJobResponse.model_validate(job)


@router.get("", response_model=list[ImportJobResponse], summary="List recent import jobs")
def list_imports(
    limit: int = Query(50, ge=1, le=500),
    manager: JobManager = Depends(get_job_manager),
) -> list[ImportJobResponse]:
    return [ImportJobResponse.model_validate(job) for job in manager.list_jobs(limit=limit)]


@router.get("/template", summary="Download the CSV import template")
def download_csv_template() -> Response:
    content, filename = build_csv_template()
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/template.xlsx", summary="Download the XLSX import template")
def download_xlsx_template() -> Response:
    content, filename = build_xlsx_template()
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{job_id}", response_model=ImportJobResponse, summary="Read an import job")
def get_import(job_id: UUID, manager: JobManager = Depends(get_job_manager)) -> ImportJobResponse:
    with domain_errors():
        job = manager.get_job(job_id)
    return ImportJobResponse.model_validate(job)


@router.get(
    "/{job_id}/errors",
    response_model=ImportErrorPage,
    summary="List an import job's errors ordered by row number",
)
def list_import_errors(
    job_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    manager: JobManager = Depends(get_job_manager),
) -> ImportErrorPage:
    with domain_errors():
        items, total = manager.list_errors(job_id, page=page, page_size=page_size)
    return ImportErrorPage(
        items=[ImportErrorResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{job_id}/warnings",
    response_model=ImportWarningPage,
    summary="List an import job's warnings ordered by row number",
)
def list_import_warnings(
    job_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    manager: JobManager = Depends(get_job_manager),
) -> ImportWarningPage:
    with domain_errors():
        items, total = manager.list_warnings(job_id, page=page, page_size=page_size)
    return ImportWarningPage(
        items=[ImportWarningResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/{job_id}/start", response_model=ImportJobResponse, status_code=status.HTTP_202_ACCEPTED)
def start_import(job_id: UUID, manager: JobManager = Depends(get_job_manager)) -> ImportJobResponse:
    with domain_errors():
        job = manager.start_job(job_id)
    return ImportJobResponse.model_validate(job)


@router.post("/{job_id}/pause", response_model=ImportJobResponse, status_code=status.HTTP_202_ACCEPTED)
def pause_import(job_id: UUID, manager: JobManager = Depends(get_job_manager)) -> ImportJobResponse:
    with domain_errors():
        job = manager.pause_job(job_id)
    return ImportJobResponse.model_validate(job)


@router.post("/{job_id}/resume", response_model=ImportJobResponse, status_code=status.HTTP_202_ACCEPTED)
def resume_import(job_id: UUID, manager: JobManager = Depends(get_job_manager)) -> ImportJobResponse:
    with domain_errors():
        job = manager.resume_job(job_id)
    return ImportJobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=ImportJobResponse, status_code=status.HTTP_202_ACCEPTED)
def cancel_import(job_id: UUID, manager: JobManager = Depends(get_job_manager)) -> ImportJobResponse:
    with domain_errors():
        job = manager.cancel_job(job_id)
    return ImportJobResponse.model_validate(job)
