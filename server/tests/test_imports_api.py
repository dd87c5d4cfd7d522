"""Tests for the import job HTTP endpoints."""
from __future__ import annotations

import csv
import io
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import openpyxl
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from bulk_ingest.api import health
from bulk_ingest.main import create_app
from bulk_ingest.models.import_job import ImportStatus

from conftest import object_row


@pytest.fixture
def client(settings, manager):
    """Create a FastAPI test client around the test JobManager."""

    app = create_app(settings, job_manager=manager)
    with TestClient(app) as test_client:
        yield test_client


def create_payload(path, **extra) -> dict:
    return {"filename": path.name, "stored_file_path": str(path), "file_size_bytes": path.stat().st_size, **extra}


class TestCreateImport:
    def test_create_pending_job(self, client: TestClient, make_csv) -> None:
        path = make_csv([object_row(1)])

        response = client.post("/api/imports", json=create_payload(path, options={"batch_size": 500}))

        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["status"] == "pending"
        assert body["filename"] == "objects.csv"
        assert body["options"]["batch_size"] == 500
        assert body["processed_records"] == 0

    def test_auto_start_runs_the_job(self, client: TestClient, make_csv, manager) -> None:
        rows = [object_row(i) for i in range(1, 13)]
        rows[4]["object_code"] = ""
        path = make_csv(rows)

        response = client.post("/api/imports", json=create_payload(path, auto_start=True))

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["status"] == "queued"
        job_id = UUID(response.json()["id"])
        assert manager.wait(job_id, timeout=30) == ImportStatus.COMPLETED

        job = client.get(f"/api/imports/{job_id}").json()
        assert job["status"] == "completed"
        assert (job["successful_records"], job["failed_records"], job["total_records"]) == (11, 1, 12)

        errors = client.get(f"/api/imports/{job_id}/errors").json()
        assert errors["total"] == 1
        assert errors["items"][0]["row_number"] == 5
        assert errors["items"][0]["category"] == "validation"
        assert errors["items"][0]["field_name"] == "object_code"

    def test_blank_filename_is_rejected(self, client: TestClient) -> None:
        response = client.post("/api/imports", json={"filename": " ", "stored_file_path": "/tmp/a.csv"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_invalid_options_are_rejected(self, client: TestClient, make_csv) -> None:
        path = make_csv([object_row(1)])

        response = client.post("/api/imports", json=create_payload(path, options={"conflict_policy": "overwrite"}))

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestLifecycleEndpoints:
    def test_unknown_job_is_404(self, client: TestClient) -> None:
        job_id = uuid4()

        assert client.get(f"/api/imports/{job_id}").status_code == status.HTTP_404_NOT_FOUND
        assert client.post(f"/api/imports/{job_id}/start").status_code == status.HTTP_404_NOT_FOUND
        assert client.get(f"/api/imports/{job_id}/errors").status_code == status.HTTP_404_NOT_FOUND

    def test_invalid_transition_is_409(self, client: TestClient, make_csv) -> None:
        job_id = client.post("/api/imports", json=create_payload(make_csv([object_row(1)]))).json()["id"]

        response = client.post(f"/api/imports/{job_id}/pause")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert "pending" in response.json()["detail"]

    def test_cancel_then_start_is_refused(self, client: TestClient, make_csv) -> None:
        job_id = client.post("/api/imports", json=create_payload(make_csv([object_row(1)]))).json()["id"]

        cancelled = client.post(f"/api/imports/{job_id}/cancel")
        assert cancelled.status_code == status.HTTP_202_ACCEPTED
        assert cancelled.json()["status"] == "cancelled"

        assert client.post(f"/api/imports/{job_id}/start").status_code == status.HTTP_409_CONFLICT

    def test_start_and_list(self, client: TestClient, make_csv, manager) -> None:
        job_id = client.post("/api/imports", json=create_payload(make_csv([object_row(1)]))).json()["id"]

        started = client.post(f"/api/imports/{job_id}/start")
        assert started.status_code == status.HTTP_202_ACCEPTED
        manager.wait(UUID(job_id), timeout=30)

        jobs = client.get("/api/imports", params={"limit": 10}).json()
        assert [job["id"] for job in jobs] == [job_id]
        warnings = client.get(f"/api/imports/{job_id}/warnings").json()
        assert warnings == {"items": [], "total": 0, "page": 1, "page_size": 100}

    def test_error_page_bounds(self, client: TestClient, make_csv) -> None:
        job_id = client.post("/api/imports", json=create_payload(make_csv([object_row(1)]))).json()["id"]

        response = client.get(f"/api/imports/{job_id}/errors", params={"page": 0})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestTemplates:
    def test_csv_template(self, client: TestClient) -> None:
        response = client.get("/api/imports/template")

        assert response.status_code == status.HTTP_200_OK
        assert "object_import_template_v1.csv" in response.headers["content-disposition"]
        header = next(csv.reader(io.StringIO(response.content.decode("utf-8-sig"))))
        assert header[:3] == ["object_code", "name", "rfid_tag_id"]

    def test_xlsx_template(self, client: TestClient) -> None:
        response = client.get("/api/imports/template.xlsx")

        assert response.status_code == status.HTTP_200_OK
        workbook = openpyxl.load_workbook(io.BytesIO(response.content))
        assert workbook.sheetnames == ["OBJECTS", "INSTRUCTIONS"]


class TestHealth:
    def test_basic_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "ok"}

    def test_detailed_health_degrades_without_progress_transport(self, client: TestClient, monkeypatch) -> None:
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=ConnectionError("refused"))
        redis.aclose = AsyncMock()
        monkeypatch.setattr(health, "get_redis_client", lambda: redis)

        response = client.get("/health/detailed")

        body = response.json()
        assert response.status_code == status.HTTP_200_OK
        assert body["status"] == "degraded"
        assert body["components"]["job_store"]["status"] == "healthy"
        assert body["components"]["progress"]["status"] == "degraded"
        assert body["components"]["workers"]["running_jobs"] == 0
        redis.aclose.assert_awaited_once()
