"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with a mocked JobManager.
No real orchestration or LLM calls are made.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import router, set_job_manager
from events.bus import EventBus
from events.types import EventType, OrchestrationEvent
from job_manager import JobInfo
from models.schemas import JobMode, JobStatus, OrchestrationResult

JOB_ID = "job_aabb11223344"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_job(
    job_id: str = JOB_ID,
    request: str = "Build a todo app with React",
    mode: JobMode = JobMode.PLANNING,
    status: JobStatus = JobStatus.RUNNING,
    created_at: float = 1700000000.0,
    result: OrchestrationResult | None = None,
) -> JobInfo:
    return JobInfo(
        job_id=job_id,
        request=request,
        mode=mode,
        status=status,
        user_id=None,
        model=None,
        created_at=created_at,
        started_at=created_at + 1,
        progress=30,
        progress_message="Running group 1/2",
        result=result,
    )


@pytest.fixture()
def mock_job_manager() -> MagicMock:
    """Create a mock JobManager."""
    mgr = MagicMock()
    mgr.create_job = AsyncMock(return_value=JOB_ID)
    mgr.get_job = MagicMock(return_value=_make_job())
    mgr.get_all_jobs = MagicMock(return_value=[_make_job()])
    mgr.cancel_job = AsyncMock()
    mgr.cleanup_all = AsyncMock()
    mgr.active_count = MagicMock(return_value=1)
    mgr.event_bus = EventBus()
    mgr.store = None
    limiter = mgr.orchestrator.generation.rate_limiter
    limiter.has_shared_store = True
    limiter.get_status = AsyncMock(return_value={
        "groq": {"count": 3, "concurrent": 1, "source": "shared"},
    })
    mgr.orchestrator.recorder.cleanup = AsyncMock(return_value=4)
    return mgr


@pytest.fixture()
def client(mock_job_manager: MagicMock) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with mocked job manager."""
    app = FastAPI()
    app.include_router(router)
    set_job_manager(mock_job_manager)  # type: ignore[arg-type]
    with TestClient(app) as c:
        yield c
    set_job_manager(None)


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["version"] == "0.1.0"
        assert data["shared_rate_limit_store"] is True
        assert data["active_jobs"] == 1

    def test_unconfigured_reports_unhealthy(self) -> None:
        app = FastAPI()
        app.include_router(router)
        set_job_manager(None)
        with TestClient(app) as c:
            resp = c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "unhealthy"


# =========================================================================
# Create Job
# =========================================================================


class TestCreateJob:
    """POST /api/jobs."""

    def test_create_job_success(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        resp = client.post("/api/jobs", json={"request": "Build a todo app with React"})
        assert resp.status_code == 202
        data = resp.json()
        assert data["job_id"] == JOB_ID
        assert data["status"] == "running"
        assert data["events_url"] == f"/api/jobs/{JOB_ID}/events"
        mock_job_manager.create_job.assert_awaited_once_with(
            "Build a todo app with React",
            mode=JobMode.PLANNING,
            user_id=None,
            model=None,
        )

    def test_create_fast_job_with_model(
        self, client: TestClient, mock_job_manager: MagicMock
    ) -> None:
        resp = client.post(
            "/api/jobs",
            json={
                "request": "Build a counter",
                "mode": "fast",
                "user_id": "user-1",
                "model": "openrouter/some-model",
            },
        )
        assert resp.status_code == 202
        mock_job_manager.create_job.assert_awaited_once_with(
            "Build a counter",
            mode=JobMode.FAST,
            user_id="user-1",
            model="openrouter/some-model",
        )

    def test_request_too_short(self, client: TestClient) -> None:
        resp = client.post("/api/jobs", json={"request": "hi"})
        assert resp.status_code == 422

    def test_invalid_mode(self, client: TestClient) -> None:
        resp = client.post("/api/jobs", json={"request": "Build a todo app", "mode": "turbo"})
        assert resp.status_code == 422

    def test_missing_request(self, client: TestClient) -> None:
        resp = client.post("/api/jobs", json={})
        assert resp.status_code == 422

    def test_create_job_failure(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        mock_job_manager.create_job = AsyncMock(side_effect=RuntimeError("database locked"))
        resp = client.post("/api/jobs", json={"request": "Build a todo app"})
        assert resp.status_code == 500
        assert "database locked" in resp.json()["detail"]


# =========================================================================
# Get / List Jobs
# =========================================================================


class TestGetJob:
    """GET /api/jobs/{job_id}."""

    def test_get_job_success(self, client: TestClient) -> None:
        resp = client.get(f"/api/jobs/{JOB_ID}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["job_id"] == JOB_ID
        assert data["status"] == "running"
        assert data["progress"] == 30
        assert data["progress_message"] == "Running group 1/2"
        assert data["result"] is None

    def test_get_completed_job_includes_result(
        self, client: TestClient, mock_job_manager: MagicMock
    ) -> None:
        result = OrchestrationResult(
            success=True,
            summary="A todo app",
            artifacts={"/App.tsx": "export default function App() {}"},
        )
        mock_job_manager.get_job.return_value = _make_job(status=JobStatus.COMPLETED, result=result)
        data = client.get(f"/api/jobs/{JOB_ID}").json()
        assert data["status"] == "completed"
        assert data["result"]["artifacts"] == {"/App.tsx": "export default function App() {}"}

    def test_get_job_not_found(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        mock_job_manager.get_job.return_value = None
        resp = client.get("/api/jobs/job_missing")
        assert resp.status_code == 404

    def test_get_job_falls_back_to_persisted_store(
        self, client: TestClient, mock_job_manager: MagicMock
    ) -> None:
        mock_job_manager.get_job.return_value = None
        mock_job_manager.store = MagicMock()
        mock_job_manager.store.get_job = AsyncMock(return_value={
            "id": "job_persisted",
            "request_text": "Build a todo app",
            "mode": "fast",
            "status": "completed",
            "result_summary": "A todo app",
            "project_name": "todo-app",
            "artifacts": {"/App.tsx": "x"},
            "created_at": 1700000000.0,
            "completed_at": 1700000060.0,
            "error_message": None,
        })

        resp = client.get("/api/jobs/job_persisted")

        assert resp.status_code == 200
        data = resp.json()
        assert data["mode"] == "fast"
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["result"]["project_name"] == "todo-app"
        assert data["result"]["artifacts"] == {"/App.tsx": "x"}

    def test_persisted_row_with_unknown_status(
        self, client: TestClient, mock_job_manager: MagicMock
    ) -> None:
        mock_job_manager.get_job.return_value = None
        mock_job_manager.store = MagicMock()
        mock_job_manager.store.get_job = AsyncMock(return_value={
            "id": "job_odd",
            "request_text": "Build a todo app",
            "mode": "weird",
            "status": "exploded",
            "created_at": "not-a-number",
        })
        data = client.get("/api/jobs/job_odd").json()
        assert data["status"] == "pending"
        assert data["mode"] == "planning"
        assert data["created_at"] == 0.0
        assert data["result"] is None


class TestListJobs:
    """GET /api/jobs."""

    def test_list_jobs(self, client: TestClient) -> None:
        resp = client.get("/api/jobs")
        assert resp.status_code == 200
        assert [job["job_id"] for job in resp.json()] == [JOB_ID]

    def test_newest_first_and_limit(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        mock_job_manager.get_all_jobs.return_value = [
            _make_job(job_id="job_old", created_at=1.0),
            _make_job(job_id="job_new", created_at=3.0),
            _make_job(job_id="job_mid", created_at=2.0),
        ]
        data = client.get("/api/jobs?limit=2").json()
        assert [job["job_id"] for job in data] == ["job_new", "job_mid"]

    def test_limit_bounds(self, client: TestClient) -> None:
        assert client.get("/api/jobs?limit=0").status_code == 422
        assert client.get("/api/jobs?limit=201").status_code == 422

    def test_falls_back_to_persisted_store(
        self, client: TestClient, mock_job_manager: MagicMock
    ) -> None:
        mock_job_manager.store = MagicMock()
        mock_job_manager.store.list_jobs = AsyncMock(return_value=[
            {"id": JOB_ID, "request_text": "dup", "mode": "planning", "status": "running", "created_at": 1.0},
            {"id": "job_old", "request_text": "Old", "mode": "planning", "status": "failed", "created_at": 1.0,
             "error_message": "All tasks failed"},
        ])
        data = client.get("/api/jobs").json()
        assert [job["job_id"] for job in data] == [JOB_ID, "job_old"]
        assert data[1]["error_message"] == "All tasks failed"
        assert data[1]["progress"] == 100


# =========================================================================
# Events
# =========================================================================


class TestJobEvents:
    """GET /api/jobs/{job_id}/events."""

    def test_returns_history(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        bus: EventBus = mock_job_manager.event_bus
        history = [
            OrchestrationEvent(type=EventType.JOB_STARTED, job_id=JOB_ID, data={"mode": "planning"}),
            OrchestrationEvent(type=EventType.PROGRESS, job_id=JOB_ID, data={"percent": 15}),
        ]
        bus._event_history[JOB_ID].extend(history)

        resp = client.get(f"/api/jobs/{JOB_ID}/events")

        assert resp.status_code == 200
        data = resp.json()
        assert [e["type"] for e in data] == ["job_started", "progress"]
        assert data[1]["data"] == {"percent": 15}

    def test_known_job_without_events(self, client: TestClient) -> None:
        resp = client.get(f"/api/jobs/{JOB_ID}/events")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_unknown_job(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        mock_job_manager.get_job.return_value = None
        resp = client.get("/api/jobs/job_missing/events")
        assert resp.status_code == 404


# =========================================================================
# Cancel
# =========================================================================


class TestCancelJob:
    """POST /api/jobs/{job_id}/cancel."""

    def test_cancel_success(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        resp = client.post(f"/api/jobs/{JOB_ID}/cancel")
        assert resp.status_code == 200
        assert resp.json()["message"] == f"Job {JOB_ID} cancelled"
        mock_job_manager.cancel_job.assert_awaited_once_with(JOB_ID)

    def test_cancel_not_found(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        mock_job_manager.get_job.return_value = None
        resp = client.post("/api/jobs/job_missing/cancel")
        assert resp.status_code == 404

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
    def test_cancel_finished_job(
        self, client: TestClient, mock_job_manager: MagicMock, status: JobStatus
    ) -> None:
        mock_job_manager.get_job.return_value = _make_job(status=status)
        resp = client.post(f"/api/jobs/{JOB_ID}/cancel")
        assert resp.status_code == 400
        assert status.value in resp.json()["detail"]
        mock_job_manager.cancel_job.assert_not_awaited()


# =========================================================================
# Operations
# =========================================================================


class TestOperations:
    def test_rate_limit_status(self, client: TestClient) -> None:
        resp = client.get("/api/rate-limits")
        assert resp.status_code == 200
        assert resp.json()["groq"]["source"] == "shared"

    def test_cleanup_traces_default_retention(
        self, client: TestClient, mock_job_manager: MagicMock
    ) -> None:
        resp = client.post("/api/maintenance/cleanup-traces")
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 4, "retention_days": 7}
        mock_job_manager.orchestrator.recorder.cleanup.assert_awaited_once_with(7)

    def test_cleanup_traces_override(self, client: TestClient, mock_job_manager: MagicMock) -> None:
        resp = client.post("/api/maintenance/cleanup-traces?retention_days=30")
        assert resp.json()["retention_days"] == 30
        mock_job_manager.orchestrator.recorder.cleanup.assert_awaited_once_with(30)


class TestJobManagerNotConfigured:
    def test_unconfigured_raises(self) -> None:
        app = FastAPI()
        app.include_router(router)
        set_job_manager(None)
        with TestClient(app, raise_server_exceptions=True) as c, pytest.raises(RuntimeError):
            c.get("/api/jobs")
