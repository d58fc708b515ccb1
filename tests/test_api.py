"""
test_api.py
~~~~~~~~~~~
HTTP surface through FastAPI's TestClient. The scheduler, store and
artifact dispatcher are swapped in through dependency overrides so no
Celery broker or provider is needed.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from beyanname_ai.api import deps
from beyanname_ai.core.limiter import limiter
from beyanname_ai.core.security import create_access_token
from beyanname_ai.main import app
from beyanname_ai.services.analysis_client import AnalysisTimeout, ProviderError
from beyanname_ai.services.artifact_renderer import ArtifactRenderer
from beyanname_ai.services.job_store import JobStatus
from beyanname_ai.services.status_service import FAILURE_SUMMARIES
from beyanname_ai.services.job_store import FailureKind
from beyanname_ai.services.storage import LocalStorageProvider
from tests.conftest import StubClient

REPORT = "# Analiz\n- Vergi yükü dengeli"


def auth(owner_id: str = "A") -> dict:
    return {"Authorization": f"Bearer {create_access_token(owner_id)}"}


@pytest.fixture
def scheduler(make_scheduler, tmp_path):
    scheduler = make_scheduler(StubClient(REPORT))
    scheduler.renderer = ArtifactRenderer()
    scheduler.storage = LocalStorageProvider(str(tmp_path / "artifacts"))
    return scheduler


@pytest.fixture
def client(scheduler, store, monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)
    app.dependency_overrides[deps.get_scheduler] = lambda: scheduler
    app.dependency_overrides[deps.get_job_store] = lambda: store
    app.dependency_overrides[deps.get_artifact_dispatcher] = lambda: scheduler.render_artifact
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _submit(client, job_id="J1", owner="A", **body):
    payload = {"job_id": job_id, "input_refs": ["kdv-2024-03.xml"], "input_payload": {"matrah": 1000}}
    payload.update(body)
    return client.post("/jobs", json=payload, headers=auth(owner))


# ─── Auth ────────────────────────────────────────────────────────────────────

class TestAuth:
    def test_health_is_public(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer not-a-jwt"}, {"Authorization": "Basic dXNlcjpwYXNz"}],
    )
    def test_missing_or_invalid_credentials_401(self, client, headers):
        assert client.post("/jobs", json={"input_payload": "x"}, headers=headers).status_code == 401
        assert client.get("/jobs/J1/status", headers=headers).status_code == 401
        assert client.get("/jobs", headers=headers).status_code == 401


# ─── Submission ──────────────────────────────────────────────────────────────

class TestSubmit:
    def test_accepted(self, client, store):
        response = _submit(client)
        assert response.status_code == 202
        assert response.json()["job_id"] == "J1"
        assert store.get_by_id("J1", "A").status == JobStatus.COMPLETED

    def test_server_generates_id(self, client):
        response = client.post("/jobs", json={"input_payload": "beyanname"}, headers=auth())
        assert response.status_code == 202
        assert response.json()["job_id"]

    def test_body_owner_must_match_token(self, client, store):
        response = _submit(client, owner="A", owner_id="B")
        assert response.status_code == 403
        assert store.list_by_owner("A") == [] and store.list_by_owner("B") == []

    @pytest.mark.parametrize(
        "body",
        [{"input_payload": ""}, {"input_payload": None}, {"input_refs": "x"}, {"job_id": "evil/J1"}],
    )
    def test_validation_400(self, client, store, body):
        assert _submit(client, **body).status_code == 400
        assert store.list_by_owner("A") == []

    def test_duplicate_409(self, client):
        _submit(client)
        assert _submit(client).status_code == 409


# ─── Status ──────────────────────────────────────────────────────────────────

class TestStatus:
    def test_completed(self, client):
        _submit(client)
        body = client.get("/jobs/J1/status", headers=auth()).json()
        assert body["status"] == "completed"
        assert body["artifact_available"] is True
        assert "failure" not in body
        assert "batch_progress" not in body

    def test_other_owner_gets_404_not_403(self, client):
        _submit(client, owner="A")
        assert client.get("/jobs/J1/status", headers=auth("B")).status_code == 404
        assert client.get("/jobs/missing/status", headers=auth("B")).status_code == 404

    def test_owner_query_must_be_caller(self, client):
        _submit(client, owner="A")
        assert client.get("/jobs/J1/status?owner_id=A", headers=auth("A")).status_code == 200
        assert client.get("/jobs/J1/status?owner_id=B", headers=auth("A")).status_code == 404

    def test_failed_shows_summary_only_by_default(self, client, scheduler):
        scheduler.client.reply = AnalysisTimeout("provider silent for 120 s")
        _submit(client)
        failure = client.get("/jobs/J1/status", headers=auth()).json()["failure"]
        assert failure["kind"] == "Timeout"
        assert failure["message"] == FAILURE_SUMMARIES[FailureKind.TIMEOUT]
        assert "error_message" not in failure

        detailed = client.get("/jobs/J1/status?include_detail=true", headers=auth()).json()["failure"]
        assert detailed["error_message"] == "provider silent for 120 s"
        assert "Traceback" in detailed["error_detail"]

    def test_batch_progress_visible(self, client, scheduler, store, no_dispatch):
        scheduler.dispatcher = no_dispatch
        _submit(client)
        store.update_status("J1", "A", JobStatus.PROCESSING, expected=JobStatus.PENDING)
        store.update_progress("J1", "A", 1, 3)
        body = client.get("/jobs/J1/status", headers=auth()).json()
        assert body["status"] == "processing"
        assert body["batch_progress"] == {"completed_parts": 1, "total_parts": 3}


# ─── Listing & Detail ────────────────────────────────────────────────────────

class TestJobs:
    def test_list_newest_first_and_scoped(self, client):
        for job_id in ("J1", "J2"):
            _submit(client, job_id=job_id)
        _submit(client, job_id="B1", owner="B")
        jobs = client.get("/jobs", headers=auth()).json()
        assert [j["job_id"] for j in jobs] == ["J2", "J1"]

    def test_detail_includes_result(self, client):
        _submit(client)
        body = client.get("/jobs/J1", headers=auth()).json()
        assert body["result_text"] == REPORT
        assert body["input_refs"] == ["kdv-2024-03.xml"]

    def test_detail_other_owner_404(self, client):
        _submit(client)
        assert client.get("/jobs/J1", headers=auth("B")).status_code == 404


class TestFailureHistory:
    def test_entries_across_retries_newest_first(self, client, scheduler):
        scheduler.client.reply = AnalysisTimeout("ilk deneme")
        _submit(client)
        scheduler.client.reply = ProviderError("ikinci deneme")
        client.post("/jobs/J1/retry", headers=auth())

        response = client.get("/jobs/J1/failures", headers=auth())
        assert response.status_code == 200
        entries = response.json()
        assert [e["kind"] for e in entries] == ["ProviderError", "Timeout"]
        assert [e["error_message"] for e in entries] == ["ikinci deneme", "ilk deneme"]
        assert all(e["job_id"] == "J1" for e in entries)

        limited = client.get("/jobs/J1/failures?limit=1", headers=auth()).json()
        assert [e["kind"] for e in limited] == ["ProviderError"]

    def test_completed_job_has_no_failures(self, client):
        _submit(client)
        assert client.get("/jobs/J1/failures", headers=auth()).json() == []

    def test_other_owner_404(self, client, scheduler):
        scheduler.client.reply = AnalysisTimeout("t")
        _submit(client)
        assert client.get("/jobs/J1/failures", headers=auth("B")).status_code == 404
        assert client.get("/jobs/missing/failures", headers=auth()).status_code == 404


# ─── Retry & Cancel ──────────────────────────────────────────────────────────

class TestRetryCancel:
    def test_retry_failed_job(self, client, scheduler, store):
        scheduler.client.reply = AnalysisTimeout("t")
        _submit(client)
        scheduler.client.reply = REPORT
        response = client.post("/jobs/J1/retry", headers=auth())
        assert response.status_code == 200
        assert response.json() == {}
        assert store.get_by_id("J1", "A").status == JobStatus.COMPLETED

    def test_double_retry_409(self, client, scheduler, no_dispatch):
        scheduler.client.reply = AnalysisTimeout("t")
        _submit(client)
        scheduler.dispatcher = no_dispatch
        assert client.post("/jobs/J1/retry", headers=auth()).status_code == 200
        assert client.post("/jobs/J1/retry", headers=auth()).status_code == 409

    def test_retry_completed_409(self, client):
        _submit(client)
        assert client.post("/jobs/J1/retry", headers=auth()).status_code == 409

    def test_retry_other_owner_404(self, client):
        _submit(client)
        assert client.post("/jobs/J1/retry", headers=auth("B")).status_code == 404

    def test_cancel_pending(self, client, scheduler, store, no_dispatch):
        scheduler.dispatcher = no_dispatch
        _submit(client)
        assert client.post("/jobs/J1/cancel", headers=auth()).status_code == 202
        scheduler.pickup_and_process("J1", "A")
        assert client.get("/jobs/J1/status", headers=auth()).json()["failure"]["kind"] == "Cancelled"

    def test_cancel_completed_409(self, client):
        _submit(client)
        assert client.post("/jobs/J1/cancel", headers=auth()).status_code == 409


# ─── Artifacts ───────────────────────────────────────────────────────────────

class TestArtifact:
    def test_download_pdf(self, client):
        _submit(client)
        response = client.get("/jobs/J1/artifact", headers=auth())
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF-")

    def test_not_rendered_404(self, client, scheduler):
        scheduler.renderer = None
        _submit(client)
        assert client.get("/jobs/J1/artifact", headers=auth()).status_code == 404

    def test_other_owner_404(self, client):
        _submit(client)
        assert client.get("/jobs/J1/artifact", headers=auth("B")).status_code == 404

    def test_owners_never_share_a_file(self, client, scheduler):
        scheduler.client.reply = "# A raporu"
        _submit(client, job_id="J1", owner="A")
        scheduler.client.reply = "# B raporu"
        _submit(client, job_id="J1-b", owner="B")

        pdf_a = client.get("/jobs/J1/artifact", headers=auth("A")).content
        pdf_b = client.get("/jobs/J1-b/artifact", headers=auth("B")).content
        assert pdf_a.startswith(b"%PDF-") and pdf_b.startswith(b"%PDF-")
        assert pdf_a != pdf_b
        assert pdf_a == scheduler.renderer.render("# A raporu")

    def test_rerender(self, client, scheduler, store):
        renderer = scheduler.renderer
        scheduler.renderer = None
        _submit(client)
        scheduler.renderer = renderer
        assert client.post("/jobs/J1/artifact", headers=auth()).status_code == 202
        assert store.get_by_id("J1", "A").artifact_url

    def test_rerender_requires_completed(self, client, scheduler):
        scheduler.client.reply = AnalysisTimeout("t")
        _submit(client)
        assert client.post("/jobs/J1/artifact", headers=auth()).status_code == 409
