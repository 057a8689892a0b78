"""
Tests for OMR Service API endpoints.

Tests cover:
- Health check
- Synchronous conversion
- Asynchronous conversion and status polling
- Artifact download
- Job listing
- Error responses
"""

from xml.etree import ElementTree

import pytest
from fastapi.testclient import TestClient

from omr_service.backends import PlaceholderBackend
from omr_service.main import app, create_app


def post_file(client, url, path, content_type="image/png"):
    with open(path, "rb") as f:
        return client.post(url, files={"file": (path.name, f, content_type)})


@pytest.fixture
def poll_status(wait_for):
    """Poll /status until the job leaves the pending/processing states."""

    def _poll(client, job_id):
        def finished():
            data = client.get(f"/status/{job_id}").json()
            return data if data["status"] not in ("pending", "processing") else None

        return wait_for(finished)

    return _poll


@pytest.fixture
def app_client(make_manager):
    """Build a client around a manager with a custom backend."""
    clients = []

    def _make(backend=None, **overrides):
        test_client = TestClient(create_app(job_manager=make_manager(backend=backend, **overrides)))
        clients.append(test_client)
        return test_client

    yield _make

    for test_client in clients:
        test_client.close()


class TestHealthCheck:
    """Tests for the /health endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "omr-service", "version": "0.1.0"}

    def test_module_level_app(self):
        """The importable app serves requests with its own manager."""
        response = TestClient(app).get("/health")
        assert response.status_code == 200


class TestConvertSync:
    """Tests for POST /convert."""

    def test_convert_returns_musicxml(self, client, sample_png):
        response = post_file(client, "/convert", sample_png)
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "success"
        assert data["jobId"]
        root = ElementTree.fromstring(data["musicxml"])
        assert root.find(".//measure") is not None
        assert root.find(".//note") is not None

    def test_convert_without_file(self, client):
        """Missing upload is rejected immediately and creates no job."""
        response = client.post("/convert")
        assert response.status_code == 400
        assert response.json() == {"status": "error", "message": "No file uploaded", "code": "NO_INPUT_PROVIDED"}
        assert client.get("/jobs").json() == []

    def test_convert_backend_failure(self, app_client, failing_backend, sample_png):
        client = app_client(backend=failing_backend)

        response = post_file(client, "/convert", sample_png)
        assert response.status_code == 500
        assert response.json()["status"] == "error"
        assert response.json()["message"] == "staff lines not detected"

    def test_convert_timeout(self, app_client, sample_png):
        client = app_client(backend=PlaceholderBackend(delay=5), backend_timeout_seconds=0.05)

        response = post_file(client, "/convert", sample_png)
        assert response.status_code == 504
        assert response.json()["code"] == "BACKEND_TIMEOUT"


class TestConvertAsync:
    """Tests for POST /convert/async and GET /status/{job_id}."""

    def test_submit_returns_job_id(self, app_client, gated_backend, sample_png):
        client = app_client(backend=gated_backend)

        response = post_file(client, "/convert/async", sample_png)
        assert response.status_code == 200

        data = response.json()
        assert data["jobId"]
        assert data["status"] == "pending"
        assert client.get(f"/status/{data['jobId']}").json()["status"] in ("pending", "processing")

    def test_job_completes(self, client, sample_png, poll_status):
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]

        data = poll_status(client, job_id)
        assert data["status"] == "completed"
        assert data["jobId"] == job_id
        assert "<score-partwise" in data["musicxml"]
        assert "message" not in data

    def test_repeated_status_reads_return_same_artifact(self, client, sample_png, poll_status):
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]
        first = poll_status(client, job_id)

        second = client.get(f"/status/{job_id}").json()
        assert second == first

    def test_failed_job_reports_message(self, app_client, failing_backend, sample_png, poll_status):
        client = app_client(backend=failing_backend)
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]

        data = poll_status(client, job_id)
        assert data["status"] == "failed"
        assert data["message"] == "staff lines not detected"
        assert "musicxml" not in data

    def test_submit_without_file(self, client):
        response = client.post("/convert/async")
        assert response.status_code == 400
        assert response.json()["code"] == "NO_INPUT_PROVIDED"
        assert client.get("/jobs").json() == []

    def test_status_unknown_job(self, client, sample_png):
        post_file(client, "/convert/async", sample_png)

        response = client.get("/status/does-not-exist")
        assert response.status_code == 404
        assert response.json()["message"] == "Job not found"

    def test_status_with_unreadable_artifact(self, client, manager, sample_png, poll_status):
        """A vanished artifact is reported as an error without changing the job."""
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]
        poll_status(client, job_id)
        manager.get_status(job_id).output_path.unlink()

        data = client.get(f"/status/{job_id}").json()
        assert data == {"status": "error", "jobId": job_id, "message": "Failed to read output file"}
        assert manager.get_status(job_id).status.value == "completed"


    def test_status_survives_eviction_after_lookup(self, client, manager, sample_png, poll_status, monkeypatch):
        """A job evicted right after its lookup still answers from that snapshot."""
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]
        poll_status(client, job_id)
        lookup = manager.get_status

        def lookup_then_evict(requested_id):
            record = lookup(requested_id)
            manager.store.remove(requested_id)
            return record

        monkeypatch.setattr(manager, "get_status", lookup_then_evict)

        response = client.get(f"/status/{job_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert "<score-partwise" in response.json()["musicxml"]


class TestDownload:
    """Tests for GET /jobs/{job_id}/download."""

    def test_download_completed_job(self, client, sample_png, poll_status):
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]
        poll_status(client, job_id)

        response = client.get(f"/jobs/{job_id}/download")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "attachment" in response.headers["content-disposition"]
        assert f"{job_id}.musicxml" in response.headers["content-disposition"]

        root = ElementTree.fromstring(response.content)
        assert root.tag == "score-partwise"
        assert root.find(".//measure") is not None
        assert root.find(".//note") is not None

    def test_download_nonexistent_job(self, client):
        """Downloading from nonexistent job should return 404."""
        response = client.get("/jobs/nonexistent/download")
        assert response.status_code == 404
        assert response.json()["code"] == "JOB_NOT_FOUND"

    def test_download_before_completion(self, app_client, gated_backend, sample_png):
        client = app_client(backend=gated_backend)
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]

        response = client.get(f"/jobs/{job_id}/download")
        assert response.status_code == 409
        assert response.json()["code"] == "JOB_NOT_READY"

    def test_download_missing_artifact(self, client, manager, sample_png, poll_status):
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]
        poll_status(client, job_id)
        manager.get_status(job_id).output_path.unlink()

        response = client.get(f"/jobs/{job_id}/download")
        assert response.status_code == 404
        assert response.json()["code"] == "ARTIFACT_MISSING"


class TestJobListing:
    """Tests for GET /jobs."""

    def test_list_jobs_empty(self, client):
        response = client.get("/jobs")
        assert response.status_code == 200
        assert response.json() == []

    def test_list_jobs_includes_submitted(self, client, sample_png, poll_status):
        job_id = post_file(client, "/convert/async", sample_png).json()["jobId"]
        poll_status(client, job_id)

        [job] = client.get("/jobs").json()
        assert job["jobId"] == job_id
        assert job["status"] == "completed"
        assert job["filename"] == "page1.png"
        assert job["outputPath"].endswith(f"{job_id}_output.musicxml")
        assert job["startedAt"] is not None
        assert job["finishedAt"] is not None
        assert job["error"] is None
