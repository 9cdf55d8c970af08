"""Tests for the FastAPI surface."""

import json
import time
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.transcription.progress_tracker import ProgressTracker
from src.transcription.schemas import OperationStatus
from src.transcription.settings import ProfileRegistry

from tests.helpers import OPENAI_URL

PREFIX = "/v1/transcriptions"


@pytest.fixture
def profiles(tmp_path: Path) -> ProfileRegistry:
    profile_dir = tmp_path / "profiles"
    profile_dir.mkdir()
    (profile_dir / "calls.yaml").write_text(
        "provider: openai-whisper\nopenai_whisper:\n  api_key: sk-profile\n", encoding="utf-8"
    )
    return ProfileRegistry(profile_dir, default_profile="")


@pytest.fixture
def seeded_store(store):
    """A store holding one job that was mid-flight when the last process died."""
    tracker = ProgressTracker(store=store)
    tracker.start("job-interrupted", provider="azure-batch")
    tracker.update("job-interrupted", OperationStatus.PROCESSING, 40, "Processing...")
    return store


@pytest.fixture
def client(orchestrator, profiles, seeded_store, remote):
    remote.add("POST", OPENAI_URL, httpx.Response(200, json={"text": "hello from the api"}))
    app = create_app(orchestrator=orchestrator, profiles=profiles)
    with TestClient(app) as test_client:
        yield test_client


def _wait_for_status(client: TestClient, job_id: str, status: str) -> dict:
    for _ in range(200):
        body = client.get(f"{PREFIX}/jobs/{job_id}").json()
        if body["status"] == status:
            return body
        time.sleep(0.01)
    raise AssertionError(f"{job_id} never reached {status}")


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["profiles_loaded"] == 1


class TestJobs:
    def test_submit_and_poll_to_completion(self, client: TestClient, openai_config: dict) -> None:
        response = client.post(
            f"{PREFIX}/jobs",
            files={"file": ("call.wav", b"RIFFDATA", "audio/wav")},
            data={"config": json.dumps(openai_config)},
        )
        assert response.status_code == 200
        job_id = response.json()["job_id"]

        body = _wait_for_status(client, job_id, "completed")
        assert body["progress"] == 100
        assert body["metadata"]["result"]["text"] == "hello from the api"

    def test_submit_with_named_profile(self, client: TestClient, remote) -> None:
        response = client.post(
            f"{PREFIX}/jobs",
            files={"file": ("call.wav", b"RIFF", "audio/wav")},
            data={"profile": "calls"},
        )
        assert response.status_code == 200
        _wait_for_status(client, response.json()["job_id"], "completed")
        assert remote.calls("POST", OPENAI_URL)[-1].headers["Authorization"] == "Bearer sk-profile"

    def test_submit_without_config_or_default(self, client: TestClient) -> None:
        response = client.post(f"{PREFIX}/jobs", files={"file": ("call.wav", b"RIFF", "audio/wav")})
        assert response.status_code == 422

    def test_submit_rejects_bad_config(self, client: TestClient) -> None:
        files = {"file": ("call.wav", b"RIFF", "audio/wav")}
        assert client.post(f"{PREFIX}/jobs", files=files, data={"config": "{nope"}).status_code == 422
        response = client.post(f"{PREFIX}/jobs", files=files, data={"config": '{"provider": "fax"}'})
        assert response.status_code == 422

    def test_submit_rejects_empty_audio(self, client: TestClient, openai_config: dict) -> None:
        response = client.post(
            f"{PREFIX}/jobs",
            files={"file": ("call.wav", b"", "audio/wav")},
            data={"config": json.dumps(openai_config)},
        )
        assert response.status_code == 422

    def test_unknown_job(self, client: TestClient) -> None:
        assert client.get(f"{PREFIX}/jobs/job-missing").status_code == 404
        assert client.post(f"{PREFIX}/jobs/job-missing/cancel").status_code == 404
        assert client.post(f"{PREFIX}/jobs/job-missing/retry").status_code == 404
        assert client.delete(f"{PREFIX}/jobs/job-missing").status_code == 404


class TestRecoveredJobs:
    """The lifespan runs restart recovery before serving."""

    def test_interrupted_job_listed_as_failed(self, client: TestClient) -> None:
        body = client.get(f"{PREFIX}/jobs/job-interrupted").json()
        assert body["status"] == "failed"
        assert body["retryable"] is True
        assert body["cancellable"] is False

    def test_retry_without_audio_conflicts(self, client: TestClient) -> None:
        response = client.post(f"{PREFIX}/jobs/job-interrupted/retry")
        assert response.status_code == 409

    def test_cancel_finished_job_is_bad_request(self, client: TestClient) -> None:
        assert client.post(f"{PREFIX}/jobs/job-interrupted/cancel").status_code == 400

    def test_dismiss(self, client: TestClient) -> None:
        response = client.delete(f"{PREFIX}/jobs/job-interrupted")
        assert response.status_code == 200
        assert client.get(f"{PREFIX}/jobs/job-interrupted").status_code == 404

    def test_stats(self, client: TestClient) -> None:
        stats = client.get(f"{PREFIX}/stats").json()
        assert stats["total"] == 1
        assert stats["failed"] == 1


class TestConfigEndpoints:
    def test_validate(self, client: TestClient) -> None:
        response = client.post(f"{PREFIX}/validate", json={"provider": "openai-whisper"})
        assert response.status_code == 200
        assert response.json() == {"is_valid": False, "errors": ["OpenAI API key is required"]}

    def test_test_connection_reports_failure(self, client: TestClient) -> None:
        response = client.post(f"{PREFIX}/test-connection", json={"provider": "azure-whisper"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_profiles(self, client: TestClient) -> None:
        assert client.get(f"{PREFIX}/profiles").json()["profiles"] == ["calls"]
