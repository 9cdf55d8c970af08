"""
Pytest configuration and shared fixtures for transcription tests.

Remote providers are simulated with httpx.MockTransport and time is driven
by a fake clock, so no test touches the network or waits for real.
"""

from __future__ import annotations

import os
from pathlib import Path

import httpx
import pytest

# Keep provider keys from the developer's shell out of the tests
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("AZURE_SPEECH_KEY", None)

from src.transcription.db import SnapshotStore  # noqa: E402
from src.transcription.orchestrator import TranscriptionOrchestrator  # noqa: E402
from src.transcription.polling import PollingEngine  # noqa: E402
from src.transcription.progress_tracker import ProgressTracker  # noqa: E402
from tests.helpers import BLOB_BASE, SPEECH_BASE, STORAGE_KEY, FakeClock, MockRemote, job_status  # noqa: E402


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> MockRemote:
    return MockRemote()


@pytest.fixture
def http_client(remote: MockRemote) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(remote))


@pytest.fixture
def polling_engine(http_client: httpx.AsyncClient, fake_clock: FakeClock) -> PollingEngine:
    return PollingEngine(http_client, sleep=fake_clock.sleep, clock=fake_clock)


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    return SnapshotStore(database_url="", sqlite_path=tmp_path / "operations.db")


@pytest.fixture
def tracker() -> ProgressTracker:
    return ProgressTracker()


@pytest.fixture
def orchestrator(
    http_client: httpx.AsyncClient,
    fake_clock: FakeClock,
    store: SnapshotStore,
) -> TranscriptionOrchestrator:
    return TranscriptionOrchestrator(
        client=http_client,
        sleep=fake_clock.sleep,
        clock=fake_clock,
        store=store,
    )


@pytest.fixture
def openai_config() -> dict:
    return {
        "provider": "openai-whisper",
        "openai_whisper": {"api_key": "sk-test", "language": "en"},
    }


@pytest.fixture
def azure_whisper_config() -> dict:
    return {
        "provider": "azure-whisper",
        "azure_whisper": {
            "api_key": "az-key",
            "endpoint": "https://tenant.openai.azure.com/",
            "deployment": "whisper",
        },
    }


@pytest.fixture
def batch_config() -> dict:
    return {
        "provider": "azure-batch",
        "azure_batch": {
            "speech_key": "speech-key",
            "region": "eastus",
            "storage_account": "acct",
            "storage_key": STORAGE_KEY,
            "container_name": "audio",
            "enable_diarization": True,
        },
    }


@pytest.fixture
def batch_remote(remote: MockRemote) -> MockRemote:
    """Upload and job creation succeed; tests add the status/result routes."""
    remote.add("PUT", f"{BLOB_BASE}/", httpx.Response(201))
    remote.add("POST", f"{SPEECH_BASE}/transcriptions", job_status("NotStarted"))
    return remote


@pytest.fixture
def transcript_document() -> dict:
    return {
        "recognizedPhrases": [
            {
                "speaker": 1,
                "offsetInTicks": 0,
                "durationInTicks": 20000000,
                "nBest": [{"display": "Hello, thanks for calling.", "confidence": 0.9}],
            },
            {
                "speaker": 2,
                "offsetInTicks": 20000000,
                "durationInTicks": 10000000,
                "nBest": [{"display": "Hi there.", "confidence": 0.7}],
            },
        ]
    }
