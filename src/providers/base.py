"""Provider adapter abstraction for multi-backend transcription.

Provides a unified interface for running one job against different speech
providers (Azure batch, OpenAI Whisper, Azure OpenAI Whisper) with a
consistent result format.

Each adapter handles provider-specific concerns:
- Required config checks (before any network call)
- Wire protocol (single multipart call vs. upload + create + poll + fetch)
- Response parsing into the normalized result
- Remote cancellation, where the provider has one

The orchestrator handles provider-agnostic concerns:
- Operation registration and terminal states
- Job-level retry with backoff
- Local cancellation
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import httpx

from src.transcription.errors import (
    ConfigurationError,
    NetworkError,
    RemoteRejection,
    TranscriptionCancelled,
)
from src.transcription.schemas import (
    ConnectionTestResult,
    OperationStatus,
    SpeakerSegment,
    TranscriptionConfig,
)

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[OperationStatus, float, str], None]
Clock = Callable[[], float]


@dataclass
class AdapterResult:
    """Normalized response from any provider."""

    text: str
    confidence: Optional[float] = None
    speaker_diarization: Optional[list[SpeakerSegment]] = None
    processing_time: int = 0


@dataclass
class AdapterSession:
    """Adapter-private state for one invocation.

    The orchestrator holds it only so cancel() can reach the remote handle;
    it is discarded when the invocation ends.
    """

    job_id: str
    clock: Clock = time.monotonic
    started_at: float = 0.0
    base_url: Optional[str] = None
    remote_job_url: Optional[str] = None
    cancel_requested: bool = False
    extras: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.started_at:
            self.started_at = self.clock()

    def elapsed_ms(self) -> int:
        return int((self.clock() - self.started_at) * 1000)

    def raise_if_cancelled(self) -> None:
        if self.cancel_requested:
            raise TranscriptionCancelled(f"[{self.job_id}] Transcription cancelled by user")


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol for provider adapter implementations."""

    @property
    def provider(self) -> str: ...

    @property
    def supports_remote_cancel(self) -> bool: ...

    async def run(
        self,
        payload: bytes,
        config: TranscriptionConfig,
        report: ProgressReporter,
        session: AdapterSession,
    ) -> AdapterResult: ...

    async def cancel(self, session: AdapterSession) -> bool: ...

    async def check_connection(self, config: TranscriptionConfig) -> ConnectionTestResult: ...


def require_fields(config: TranscriptionConfig) -> None:
    """Raise ConfigurationError listing every missing field for the provider."""
    errors = config.provider_config().missing_fields()
    if errors:
        raise ConfigurationError("; ".join(errors), errors=errors)


async def send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    """Issue a request, converting transport failures into NetworkError."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        raise NetworkError(f"{method} {url} failed: {e.__class__.__name__}: {e}") from e


def remote_error_message(response: httpx.Response) -> str:
    """Best-effort extraction of the provider's own error wording."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])

    text = response.text.strip()[:500] if response.text else ""
    return text or response.reason_phrase or f"HTTP {response.status_code}"


def raise_for_remote(response: httpx.Response, context: str) -> None:
    """Raise RemoteRejection for any non-2xx response."""
    if response.is_success:
        return
    message = remote_error_message(response)
    raise RemoteRejection(f"{context}: {message}", status_code=response.status_code)
