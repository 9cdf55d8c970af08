"""Single-call Whisper providers (OpenAI hosted and Azure OpenAI).

One multipart POST carries the audio and returns the transcript. There is no
remote job handle, so cancellation is local only: an in-flight request is
not aborted, but its result is discarded once the session is cancelled.
"""

import logging
from typing import Optional

import httpx

from src.providers.base import (
    AdapterResult,
    AdapterSession,
    ProgressReporter,
    raise_for_remote,
    require_fields,
    send,
)
from src.transcription.errors import TranscriptionError
from src.transcription.schemas import (
    ConnectionTestResult,
    OperationStatus,
    ProviderKind,
    TranscriptionConfig,
)

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
AUDIO_FILENAME = "audio.wav"


def build_form(model: str, language: Optional[str], word_timestamps: bool) -> dict[str, str]:
    """Multipart text fields; ``language`` is omitted when unset or ``auto``.

    Must be a mapping: httpx sends any other ``data=`` as a raw body and
    ignores ``files=``.
    """
    fields = {"model": model}
    if language and language != "auto":
        fields["language"] = language
    fields["response_format"] = "verbose_json"
    if word_timestamps:
        fields["timestamp_granularities[]"] = "word"
    return fields


def normalize_endpoint(endpoint: str) -> str:
    return endpoint.rstrip("/")


class _WhisperAdapter:
    """Shared request flow. Subclasses supply URL, headers and labels."""

    provider = ""
    display_name = "Whisper"
    supports_remote_cancel = False
    word_timestamps = False

    def __init__(self, client: httpx.AsyncClient, polling_engine=None):
        self.client = client

    def _request(self, config: TranscriptionConfig) -> tuple[str, dict[str, str], str, Optional[str]]:
        """Return (url, headers, model, language)."""
        raise NotImplementedError

    async def run(
        self,
        payload: bytes,
        config: TranscriptionConfig,
        report: ProgressReporter,
        session: AdapterSession,
    ) -> AdapterResult:
        require_fields(config)
        url, headers, model, language = self._request(config)

        report(OperationStatus.UPLOADING, 20, f"Uploading audio to {self.display_name}...")
        session.raise_if_cancelled()
        report(OperationStatus.PROCESSING, 50, f"Processing with {self.display_name}...")

        response = await send(
            self.client,
            "POST",
            url,
            headers=headers,
            data=build_form(model, language, self.word_timestamps),
            files={"file": (AUDIO_FILENAME, payload, "audio/wav")},
        )
        session.raise_if_cancelled()
        raise_for_remote(response, f"{self.display_name} API error")

        data = response.json()
        logger.info(f"[{session.job_id}] {self.display_name} returned {len(data.get('text', ''))} characters")
        return AdapterResult(
            text=data.get("text", ""),
            confidence=None,
            speaker_diarization=None,
            processing_time=session.elapsed_ms(),
        )

    async def cancel(self, session: AdapterSession) -> bool:
        return False


class OpenAIWhisperAdapter(_WhisperAdapter):
    provider = ProviderKind.OPENAI_WHISPER.value
    display_name = "OpenAI Whisper"
    word_timestamps = True

    def _request(self, config):
        cfg = config.openai_whisper
        return (
            f"{OPENAI_BASE_URL}/audio/transcriptions",
            {"Authorization": f"Bearer {cfg.api_key}"},
            cfg.model,
            cfg.language,
        )

    async def check_connection(self, config: TranscriptionConfig) -> ConnectionTestResult:
        cfg = config.openai_whisper
        missing = cfg.missing_fields()
        if missing:
            return ConnectionTestResult(success=False, message="; ".join(missing))
        try:
            response = await send(
                self.client,
                "GET",
                f"{OPENAI_BASE_URL}/models",
                headers={"Authorization": f"Bearer {cfg.api_key}"},
            )
            raise_for_remote(response, "Models endpoint rejected the key")
        except TranscriptionError as e:
            return ConnectionTestResult(success=False, message=f"OpenAI connection test failed: {e}")
        return ConnectionTestResult(success=True, message="OpenAI Whisper connection successful")


class AzureWhisperAdapter(_WhisperAdapter):
    provider = ProviderKind.AZURE_WHISPER.value
    display_name = "Azure OpenAI Whisper"

    def _request(self, config):
        cfg = config.azure_whisper
        url = (
            f"{normalize_endpoint(cfg.endpoint)}/openai/deployments/{cfg.deployment}"
            f"/audio/transcriptions?api-version={cfg.api_version}"
        )
        return url, {"api-key": cfg.api_key}, cfg.model, cfg.language

    async def check_connection(self, config: TranscriptionConfig) -> ConnectionTestResult:
        cfg = config.azure_whisper
        missing = cfg.missing_fields()
        if missing:
            return ConnectionTestResult(success=False, message="; ".join(missing))
        try:
            response = await send(
                self.client,
                "GET",
                f"{normalize_endpoint(cfg.endpoint)}/openai/deployments",
                headers={"api-key": cfg.api_key},
                params={"api-version": cfg.api_version},
            )
            raise_for_remote(response, "Deployments endpoint rejected the request")
            deployments = response.json().get("data") or []
        except (TranscriptionError, ValueError) as e:
            return ConnectionTestResult(
                success=False, message=f"Azure OpenAI connection test failed: {e}"
            )

        if not any(d.get("id") == cfg.deployment for d in deployments):
            return ConnectionTestResult(
                success=False,
                message=f"Azure OpenAI connection test failed: Whisper deployment '{cfg.deployment}' not found",
            )
        return ConnectionTestResult(success=True, message="Azure OpenAI Whisper connection successful")
