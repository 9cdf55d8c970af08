"""Transcription-side schemas for operation lifecycle, provider config, and results.

Operations describe what the tracker knows about a job while it runs.
Provider config blocks describe what each backend needs before any network
call is made. Results are the normalized record every provider produces.
"""

import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


class OperationStatus(str, Enum):
    """Operation lifecycle states."""
    INITIALIZING = "initializing"
    UPLOADING = "uploading"
    CREATING_JOB = "creating_job"
    PROCESSING = "processing"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
})

# status -> (cancellable, retryable)
STATUS_FLAGS: dict[OperationStatus, tuple[bool, bool]] = {
    OperationStatus.INITIALIZING: (True, False),
    OperationStatus.UPLOADING: (True, False),
    OperationStatus.CREATING_JOB: (True, False),
    OperationStatus.PROCESSING: (True, False),
    OperationStatus.DOWNLOADING: (True, False),
    OperationStatus.COMPLETED: (False, False),
    OperationStatus.FAILED: (False, True),
    OperationStatus.CANCELLED: (False, True),
}

# Emitted once per operation when it leaves the live registry
CLEANUP_EVENT = "cleanup"


class ProviderKind(str, Enum):
    """The closed set of transcription backends."""
    AZURE_BATCH = "azure-batch"
    OPENAI_WHISPER = "openai-whisper"
    AZURE_WHISPER = "azure-whisper"


class Operation(BaseModel):
    """A tracked unit of long-running work."""

    id: str = Field(default_factory=new_job_id)
    type: str = "transcription"
    description: str = ""
    provider: Optional[str] = None
    status: OperationStatus = OperationStatus.INITIALIZING
    progress: int = 0
    message: str = "Starting..."
    start_time: str = Field(default_factory=utc_now_iso)
    last_update: str = Field(default_factory=utc_now_iso)
    cancellable: bool = True
    retryable: bool = False
    error: Optional[str] = None
    attempt: int = Field(default=0, description="0 for the first run, +1 per retry")
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    """Push notification delivered to progress subscribers."""

    job_id: str
    type: str = "transcription"
    status: str = Field(description="An OperationStatus value, or 'cleanup'")
    progress: int = 0
    message: str = ""
    cancellable: bool = False
    retryable: bool = False
    error: Optional[str] = None

    @classmethod
    def from_operation(cls, op: Operation, status: Optional[str] = None) -> "ProgressEvent":
        return cls(
            job_id=op.id,
            type=op.type,
            status=status or op.status.value,
            progress=op.progress,
            message=op.message,
            cancellable=op.cancellable,
            retryable=op.retryable,
            error=op.error,
        )


# --- Provider configuration ---


class AzureBatchConfig(BaseModel):
    """Azure Speech batch transcription with Blob Storage staging."""

    speech_key: str = Field(default_factory=lambda: os.environ.get("AZURE_SPEECH_KEY", ""))
    region: str = ""
    storage_account: str = ""
    storage_key: str = Field(default="", description="Base64 storage account key")
    container_name: str = ""
    language: str = "en-US"
    enable_diarization: bool = False
    min_speakers: int = 1
    max_speakers: int = 10
    punctuation_mode: str = "DictatedAndAutomatic"
    profanity_filter_mode: str = "Masked"
    poll_interval: float = Field(default=5.0, description="Seconds between status polls")
    max_poll_attempts: int = Field(default=120, description="120 x 5s = 10 minutes")

    def missing_fields(self) -> list[str]:
        errors = []
        if not self.speech_key:
            errors.append("Azure Speech Service key is required")
        if not self.region:
            errors.append("Azure Speech Service region is required")
        if not self.storage_account:
            errors.append("Azure Storage Account name is required for batch transcription")
        if not self.storage_key:
            errors.append("Azure Storage Account key is required for batch transcription")
        if not self.container_name:
            errors.append("Azure Storage Container name is required for batch transcription")
        return errors


class OpenAIWhisperConfig(BaseModel):
    """OpenAI hosted Whisper endpoint."""

    api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    language: Optional[str] = None
    model: str = "whisper-1"

    def missing_fields(self) -> list[str]:
        return [] if self.api_key else ["OpenAI API key is required"]


class AzureWhisperConfig(BaseModel):
    """Azure OpenAI Whisper deployment."""

    api_key: str = ""
    endpoint: str = Field(default="", description="Tenant base URL, e.g. https://x.openai.azure.com")
    deployment: str = ""
    language: Optional[str] = None
    model: str = "whisper-1"
    api_version: str = "2024-02-15-preview"

    def missing_fields(self) -> list[str]:
        errors = []
        if not self.api_key:
            errors.append("Azure OpenAI API key is required")
        if not self.endpoint:
            errors.append("Azure OpenAI endpoint is required")
        if not self.deployment:
            errors.append("Azure OpenAI Whisper deployment name is required")
        return errors


class TranscriptionConfig(BaseModel):
    """Provider selection plus one credential/option block per provider."""

    provider: ProviderKind
    azure_batch: AzureBatchConfig = Field(default_factory=AzureBatchConfig)
    openai_whisper: OpenAIWhisperConfig = Field(default_factory=OpenAIWhisperConfig)
    azure_whisper: AzureWhisperConfig = Field(default_factory=AzureWhisperConfig)

    def provider_config(self):
        """Return the option block for the selected provider."""
        return {
            ProviderKind.AZURE_BATCH: self.azure_batch,
            ProviderKind.OPENAI_WHISPER: self.openai_whisper,
            ProviderKind.AZURE_WHISPER: self.azure_whisper,
        }[self.provider]


# --- Results ---


class SpeakerSegment(BaseModel):
    """One diarized span of the transcript."""

    speaker: str
    text: str
    start_time: Any = 0
    end_time: Any = 0


class TranscriptionResult(BaseModel):
    """Normalized result handed back to callers."""

    success: bool = True
    text: str
    confidence: Optional[float] = None
    speaker_diarization: Optional[list[SpeakerSegment]] = None
    processing_time: int = Field(default=0, description="Milliseconds")
    provider: str
    job_id: str


class CancelResult(BaseModel):
    success: bool
    message: str = ""


class ConfigValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    success: bool
    message: str = ""


class OperationStatistics(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class StartJobResponse(BaseModel):
    """Response for job submission over HTTP."""

    job_id: str
    status: OperationStatus = OperationStatus.INITIALIZING
