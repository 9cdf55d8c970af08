"""Azure Speech batch transcription with Blob Storage staging.

Four remote steps per job:
1. PUT the audio into a Blob Storage container (SharedKey auth)
2. POST a batch transcription job pointing at the blob
3. Poll the job URL until it is terminal (PollingEngine)
4. GET the result file list, then the transcript content, and normalize it

The job URL returned by step 2 is the remote handle; cancel() DELETEs it.
"""

import base64
import binascii
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from email.utils import formatdate
from typing import Any, Optional

import httpx

from src.providers.base import (
    AdapterResult,
    AdapterSession,
    ProgressReporter,
    raise_for_remote,
    remote_error_message,
    require_fields,
    send,
)
from src.transcription.errors import ConfigurationError, RemoteJobFailure, TranscriptionError
from src.transcription.polling import PollingEngine, PollStatus, RemoteState
from src.transcription.schemas import (
    AzureBatchConfig,
    ConnectionTestResult,
    OperationStatus,
    ProviderKind,
    SpeakerSegment,
    TranscriptionConfig,
)

logger = logging.getLogger(__name__)

SPEECH_API_VERSION = "v3.1"
BLOB_SERVICE_VERSION = "2020-04-08"

# Standard header slots of the SharedKey string-to-sign, in order
_SIGNED_STANDARD_HEADERS = (
    "content-encoding",
    "content-language",
    "content-length",
    "content-md5",
    "content-type",
    "date",
    "if-modified-since",
    "if-match",
    "if-none-match",
    "if-unmodified-since",
    "range",
)


def speech_base_url(region: str) -> str:
    return f"https://{region}.api.cognitive.microsoft.com/speechtotext/{SPEECH_API_VERSION}"


def blob_container_url(account: str, container: str) -> str:
    return f"https://{account}.blob.core.windows.net/{container}"


# --- SharedKey signing ---


def canonicalized_headers(headers: dict[str, str]) -> str:
    """All x-ms-* headers, lowercased, sorted by name, one "name:value\\n" each."""
    ms_headers = sorted(
        (name.lower().strip(), " ".join(str(value).split()))
        for name, value in headers.items()
        if name.lower().startswith("x-ms-")
    )
    return "".join(f"{name}:{value}\n" for name, value in ms_headers)


def canonicalized_resource(account: str, path: str, query: Optional[dict[str, str]] = None) -> str:
    """``/{account}{path}`` followed by sorted "\\nname:value" query params."""
    resource = f"/{account}/{path.lstrip('/')}"
    for name in sorted(query or {}, key=str.lower):
        resource += f"\n{name.lower()}:{query[name]}"
    return resource


def string_to_sign(
    method: str,
    account: str,
    path: str,
    headers: dict[str, str],
    query: Optional[dict[str, str]] = None,
) -> str:
    lowered = {name.lower(): str(value) for name, value in headers.items()}
    slots = []
    for name in _SIGNED_STANDARD_HEADERS:
        value = lowered.get(name, "")
        # Content-Length is signed as empty when the body is empty
        if name == "content-length" and value == "0":
            value = ""
        slots.append(value)
    return (
        method.upper() + "\n"
        + "\n".join(slots) + "\n"
        + canonicalized_headers(headers)
        + canonicalized_resource(account, path, query)
    )


def sign(storage_key: str, message: str) -> str:
    """HMAC-SHA256 with the base64-decoded account key, base64-encoded."""
    try:
        key = base64.b64decode(storage_key, validate=True)
    except binascii.Error as e:
        raise ConfigurationError(f"Azure Storage Account key is not valid base64: {e}") from e
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def build_shared_key_header(
    method: str,
    account: str,
    storage_key: str,
    path: str,
    headers: dict[str, str],
    query: Optional[dict[str, str]] = None,
) -> str:
    """Value for the Authorization header of a Blob Storage request."""
    signature = sign(storage_key, string_to_sign(method, account, path, headers, query))
    return f"SharedKey {account}:{signature}"


# --- Status and transcript parsing ---


def classify_job_status(doc: dict) -> PollStatus:
    status = doc.get("status") or ""
    if status == "Succeeded":
        return PollStatus(RemoteState.SUCCEEDED, label=status, raw=doc)
    if status == "Failed":
        error = (doc.get("properties") or {}).get("error") or {}
        return PollStatus(RemoteState.FAILED, label=status, message=error.get("message", ""), raw=doc)
    if status == "Cancelled":
        return PollStatus(RemoteState.CANCELLED, label=status, raw=doc)
    return PollStatus(RemoteState.RUNNING, label=status or "Unknown", raw=doc)


def _phrase_span(phrase: dict) -> tuple[Any, Any]:
    if "offsetInTicks" in phrase:
        start = phrase.get("offsetInTicks") or 0
        return start, start + (phrase.get("durationInTicks") or 0)
    start = phrase.get("offset") or 0
    duration = phrase.get("duration") or 0
    if isinstance(start, (int, float)) and isinstance(duration, (int, float)):
        return start, start + duration
    return start, duration


def format_transcript(transcript: dict, processing_time: int) -> AdapterResult:
    """Normalize a batch transcript document.

    Best hypothesis per phrase, "Speaker N: " prefix when diarized, phrases
    separated by blank lines. Confidence is the mean over phrases that carry one.
    """
    lines = []
    confidences = []
    segments = []

    for phrase in transcript.get("recognizedPhrases") or []:
        n_best = phrase.get("nBest") or []
        if not n_best:
            continue
        best = n_best[0]
        display = best.get("display", "")

        if best.get("confidence") is not None:
            confidences.append(best["confidence"])

        speaker = phrase.get("speaker", best.get("speaker"))
        if speaker is not None:
            start, end = _phrase_span(phrase)
            segments.append(
                SpeakerSegment(
                    speaker=f"Speaker {speaker}",
                    text=display,
                    start_time=start,
                    end_time=end,
                )
            )
            lines.append(f"Speaker {speaker}: {display}")
        else:
            lines.append(display)

    return AdapterResult(
        text="\n\n".join(lines).strip(),
        confidence=sum(confidences) / len(confidences) if confidences else None,
        speaker_diarization=segments or None,
        processing_time=processing_time,
    )


class AzureBatchAdapter:
    """Multi-step batch provider: upload, create, poll, fetch."""

    provider = ProviderKind.AZURE_BATCH.value
    supports_remote_cancel = True

    def __init__(self, client: httpx.AsyncClient, polling_engine: PollingEngine):
        self.client = client
        self.polling = polling_engine

    @staticmethod
    def _speech_headers(cfg: AzureBatchConfig) -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": cfg.speech_key}

    async def run(
        self,
        payload: bytes,
        config: TranscriptionConfig,
        report: ProgressReporter,
        session: AdapterSession,
    ) -> AdapterResult:
        require_fields(config)
        cfg = config.azure_batch
        session.base_url = speech_base_url(cfg.region)
        session.extras["speech_headers"] = self._speech_headers(cfg)

        report(OperationStatus.UPLOADING, 10, "Uploading audio to Azure Blob Storage...")
        blob_url = await self.upload(payload, cfg, session.job_id)
        session.raise_if_cancelled()

        report(OperationStatus.CREATING_JOB, 20, "Creating transcription job...")
        job = await self.create_job(blob_url, cfg, session.base_url)
        session.remote_job_url = job.get("self")
        if not session.remote_job_url:
            raise TranscriptionError("Transcription job response did not include a job URL")
        logger.info(f"[{session.job_id}] Azure batch job created: {session.remote_job_url}")

        if session.cancel_requested:
            # Cancel arrived while the job was being created, before the handle existed
            await self._cancel_quietly(session)
            session.raise_if_cancelled()

        report(OperationStatus.PROCESSING, 30, "Transcription job created, processing...")

        async def fetch_result(doc: dict) -> AdapterResult:
            report(OperationStatus.DOWNLOADING, 95, "Downloading transcription results...")
            return await self.fetch_transcript(doc, cfg, session)

        return await self.polling.poll(
            session.remote_job_url,
            classify=classify_job_status,
            fetch_result=fetch_result,
            headers=self._speech_headers(cfg),
            interval=cfg.poll_interval,
            max_attempts=cfg.max_poll_attempts,
            report=report,
            session=session,
            label=session.job_id,
        )

    async def upload(self, payload: bytes, cfg: AzureBatchConfig, job_id: str) -> str:
        """Stage the audio as a block blob. Returns the blob URL."""
        timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        blob_name = f"transcription-{job_id}-{timestamp}.wav"
        blob_url = f"{blob_container_url(cfg.storage_account, cfg.container_name)}/{blob_name}"

        headers = {
            "Content-Type": "audio/wav",
            "Content-Length": str(len(payload)),
            "x-ms-blob-type": "BlockBlob",
            "x-ms-date": formatdate(usegmt=True),
            "x-ms-version": BLOB_SERVICE_VERSION,
        }
        headers["Authorization"] = build_shared_key_header(
            "PUT",
            cfg.storage_account,
            cfg.storage_key,
            f"{cfg.container_name}/{blob_name}",
            headers,
        )

        response = await send(self.client, "PUT", blob_url, headers=headers, content=payload)
        raise_for_remote(response, "Failed to upload to blob storage")
        logger.info(f"[{job_id}] Uploaded {len(payload)} bytes to {blob_name}")
        return blob_url

    async def create_job(self, blob_url: str, cfg: AzureBatchConfig, base_url: str) -> dict:
        properties: dict[str, Any] = {
            "diarizationEnabled": cfg.enable_diarization,
            "wordLevelTimestampsEnabled": True,
            "punctuationMode": cfg.punctuation_mode,
            "profanityFilterMode": cfg.profanity_filter_mode,
        }
        if cfg.enable_diarization:
            properties["diarization"] = {
                "speakers": {"minCount": cfg.min_speakers, "maxCount": cfg.max_speakers}
            }

        body = {
            "contentUrls": [blob_url],
            "properties": properties,
            "locale": cfg.language or "en-US",
            "displayName": f"Call Transcription {datetime.now(timezone.utc).isoformat()}",
        }
        response = await send(
            self.client,
            "POST",
            f"{base_url}/transcriptions",
            headers=self._speech_headers(cfg),
            json=body,
        )
        raise_for_remote(response, "Failed to create transcription job")
        return response.json()

    async def fetch_transcript(
        self, doc: dict, cfg: AzureBatchConfig, session: AdapterSession
    ) -> AdapterResult:
        files_url = (doc.get("links") or {}).get("files")
        if not files_url:
            raise RemoteJobFailure("Transcription job has no result files link")

        response = await send(self.client, "GET", files_url, headers=self._speech_headers(cfg))
        raise_for_remote(response, "Failed to get transcription files")
        files = response.json().get("values") or []
        transcript_file = next((f for f in files if f.get("kind") == "Transcription"), None)
        if transcript_file is None:
            raise RemoteJobFailure("Transcription file not found in results")

        # contentUrl is pre-signed; the subscription key must not be sent
        content_url = (transcript_file.get("links") or {}).get("contentUrl")
        if not content_url:
            raise RemoteJobFailure("Transcription file has no content URL")
        response = await send(self.client, "GET", content_url)
        raise_for_remote(response, "Failed to download transcription content")

        return format_transcript(response.json(), session.elapsed_ms())

    async def cancel(self, session: AdapterSession) -> bool:
        """DELETE the remote job. False when there is no handle or the remote refused."""
        if not session.remote_job_url:
            return False
        response = await send(
            self.client,
            "DELETE",
            session.remote_job_url,
            headers=session.extras.get("speech_headers", {}),
        )
        if not response.is_success:
            logger.warning(
                f"[{session.job_id}] Remote cancel refused: "
                f"{response.status_code} {remote_error_message(response)}"
            )
            return False
        logger.info(f"[{session.job_id}] Remote batch job deleted")
        return True

    async def _cancel_quietly(self, session: AdapterSession) -> None:
        try:
            await self.cancel(session)
        except TranscriptionError as e:
            logger.warning(f"[{session.job_id}] Remote cancel failed: {e}")

    async def check_connection(self, config: TranscriptionConfig) -> ConnectionTestResult:
        cfg = config.azure_batch
        missing = cfg.missing_fields()
        if missing:
            return ConnectionTestResult(success=False, message="; ".join(missing))

        try:
            response = await send(
                self.client,
                "GET",
                f"{speech_base_url(cfg.region)}/transcriptions",
                headers=self._speech_headers(cfg),
            )
            raise_for_remote(response, "Speech Service connection failed")

            query = {"restype": "container"}
            headers = {
                "x-ms-date": formatdate(usegmt=True),
                "x-ms-version": BLOB_SERVICE_VERSION,
            }
            headers["Authorization"] = build_shared_key_header(
                "GET", cfg.storage_account, cfg.storage_key, cfg.container_name, headers, query
            )
            response = await send(
                self.client,
                "GET",
                blob_container_url(cfg.storage_account, cfg.container_name),
                headers=headers,
                params=query,
            )
            raise_for_remote(response, "Blob Storage connection failed")
        except TranscriptionError as e:
            return ConnectionTestResult(
                success=False, message=f"Azure Batch connection test failed: {e}"
            )

        return ConnectionTestResult(
            success=True, message="Azure Batch Transcription connection successful"
        )
