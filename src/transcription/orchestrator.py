"""Transcription job orchestration.

Handles:
- Job submission (register operation, select adapter, run it)
- Terminal state recording for every outcome (completed / failed / cancelled)
- Cancellation (local state first, then best-effort remote cancel)
- Job-level retry with exponential backoff under the same job id
- Status queries and restart recovery

One orchestrator owns one tracker, one retry controller and one HTTP
client. Nothing here is module state, so independent orchestrators (tests,
multiple apps in one process) never share jobs.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import httpx
from pydantic import ValidationError

from src.providers.base import AdapterSession, ProviderAdapter
from src.providers.factory import get_adapter
from src.transcription.errors import (
    ConfigurationError,
    MaxRetriesExceeded,
    RetryRejected,
    TranscriptionCancelled,
    TranscriptionError,
)
from src.transcription.polling import PollingEngine
from src.transcription.progress_tracker import ProgressCallback, ProgressTracker
from src.transcription.retry import RetryController
from src.transcription.schemas import (
    CancelResult,
    ConfigValidation,
    ConnectionTestResult,
    Operation,
    OperationStatistics,
    OperationStatus,
    TranscriptionConfig,
    TranscriptionResult,
    new_job_id,
)
from src.transcription.settings import HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

ConfigInput = Union[TranscriptionConfig, dict]


@dataclass
class _Submission:
    """What a retry needs to re-run a job."""
    payload: bytes
    config: TranscriptionConfig


class TranscriptionOrchestrator:
    """Runs transcription jobs against the configured providers."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        tracker: Optional[ProgressTracker] = None,
        retry_controller: Optional[RetryController] = None,
        polling_engine: Optional[PollingEngine] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
        store=None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(HTTP_TIMEOUT_SECONDS, connect=10.0)
        )
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self.tracker = tracker or ProgressTracker(store=store)
        self.retry_controller = retry_controller or RetryController(sleep=self._sleep)
        self.polling = polling_engine or PollingEngine(self.client, sleep=self._sleep, clock=self._clock)

        self._submissions: dict[str, _Submission] = {}
        self._sessions: dict[str, AdapterSession] = {}
        self._adapters: dict[str, ProviderAdapter] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # Job ids with a run accepted but not yet finished (including retry backoff)
        self._running: set[str] = set()

        self.tracker.add_cleanup_hook(self._forget)

    # --- Config ---

    @staticmethod
    def parse_config(config: ConfigInput) -> TranscriptionConfig:
        """Coerce a dict into a TranscriptionConfig, raising ConfigurationError."""
        if isinstance(config, TranscriptionConfig):
            return config
        try:
            return TranscriptionConfig.model_validate(config)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationError(
                "Invalid transcription config: " + "; ".join(errors), errors=errors
            ) from e

    def validate_config(self, config: ConfigInput) -> ConfigValidation:
        """Report every missing required field for the selected provider."""
        try:
            cfg = self.parse_config(config)
        except ConfigurationError as e:
            return ConfigValidation(is_valid=False, errors=e.errors or [e.message])
        errors = cfg.provider_config().missing_fields()
        return ConfigValidation(is_valid=not errors, errors=errors)

    async def test_connection(self, config: ConfigInput) -> ConnectionTestResult:
        """Probe the selected provider with the given credentials. Never raises."""
        try:
            cfg = self.parse_config(config)
            adapter = get_adapter(cfg.provider, self.client, self.polling)
        except ConfigurationError as e:
            return ConnectionTestResult(success=False, message=e.message)
        result = await adapter.check_connection(cfg)
        logger.info(f"Connection test for {cfg.provider.value}: {result.message}")
        return result

    # --- Submission ---

    async def submit(
        self,
        payload: bytes,
        config: ConfigInput,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscriptionResult:
        """Run one transcription to completion and return the normalized result."""
        job_id = self._register(payload, config, on_progress)
        return await self._execute(job_id)

    def start(
        self,
        payload: bytes,
        config: ConfigInput,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Register a job and run it in the background. Returns the job id."""
        job_id = self._register(payload, config, on_progress)
        self._spawn(job_id, self._execute(job_id))
        return job_id

    def _register(
        self,
        payload: bytes,
        config: ConfigInput,
        on_progress: Optional[ProgressCallback],
    ) -> str:
        cfg = self.parse_config(config)
        job_id = new_job_id()
        if on_progress is not None:
            self.tracker.subscribe(job_id, on_progress)
        self.tracker.start(
            job_id,
            type="transcription",
            description=f"Transcribing {len(payload)} bytes with {cfg.provider.value}",
            provider=cfg.provider.value,
        )
        self._submissions[job_id] = _Submission(payload=payload, config=cfg)
        self._running.add(job_id)
        return job_id

    async def _execute(self, job_id: str, attempt: Optional[int] = None) -> TranscriptionResult:
        """One adapter invocation for a registered operation.

        ``attempt`` pins the run to the operation attempt it was accepted for;
        a run whose attempt has been superseded or cancelled never starts.
        """
        try:
            op = self.tracker.get(job_id)
            if op is None or op.status == OperationStatus.CANCELLED:
                self._release_if_exhausted(job_id)
                raise TranscriptionCancelled(f"[{job_id}] Transcription cancelled by user")
            if attempt is not None and op.attempt != attempt:
                raise TranscriptionCancelled(f"[{job_id}] Attempt {attempt + 1} was superseded")

            submission = self._submissions.get(job_id)
            if submission is None:
                error = RetryRejected(f"Job {job_id} cannot run: the original audio is no longer held")
                self.tracker.fail(job_id, error, retryable=False)
                raise error
            return await self._run_adapter(job_id, op, submission)
        finally:
            self._running.discard(job_id)

    async def _run_adapter(self, job_id: str, op: Operation, submission: _Submission) -> TranscriptionResult:
        config = submission.config
        session = AdapterSession(job_id=job_id, clock=self._clock)
        self._sessions[job_id] = session

        def report(status: OperationStatus, progress: float, message: str) -> None:
            if not session.cancel_requested:
                self.tracker.update(job_id, status, progress, message)

        logger.info(f"[{job_id}] Starting {config.provider.value} transcription (attempt {op.attempt + 1})")
        try:
            adapter = get_adapter(config.provider, self.client, self.polling)
            self._adapters[job_id] = adapter
            result = await adapter.run(submission.payload, config, report, session)
            session.raise_if_cancelled()
        except TranscriptionCancelled:
            logger.info(f"[{job_id}] Transcription stopped after cancellation")
            self._release_if_exhausted(job_id)
            raise
        except Exception as e:
            if session.cancel_requested:
                self._release_if_exhausted(job_id)
                raise TranscriptionCancelled(f"[{job_id}] Transcription cancelled by user") from e
            self.tracker.fail(job_id, e, retryable=True)
            logger.error(f"[{job_id}] Transcription failed: {e}")
            self._release_if_exhausted(job_id)
            raise
        finally:
            if self._sessions.get(job_id) is session:
                self._sessions.pop(job_id, None)
                self._adapters.pop(job_id, None)

        transcription = TranscriptionResult(
            success=True,
            text=result.text,
            confidence=result.confidence,
            speaker_diarization=result.speaker_diarization,
            processing_time=result.processing_time,
            provider=config.provider.value,
            job_id=job_id,
        )
        # Kept on the operation so background callers can read it until cleanup
        self.tracker.complete(
            job_id,
            "Transcription completed",
            metadata={"result": transcription.model_dump(mode="json")},
        )
        self.retry_controller.reset(job_id)
        self._submissions.pop(job_id, None)
        logger.info(f"[{job_id}] Transcription completed in {result.processing_time}ms")
        return transcription

    def _spawn(self, job_id: str, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._task_done(job_id, t))

    def _task_done(self, job_id: str, task: asyncio.Task) -> None:
        current = self._tasks.get(job_id) is task
        if current:
            self._tasks.pop(job_id, None)
        if task.cancelled():
            if current:
                # A task cancelled before its first step never reaches its finally
                self._running.discard(job_id)
            return
        exc = task.exception()
        if exc is not None:
            # Already recorded on the operation; retrieved so asyncio doesn't warn
            logger.debug(f"[{job_id}] Background run ended with {exc.__class__.__name__}: {exc}")

    # --- Cancellation ---

    async def cancel(self, job_id: str) -> CancelResult:
        """Cancel a running job. Local state is cancelled even if the remote call fails."""
        op = self.tracker.get(job_id)
        if op is None:
            return CancelResult(success=False, message="Job not found")
        if not op.cancellable:
            return CancelResult(
                success=False,
                message=f"Job cannot be cancelled (status: {op.status.value})",
            )

        self.tracker.cancel(job_id, "Transcription cancelled by user")
        session = self._sessions.get(job_id)
        adapter = self._adapters.get(job_id)
        if session is not None:
            session.cancel_requested = True

        if session is None or adapter is None or not adapter.supports_remote_cancel:
            return CancelResult(success=True, message="Transcription cancelled")
        if not session.remote_job_url:
            return CancelResult(success=True, message="Transcription cancelled")

        try:
            remote_ok = await adapter.cancel(session)
        except TranscriptionError as e:
            logger.warning(f"[{job_id}] Remote cancel failed: {e}")
            return CancelResult(
                success=True,
                message=f"Transcription cancelled locally; remote cancel failed: {e}",
            )
        if not remote_ok:
            return CancelResult(
                success=True,
                message="Transcription cancelled locally; remote job could not be cancelled",
            )
        return CancelResult(success=True, message="Transcription cancelled successfully")

    # --- Retry ---

    async def retry(self, job_id: str) -> TranscriptionResult:
        """Re-run a failed or cancelled job after backoff, under the same id."""
        previous, attempt = self._prepare_retry(job_id)
        return await self._run_retry(job_id, previous, attempt)

    def start_retry(self, job_id: str) -> str:
        """Accept a retry synchronously and run it in the background."""
        previous, attempt = self._prepare_retry(job_id)
        self._spawn(job_id, self._run_retry(job_id, previous, attempt))
        return job_id

    def _prepare_retry(self, job_id: str) -> tuple[int, int]:
        """Check and reserve a retry. Returns (retries made before, new attempt number)."""
        op = self.tracker.get(job_id)
        if op is None:
            raise RetryRejected(f"Job {job_id} not found")
        if not op.retryable:
            raise RetryRejected(f"Job {job_id} is not retryable (status: {op.status.value})")
        if job_id in self._running:
            raise RetryRejected(f"Job {job_id} is still running; retry once it has ended")
        if not self.retry_controller.attempt(job_id):
            raise MaxRetriesExceeded(
                f"Maximum retry attempts ({self.retry_controller.policy.max_attempts}) "
                f"exceeded for job {job_id}"
            )
        if job_id not in self._submissions:
            raise RetryRejected(
                f"Job {job_id} cannot be retried: the original audio is no longer held"
            )

        previous = self.retry_controller.increment(job_id)
        op = self.tracker.reset(job_id)
        self._running.add(job_id)
        logger.info(f"[{job_id}] Retry {previous + 1} accepted")
        return previous, op.attempt

    async def _run_retry(self, job_id: str, previous_attempts: int, attempt: int) -> TranscriptionResult:
        try:
            await self.retry_controller.backoff(job_id, previous_attempts)
        except BaseException:
            self._running.discard(job_id)
            raise
        return await self._execute(job_id, attempt)

    def _release_if_exhausted(self, job_id: str) -> None:
        """Drop the held audio once no retry can use it.

        The retry counter stays until cleanup so a further retry still
        reports the ceiling.
        """
        if self.retry_controller.attempt(job_id):
            return
        if self._submissions.pop(job_id, None) is not None:
            logger.info(f"[{job_id}] Retry ceiling reached; released held audio")

    # --- Queries ---

    def get_status(self, job_id: str) -> Optional[Operation]:
        return self.tracker.get(job_id)

    def get_active_jobs(self) -> list[Operation]:
        return self.tracker.list_active()

    def get_statistics(self) -> OperationStatistics:
        return self.tracker.statistics()

    def clear_completed(self) -> int:
        return self.tracker.clear_completed()

    def dismiss(self, job_id: str) -> bool:
        """Remove a terminal operation now. False if unknown or still running."""
        op = self.tracker.get(job_id)
        if op is None or not op.status.is_terminal:
            return False
        self.tracker.cleanup(job_id)
        return True

    # --- Lifecycle ---

    def recover_interrupted(self) -> list[Operation]:
        """Mark operations left running by a previous process as failed."""
        return self.tracker.recover()

    def _forget(self, job_id: str) -> None:
        self._submissions.pop(job_id, None)
        self._sessions.pop(job_id, None)
        self._adapters.pop(job_id, None)
        self.retry_controller.reset(job_id)

    async def aclose(self) -> None:
        """Stop background runs, flush snapshots, close the HTTP client if we created it."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.tracker.aclose()
        if self._owns_client:
            await self.client.aclose()
