"""Bounded long-poll loop for remote jobs.

Used by the multi-step batch provider after it has created a remote job.
Each attempt queries the job URL once:

- terminal success  -> fetch_result(status_doc) is awaited and returned
- terminal failure  -> RemoteJobFailure with the remote message (not retried here)
- still running     -> report interpolated progress, sleep, try again
- transport error or 5xx/429 -> counted against the budget, retried in place

The budget is both an attempt count and a wall-clock deadline of
``interval * max_attempts`` on the injected clock, whichever runs out first.
Slow round trips therefore cannot stretch the nominal wait.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from src.providers.base import AdapterSession, ProgressReporter, raise_for_remote, send
from src.transcription.errors import NetworkError, PollTimeout, RemoteJobFailure
from src.transcription.schemas import OperationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Processing progress ramps across this band while polling
POLL_PROGRESS_START = 30
POLL_PROGRESS_END = 90

TRANSIENT_STATUS_CODES = {408, 429}


class RemoteState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PollStatus:
    """A classified status document."""

    state: RemoteState
    label: str = ""
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


def interpolate_progress(attempt: int, max_attempts: int) -> int:
    """Map an attempt index onto the processing band (30 -> 90)."""
    if max_attempts <= 0:
        return POLL_PROGRESS_END
    span = POLL_PROGRESS_END - POLL_PROGRESS_START
    return int(min(POLL_PROGRESS_START + (attempt / max_attempts) * span, POLL_PROGRESS_END))


class PollingEngine:
    """Generic poll loop over an httpx client with injectable time."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.client = client
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    async def poll(
        self,
        job_url: str,
        *,
        classify: Callable[[dict], PollStatus],
        fetch_result: Callable[[dict], Awaitable[T]],
        headers: Optional[dict[str, str]] = None,
        interval: float = 5.0,
        max_attempts: int = 120,
        report: Optional[ProgressReporter] = None,
        session: Optional[AdapterSession] = None,
        label: str = "",
    ) -> T:
        budget_seconds = interval * max_attempts
        deadline = self._clock() + budget_seconds
        attempts = 0
        last_error: Optional[Exception] = None

        while attempts < max_attempts:
            if session is not None:
                session.raise_if_cancelled()
            if attempts > 0 and self._clock() >= deadline:
                logger.warning(f"[{label}] Poll deadline reached after {attempts} attempts")
                break

            try:
                doc = await self._query(job_url, headers)
            except NetworkError as e:
                last_error = e
                attempts += 1
                logger.warning(f"[{label}] Polling attempt {attempts} failed: {e}")
                if attempts < max_attempts:
                    await self._sleep(interval)
                continue

            status = classify(doc)
            if status.state == RemoteState.SUCCEEDED:
                logger.info(f"[{label}] Remote job succeeded after {attempts + 1} status checks")
                return await fetch_result(doc)
            if status.state == RemoteState.FAILED:
                raise RemoteJobFailure(f"Transcription failed: {status.message or 'Unknown error'}")
            if status.state == RemoteState.CANCELLED:
                raise RemoteJobFailure("Transcription was cancelled")

            if report is not None:
                report(
                    OperationStatus.PROCESSING,
                    interpolate_progress(attempts, max_attempts),
                    f"Processing... Status: {status.label or status.state.value}",
                )
            attempts += 1
            if attempts < max_attempts:
                await self._sleep(interval)

        message = f"Transcription timed out after {budget_seconds:.0f} seconds ({attempts} status checks)"
        if last_error is not None:
            message += f". Last error: {last_error}"
        raise PollTimeout(message)

    async def _query(self, job_url: str, headers: Optional[dict[str, str]]) -> dict:
        response = await send(self.client, "GET", job_url, headers=headers)
        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            raise NetworkError(
                f"Failed to check transcription status: {response.status_code} {response.reason_phrase}"
            )
        raise_for_remote(response, "Failed to check transcription status")
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Unreadable status response: {e}") from e
