"""Operation lifecycle tracking for transcription jobs.

Handles:
- The live operation registry (one entry per job id)
- State transitions with clamped, non-decreasing progress
- Push delivery to per-job subscribers and global status channels
- Snapshot persistence for crash recovery, written off the event loop
- Grace-delayed cleanup of completed operations

All mutations are synchronous: nothing here awaits, so a job's update is
fully applied before control returns to the event loop. Only the store
write is deferred, to a single ordered queue drained on a worker thread.
The tracker is an explicit object owned by the orchestrator rather than
module state.
"""

import asyncio
import logging
import math
import os
from typing import Callable, Optional

from src.transcription.db import SnapshotStore
from src.transcription.schemas import (
    CLEANUP_EVENT,
    STATUS_FLAGS,
    Operation,
    OperationStatistics,
    OperationStatus,
    ProgressEvent,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Keep completed operations visible for a short while before removal
COMPLETED_GRACE_SECONDS = float(os.environ.get("TRANSCRIPTION_COMPLETED_GRACE_SECONDS", "5"))

INTERRUPTED_MESSAGE = "Operation interrupted by restart"

ProgressCallback = Callable[[ProgressEvent], None]

# Global channels
ALL_PROGRESS_EVENT = "progress"
RETRY_EVENT = "retry"


def clamp_progress(value: float) -> int:
    """Clamp a progress value into [0, 100]."""
    return int(max(0, min(100, round(value))))


class ProgressTracker:
    """Registry of live operations with listener fanout and persistence."""

    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        grace_period: float = COMPLETED_GRACE_SECONDS,
    ):
        self.store = store
        self.grace_period = grace_period
        self._operations: dict[str, Operation] = {}
        self._callbacks: dict[str, list[ProgressCallback]] = {}
        self._listeners: dict[str, list[ProgressCallback]] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._cleanup_hooks: list[Callable[[str], None]] = []
        self._pending_writes: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    def start(
        self,
        operation_id: str,
        type: str = "transcription",
        description: str = "",
        provider: Optional[str] = None,
    ) -> Operation:
        """Register a new operation in the initializing state."""
        if operation_id in self._operations:
            raise ValueError(f"Operation {operation_id} is already tracked")

        op = Operation(
            id=operation_id,
            type=type,
            description=description,
            provider=provider,
        )
        self._operations[operation_id] = op
        self._persist(op)
        self._notify(op)
        logger.info(f"[{operation_id}] Operation started ({type}: {description})")
        return op.model_copy(deep=True)

    def update(
        self,
        operation_id: str,
        status: OperationStatus,
        progress: float,
        message: str,
        metadata: Optional[dict] = None,
    ) -> Optional[Operation]:
        """Apply a state transition and fan it out.

        Updates to unknown or already-terminal operations are dropped.
        """
        op = self._operations.get(operation_id)
        if op is None:
            logger.warning(f"Operation {operation_id} not found for progress update")
            return None
        if op.status.is_terminal:
            logger.debug(
                f"[{operation_id}] Ignoring {status} update after terminal {op.status.value}"
            )
            return None

        status = OperationStatus(status)
        op.status = status
        op.progress = max(clamp_progress(progress), op.progress)
        op.message = message
        op.last_update = utc_now_iso()
        op.cancellable, op.retryable = STATUS_FLAGS[status]
        if status == OperationStatus.FAILED:
            op.error = message
        if metadata:
            op.metadata.update(metadata)

        self._persist(op)
        self._notify(op)

        if status == OperationStatus.COMPLETED:
            self._schedule_cleanup(operation_id)
        return op.model_copy(deep=True)

    def complete(
        self,
        operation_id: str,
        message: str = "Completed",
        metadata: Optional[dict] = None,
    ) -> Optional[Operation]:
        return self.update(operation_id, OperationStatus.COMPLETED, 100, message, metadata)

    def fail(
        self,
        operation_id: str,
        error: object,
        retryable: bool = True,
    ) -> Optional[Operation]:
        """Mark an operation failed with error details.

        Progress is left where the attempt stopped.
        """
        op = self._operations.get(operation_id)
        if op is None or op.status.is_terminal:
            return None

        op.status = OperationStatus.FAILED
        op.error = str(error)
        op.message = f"Failed: {error}"
        op.cancellable = False
        op.retryable = retryable
        op.last_update = utc_now_iso()

        self._persist(op)
        self._notify(op)
        logger.warning(f"[{operation_id}] Operation failed: {error}")
        return op.model_copy(deep=True)

    def cancel(self, operation_id: str, message: str = "Cancelled by user") -> Optional[Operation]:
        """Mark a cancellable operation cancelled. Returns None if it can't be."""
        op = self._operations.get(operation_id)
        if op is None or not op.cancellable:
            return None

        op.status = OperationStatus.CANCELLED
        op.message = message
        op.last_update = utc_now_iso()
        op.cancellable, op.retryable = STATUS_FLAGS[OperationStatus.CANCELLED]

        self._persist(op)
        self._notify(op)
        logger.info(f"[{operation_id}] Operation cancelled")
        return op.model_copy(deep=True)

    def reset(self, operation_id: str) -> Optional[Operation]:
        """Start a fresh attempt: back to initializing at 0%."""
        op = self._operations.get(operation_id)
        if op is None:
            return None

        handle = self._cleanup_handles.pop(operation_id, None)
        if handle is not None:
            handle.cancel()

        op.attempt += 1
        op.status = OperationStatus.INITIALIZING
        op.progress = 0
        op.message = f"Retrying (attempt {op.attempt + 1})..."
        op.error = None
        op.last_update = utc_now_iso()
        op.cancellable, op.retryable = STATUS_FLAGS[OperationStatus.INITIALIZING]

        self._persist(op)
        self._notify(op)
        self._emit(RETRY_EVENT, ProgressEvent.from_operation(op))
        return op.model_copy(deep=True)

    def cleanup(self, operation_id: str) -> None:
        """Remove an operation, its callbacks, and its snapshot."""
        handle = self._cleanup_handles.pop(operation_id, None)
        if handle is not None:
            handle.cancel()

        op = self._operations.get(operation_id)
        if op is not None:
            self._notify(op, status=CLEANUP_EVENT)

        self._operations.pop(operation_id, None)
        self._callbacks.pop(operation_id, None)
        if self.store is not None:
            self._write(operation_id, None)

        for hook in list(self._cleanup_hooks):
            hook(operation_id)
        logger.debug(f"[{operation_id}] Operation cleaned up")

    def add_cleanup_hook(self, hook: Callable[[str], None]) -> None:
        """Run ``hook(operation_id)`` whenever an operation is cleaned up."""
        self._cleanup_hooks.append(hook)

    def _schedule_cleanup(self, operation_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[{operation_id}] No running loop; cleanup left to caller")
            return
        self._cleanup_handles[operation_id] = loop.call_later(
            self.grace_period, self.cleanup, operation_id
        )

    # --- Queries ---

    def get(self, operation_id: str) -> Optional[Operation]:
        op = self._operations.get(operation_id)
        return op.model_copy(deep=True) if op else None

    def list_active(self) -> list[Operation]:
        return [op.model_copy(deep=True) for op in self._operations.values()]

    def list_by_type(self, type: str) -> list[Operation]:
        return [op.model_copy(deep=True) for op in self._operations.values() if op.type == type]

    def statistics(self) -> OperationStatistics:
        ops = list(self._operations.values())
        return OperationStatistics(
            total=len(ops),
            active=sum(1 for op in ops if not op.status.is_terminal),
            completed=sum(1 for op in ops if op.status == OperationStatus.COMPLETED),
            failed=sum(1 for op in ops if op.status == OperationStatus.FAILED),
            cancelled=sum(1 for op in ops if op.status == OperationStatus.CANCELLED),
        )

    def clear_completed(self) -> int:
        """Clean up every terminal operation. Returns how many were removed."""
        done = [op_id for op_id, op in self._operations.items() if op.status.is_terminal]
        for op_id in done:
            self.cleanup(op_id)
        return len(done)

    # --- Subscriptions ---

    def subscribe(self, operation_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Receive every event for one operation, in order. Returns an unsubscribe."""
        self._callbacks.setdefault(operation_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._callbacks.get(operation_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscribe_event(self, event: str, callback: ProgressCallback) -> Callable[[], None]:
        """Listen on a global channel: ``progress``, ``progress_<status>`` or ``retry``."""
        self._listeners.setdefault(event, []).append(callback)
        return lambda: self.unsubscribe_event(event, callback)

    def unsubscribe_event(self, event: str, callback: ProgressCallback) -> None:
        listeners = self._listeners.get(event)
        if listeners and callback in listeners:
            listeners.remove(callback)

    def _notify(self, op: Operation, status: Optional[str] = None) -> None:
        event = ProgressEvent.from_operation(op, status)
        for callback in list(self._callbacks.get(op.id, [])):
            self._safe_call(callback, event)
        self._emit(f"progress_{event.status}", event)
        self._emit(ALL_PROGRESS_EVENT, event)

    def _emit(self, channel: str, event: ProgressEvent) -> None:
        for callback in list(self._listeners.get(channel, [])):
            self._safe_call(callback, event)

    @staticmethod
    def _safe_call(callback: ProgressCallback, event: ProgressEvent) -> None:
        try:
            callback(event)
        except Exception as e:
            logger.error(f"[{event.job_id}] Error in progress callback: {e}", exc_info=True)

    # --- Persistence / recovery ---

    def _persist(self, op: Operation) -> None:
        if self.store is None:
            return
        self._write(op.id, op.model_copy(deep=True))

    def _write(self, operation_id: str, snapshot: Optional[Operation]) -> None:
        """Queue a snapshot save (or a delete when ``snapshot`` is None).

        Inside an event loop the write goes through one queue drained on a
        worker thread, so store I/O never stalls other jobs and writes land in
        the order they were made. Without a loop it happens inline.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_now(operation_id, snapshot)
            return

        if self._writer is None or self._writer.done() or self._writer.get_loop() is not loop:
            self._pending_writes = asyncio.Queue()
            self._writer = loop.create_task(self._drain_writes(self._pending_writes))
        self._pending_writes.put_nowait((operation_id, snapshot))

    def _write_now(self, operation_id: str, snapshot: Optional[Operation]) -> None:
        try:
            if snapshot is None:
                self.store.delete(operation_id)
            else:
                self.store.save(snapshot)
        except Exception as e:
            logger.warning(f"[{operation_id}] Failed to persist operation status: {e}")

    async def _drain_writes(self, queue: asyncio.Queue) -> None:
        while True:
            operation_id, snapshot = await queue.get()
            try:
                await asyncio.to_thread(self._write_now, operation_id, snapshot)
            finally:
                queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued snapshot write has reached the store."""
        if self._pending_writes is not None and self._writer is not None and not self._writer.done():
            await self._pending_writes.join()

    async def aclose(self) -> None:
        """Flush pending writes and stop the writer task."""
        await self.flush()
        if self._writer is not None:
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
            self._writer = None

    def recover(self) -> list[Operation]:
        """Rewrite interrupted operations to failed on process start.

        Every persisted non-terminal record becomes failed/retryable; persisted
        terminal records are discarded.
        """
        if self.store is None:
            return []

        recovered = []
        terminal_values = {s.value for s in OperationStatus if s.is_terminal}
        for data in self.store.load_all():
            job_id = data["id"]
            if job_id in self._operations:
                continue
            if data.get("status") in terminal_values or "status" not in data:
                self.store.delete(job_id)
                continue

            # Out-of-range numbers are clamped; anything else fails validation below
            progress = data.get("progress")
            if isinstance(progress, (int, float)) and not isinstance(progress, bool) and math.isfinite(progress):
                data["progress"] = clamp_progress(progress)
            data.update(
                status=OperationStatus.FAILED.value,
                message=INTERRUPTED_MESSAGE,
                error=INTERRUPTED_MESSAGE,
                retryable=True,
                cancellable=False,
                last_update=utc_now_iso(),
            )
            try:
                op = Operation.model_validate(data)
            except ValueError as e:
                logger.warning(f"Discarding unrecoverable snapshot {job_id}: {e}")
                self.store.delete(job_id)
                continue

            self._operations[job_id] = op
            self._persist(op)
            recovered.append(op.model_copy(deep=True))
            logger.warning(f"Recovered interrupted operation {job_id} → failed (retryable)")

        logger.info(f"Startup recovery: {len(recovered)} operation(s) marked interrupted")
        return recovered
