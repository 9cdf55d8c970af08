"""Tests for ProgressTracker lifecycle, fanout and recovery."""

import asyncio
import threading

import pytest

from src.transcription.db import SnapshotStore
from src.transcription.progress_tracker import INTERRUPTED_MESSAGE, ProgressTracker, clamp_progress
from src.transcription.schemas import CLEANUP_EVENT, Operation, OperationStatus, ProgressEvent


class TestProgressClamping:
    """Progress is clamped to [0, 100] and never moves backwards."""

    def test_clamp_progress(self) -> None:
        assert clamp_progress(-10) == 0
        assert clamp_progress(150) == 100
        assert clamp_progress(42.4) == 42

    def test_update_clamps_low_and_high(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        op = tracker.update("job-1", OperationStatus.UPLOADING, -10, "Uploading")
        assert op.progress == 0

        op = tracker.update("job-1", OperationStatus.PROCESSING, 150, "Processing")
        assert op.progress == 100

    def test_progress_is_non_decreasing(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        tracker.update("job-1", OperationStatus.PROCESSING, 60, "Processing")
        op = tracker.update("job-1", OperationStatus.PROCESSING, 40, "Still processing")
        assert op.progress == 60
        assert op.message == "Still processing"


class TestStatusFlags:
    """cancellable/retryable follow the status."""

    @pytest.mark.parametrize(
        "status",
        [
            OperationStatus.INITIALIZING,
            OperationStatus.UPLOADING,
            OperationStatus.CREATING_JOB,
            OperationStatus.PROCESSING,
            OperationStatus.DOWNLOADING,
        ],
    )
    def test_non_terminal_is_cancellable(self, tracker: ProgressTracker, status: OperationStatus) -> None:
        tracker.start("job-1")
        op = tracker.update("job-1", status, 10, "working")
        assert op.cancellable is True
        assert op.retryable is False

    def test_completed_flags(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        op = tracker.complete("job-1")
        assert op.status == OperationStatus.COMPLETED
        assert op.progress == 100
        assert (op.cancellable, op.retryable) == (False, False)

    def test_failed_flags(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        tracker.update("job-1", OperationStatus.PROCESSING, 40, "Processing")
        op = tracker.fail("job-1", RuntimeError("boom"))
        assert op.status == OperationStatus.FAILED
        assert (op.cancellable, op.retryable) == (False, True)
        assert op.error == "boom"
        assert op.progress == 40

    def test_cancelled_flags(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        op = tracker.cancel("job-1")
        assert op.status == OperationStatus.CANCELLED
        assert (op.cancellable, op.retryable) == (False, True)


class TestTerminalStates:
    """Terminal operations ignore further updates."""

    def test_update_after_terminal_is_ignored(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        tracker.cancel("job-1")
        assert tracker.update("job-1", OperationStatus.PROCESSING, 50, "late") is None
        assert tracker.get("job-1").status == OperationStatus.CANCELLED

    def test_cancel_terminal_returns_none(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        tracker.fail("job-1", "broken")
        assert tracker.cancel("job-1") is None

    def test_update_unknown_returns_none(self, tracker: ProgressTracker) -> None:
        assert tracker.update("nope", OperationStatus.PROCESSING, 10, "x") is None

    def test_duplicate_start_rejected(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        with pytest.raises(ValueError):
            tracker.start("job-1")


class TestQueries:
    """get() returns detached copies."""

    def test_get_status_is_idempotent(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1", description="call.wav")
        tracker.update("job-1", OperationStatus.UPLOADING, 10, "Uploading")
        assert tracker.get("job-1") == tracker.get("job-1")

    def test_get_returns_copy(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        copy = tracker.get("job-1")
        copy.progress = 99
        copy.metadata["x"] = 1
        assert tracker.get("job-1").progress == 0
        assert tracker.get("job-1").metadata == {}

    def test_statistics_and_clear_completed(self, tracker: ProgressTracker) -> None:
        tracker.start("a")
        tracker.start("b")
        tracker.start("c")
        tracker.complete("a")
        tracker.fail("b", "x")

        stats = tracker.statistics()
        assert (stats.total, stats.active, stats.completed, stats.failed) == (3, 1, 1, 1)

        assert tracker.clear_completed() == 2
        assert [op.id for op in tracker.list_active()] == ["c"]

    def test_list_by_type(self, tracker: ProgressTracker) -> None:
        tracker.start("a", type="transcription")
        tracker.start("b", type="export")
        assert [op.id for op in tracker.list_by_type("export")] == ["b"]


class TestSubscriptions:
    """Per-job callbacks and global channels."""

    def test_events_delivered_in_order(self, tracker: ProgressTracker) -> None:
        events: list[ProgressEvent] = []
        tracker.subscribe("job-1", events.append)
        tracker.start("job-1")
        tracker.update("job-1", OperationStatus.UPLOADING, 10, "Uploading")
        tracker.complete("job-1")

        assert [e.status for e in events] == ["initializing", "uploading", "completed"]
        assert [e.progress for e in events] == [0, 10, 100]

    def test_per_job_callbacks_fire_before_global(self, tracker: ProgressTracker) -> None:
        order = []
        tracker.subscribe_event("progress", lambda e: order.append("global"))
        tracker.subscribe_event("progress_uploading", lambda e: order.append("status"))
        tracker.start("job-1")
        tracker.subscribe("job-1", lambda e: order.append("job"))
        order.clear()

        tracker.update("job-1", OperationStatus.UPLOADING, 10, "Uploading")
        assert order == ["job", "status", "global"]

    def test_unsubscribe(self, tracker: ProgressTracker) -> None:
        events = []
        unsubscribe = tracker.subscribe("job-1", events.append)
        tracker.start("job-1")
        unsubscribe()
        tracker.update("job-1", OperationStatus.UPLOADING, 10, "Uploading")
        assert len(events) == 1

    def test_failing_callback_does_not_block_others(self, tracker: ProgressTracker) -> None:
        def broken(event):
            raise RuntimeError("subscriber bug")

        events = []
        tracker.subscribe("job-1", broken)
        tracker.subscribe("job-1", events.append)
        tracker.start("job-1")
        assert len(events) == 1

    def test_cleanup_emits_final_event(self, tracker: ProgressTracker) -> None:
        events = []
        hooks = []
        tracker.add_cleanup_hook(hooks.append)
        tracker.subscribe("job-1", events.append)
        tracker.start("job-1")
        tracker.fail("job-1", "x")
        tracker.cleanup("job-1")

        assert events[-1].status == CLEANUP_EVENT
        assert tracker.get("job-1") is None
        assert hooks == ["job-1"]

    def test_reset_starts_fresh_attempt(self, tracker: ProgressTracker) -> None:
        retries = []
        tracker.subscribe_event("retry", retries.append)
        tracker.start("job-1")
        tracker.update("job-1", OperationStatus.PROCESSING, 70, "Processing")
        tracker.fail("job-1", "x")

        op = tracker.reset("job-1")
        assert op.status == OperationStatus.INITIALIZING
        assert op.progress == 0
        assert op.attempt == 1
        assert op.error is None
        assert len(retries) == 1


class TestCompletedCleanup:
    """Completed operations disappear after the grace period."""

    @pytest.mark.asyncio
    async def test_completed_cleaned_after_grace(self) -> None:
        tracker = ProgressTracker(grace_period=0.01)
        tracker.start("job-1")
        tracker.complete("job-1")
        assert tracker.get("job-1") is not None

        await asyncio.sleep(0.05)
        assert tracker.get("job-1") is None

    def test_no_loop_leaves_completed_in_place(self, tracker: ProgressTracker) -> None:
        tracker.start("job-1")
        tracker.complete("job-1")
        assert tracker.get("job-1").status == OperationStatus.COMPLETED


class TestRecovery:
    """Restart recovery rewrites interrupted operations."""

    def test_processing_becomes_failed_retryable(self, store: SnapshotStore) -> None:
        before = ProgressTracker(store=store)
        before.start("job-1")
        before.update("job-1", OperationStatus.PROCESSING, 45, "Processing...")

        after = ProgressTracker(store=store)
        recovered = after.recover()

        assert [op.id for op in recovered] == ["job-1"]
        op = after.get("job-1")
        assert op.status == OperationStatus.FAILED
        assert op.message == INTERRUPTED_MESSAGE
        assert op.retryable is True
        assert op.cancellable is False
        assert op.progress == 45
        assert store.load("job-1").status == OperationStatus.FAILED

    def test_terminal_snapshots_discarded(self, store: SnapshotStore) -> None:
        before = ProgressTracker(store=store)
        before.start("job-1")
        before.cancel("job-1")

        after = ProgressTracker(store=store)
        assert after.recover() == []
        assert after.get("job-1") is None
        assert store.load("job-1") is None

    def test_recovery_without_store(self, tracker: ProgressTracker) -> None:
        assert tracker.recover() == []

    def test_malformed_snapshot_discarded(self, store: SnapshotStore) -> None:
        store.save(Operation(id="job-1"))
        store.execute(
            "UPDATE transcription_operations SET snapshot = %s WHERE job_id = %s",
            ('{"status": "processing", "progress": "lots"}', "job-1"),
        )

        tracker = ProgressTracker(store=store)
        assert tracker.recover() == []
        assert store.load_all() == []

    def test_out_of_range_progress_clamped(self, store: SnapshotStore) -> None:
        store.save(Operation(id="job-1", status=OperationStatus.PROCESSING, progress=250))

        tracker = ProgressTracker(store=store)
        [op] = tracker.recover()
        assert op.progress == 100
        assert store.load("job-1").progress == 100


class _RecordingStore:
    """Store double that records each write and the thread it ran on."""

    def __init__(self) -> None:
        self.writes: list[tuple[str, str, object, int]] = []

    def save(self, op: Operation) -> None:
        self.writes.append(("save", op.id, op.status.value, threading.get_ident()))

    def delete(self, job_id: str) -> None:
        self.writes.append(("delete", job_id, None, threading.get_ident()))

    def load_all(self) -> list[dict]:
        return []


class TestSnapshotWrites:
    """Store writes leave the event loop but keep their order."""

    @pytest.mark.asyncio
    async def test_writes_run_off_loop_in_order(self) -> None:
        store = _RecordingStore()
        tracker = ProgressTracker(store=store, grace_period=60)

        tracker.start("job-1")
        tracker.update("job-1", OperationStatus.PROCESSING, 40, "Processing...")
        tracker.cleanup("job-1")
        assert store.writes == []

        await tracker.flush()
        assert [(kind, status) for kind, _, status, _ in store.writes] == [
            ("save", "initializing"),
            ("save", "processing"),
            ("delete", None),
        ]
        assert all(thread != threading.get_ident() for *_, thread in store.writes)
        await tracker.aclose()

    @pytest.mark.asyncio
    async def test_flush_reaches_sqlite(self, store: SnapshotStore) -> None:
        tracker = ProgressTracker(store=store)
        tracker.start("job-1")
        tracker.update("job-1", OperationStatus.UPLOADING, 10, "Uploading...")

        await tracker.flush()
        assert store.load("job-1").status == OperationStatus.UPLOADING
        await tracker.aclose()

    def test_writes_inline_without_loop(self) -> None:
        store = _RecordingStore()
        tracker = ProgressTracker(store=store)

        tracker.start("job-1")
        assert store.writes == [("save", "job-1", "initializing", threading.get_ident())]
