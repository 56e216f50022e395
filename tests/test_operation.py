"""Tests for the shared background run contract."""

from __future__ import annotations

import gc
import logging
import threading

import pytest

from diskpack.core.operation import (
    BackgroundOperation,
    CancelToken,
    CancelledError,
    OperationHandle,
    OperationState,
    SourceReadError,
)
from diskpack.models.events import OperationCancelled, OperationFailed, ProgressEvent, ScanCompleted


class TestCancelToken:
    def test_starts_clear(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel_is_idempotent(self):
        token = CancelToken()
        token.cancel()
        token.cancel()
        assert token.cancelled
        with pytest.raises(CancelledError):
            token.raise_if_cancelled()


class TestOperationHandle:
    def test_events_end_with_terminal(self):
        def target(handle):
            handle.emit(ProgressEvent(50, "half"))
            handle.emit(ProgressEvent(100, "all"))
            return ScanCompleted(count=2)

        handle = OperationHandle("test")
        assert handle.state is OperationState.IDLE
        handle.start(target)

        events = list(handle.events(timeout=10))
        assert events == [ProgressEvent(50, "half"), ProgressEvent(100, "all"), ScanCompleted(count=2)]
        assert handle.state is OperationState.COMPLETED
        assert handle.terminal == ScanCompleted(count=2)
        assert handle.done

    def test_events_not_replayed(self):
        handle = OperationHandle("test")
        handle.start(lambda h: ScanCompleted(count=0))
        assert list(handle.events(timeout=10)) == [ScanCompleted(count=0)]
        assert list(handle.events(timeout=10)) == []

    def test_operation_error_becomes_failure(self):
        def target(handle):
            raise SourceReadError("Cannot read /x: gone")

        handle = OperationHandle("test")
        handle.start(target)

        assert handle.wait(10) == OperationFailed(message="Cannot read /x: gone")
        assert handle.state is OperationState.FAILED

    def test_unexpected_error_becomes_failure(self, caplog):
        def target(handle):
            raise ValueError("boom")

        handle = OperationHandle("test")
        with caplog.at_level(logging.ERROR):
            handle.start(target)
            terminal = handle.wait(10)

        assert isinstance(terminal, OperationFailed)
        assert "boom" in terminal.message
        assert "worker crashed" in caplog.text

    def test_cancellation_becomes_cancelled(self):
        def target(handle):
            handle.cancel_token.raise_if_cancelled()
            return ScanCompleted(count=0)

        handle = OperationHandle("test")
        handle.cancel()
        handle.start(target)

        assert handle.wait(10) == OperationCancelled()
        assert handle.state is OperationState.CANCELLED

    def test_cannot_start_twice(self):
        handle = OperationHandle("test")
        handle.start(lambda h: ScanCompleted(count=0))
        with pytest.raises(RuntimeError):
            handle.start(lambda h: ScanCompleted(count=0))

    def test_emit_after_terminal_rejected(self):
        handle = OperationHandle("test")
        handle.start(lambda h: ScanCompleted(count=0))
        handle.wait(10)
        with pytest.raises(RuntimeError):
            handle.emit(ProgressEvent(100, "late"))

    def test_listener_sees_events_on_worker_thread(self):
        seen: list[tuple[object, str]] = []

        def listener(event):
            seen.append((event, threading.current_thread().name))

        def target(handle):
            handle.emit(ProgressEvent(100, "done"))
            return ScanCompleted(count=0)

        handle = OperationHandle("test", listener=listener)
        handle.start(target)
        handle.wait(10)

        assert [e for e, _ in seen] == [ProgressEvent(100, "done"), ScanCompleted(count=0)]
        assert all(name == "diskpack-test" for _, name in seen)

    def test_failing_listener_does_not_break_delivery(self):
        def listener(event):
            raise RuntimeError("listener bug")

        def target(handle):
            handle.emit(ProgressEvent(100, "done"))
            return ScanCompleted(count=0)

        handle = OperationHandle("test", listener=listener)
        handle.start(target)

        assert list(handle.events(timeout=10)) == [ProgressEvent(100, "done"), ScanCompleted(count=0)]


class TestBackgroundOperation:
    def test_diagnostics_reach_sink(self):
        messages: list[str] = []
        op = BackgroundOperation(on_diagnostic=messages.append)
        op._diagnose("Cannot read /x")
        assert messages == ["Cannot read /x"]

    def test_diagnostics_logged(self, caplog):
        op = BackgroundOperation()
        with caplog.at_level(logging.WARNING):
            op._diagnose("Cannot read /x")
        assert "Cannot read /x" in caplog.text

    def test_failing_sink_is_contained(self):
        def sink(message):
            raise RuntimeError("sink bug")

        BackgroundOperation(on_diagnostic=sink)._diagnose("Cannot read /x")

    def test_current_is_the_running_handle(self):
        release = threading.Event()

        def target(handle):
            release.wait(10)
            return ScanCompleted(count=0)

        op = BackgroundOperation()
        handle = op._launch(target, None, None)
        try:
            assert op.current is handle
        finally:
            release.set()
        assert isinstance(handle.wait(10), ScanCompleted)

    def test_finished_undrained_run_is_released(self):
        def target(handle):
            for n in range(100):
                handle.emit(ProgressEvent(n, "step"))
            return ScanCompleted(count=0)

        op = BackgroundOperation()
        handle = op._launch(target, None, lambda event: None)
        assert isinstance(handle.wait(10), ScanCompleted)
        for thread in threading.enumerate():
            if thread.name == "diskpack-operation":
                thread.join(10)

        del handle
        gc.collect()
        assert op.current is None
