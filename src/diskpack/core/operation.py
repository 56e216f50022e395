"""Background run contract shared by the scanner and the archiver.

Every invocation gets its own :class:`OperationHandle`: one worker thread,
one cancel token and one ordered event channel.  Workers push records or
progress events with :meth:`OperationHandle.emit` and end the stream with
exactly one terminal event.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import weakref
from typing import Any, Callable, Iterator

from diskpack.models.events import OperationCancelled, OperationFailed, TerminalEvent

log = logging.getLogger(__name__)

DiagnosticSink = Callable[[str], None]
EventListener = Callable[[Any], None]


class OperationError(Exception):
    """Base class for operation errors."""


class OperationBusyError(OperationError):
    """Raised when an instance is started while its previous run is still running."""


class SelectionEmptyError(OperationError):
    """Raised when an archive is requested with nothing selected."""


class RootUnreadableError(OperationError):
    """The scan root could not be listed."""


class SourceReadError(OperationError):
    """A selected item could not be read while archiving."""


class DestinationWriteError(OperationError):
    """The archive container could not be created."""


class CancelledError(OperationError):
    """Raised inside a worker when its cancel token has been triggered."""


class OperationState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = {
    "completed": OperationState.COMPLETED,
    "failed": OperationState.FAILED,
    "cancelled": OperationState.CANCELLED,
}


class CancelToken:
    """Thread-safe cooperative cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`CancelledError` if cancellation was requested."""
        if self._event.is_set():
            raise CancelledError("Operation cancelled")


class OperationHandle:
    """A single invocation of a background operation.

    The event channel is meant for one consumer: either iterate
    :meth:`events` or call :meth:`wait`.  A *listener*, when given, is
    called on the worker thread for every event before it is queued.
    """

    def __init__(
        self,
        name: str,
        cancel_token: CancelToken | None = None,
        listener: EventListener | None = None,
    ) -> None:
        self.name = name
        self.cancel_token = cancel_token or CancelToken()
        self._listener = listener
        self._queue: queue.Queue[Any] = queue.Queue()
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._drained = False
        self._state = OperationState.IDLE
        self._terminal: TerminalEvent | None = None
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> OperationState:
        return self._state

    @property
    def terminal(self) -> TerminalEvent | None:
        """The terminal event, or None while the run is still going."""
        return self._terminal

    @property
    def running(self) -> bool:
        return self._state is OperationState.RUNNING

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def start(self, target: Callable[[OperationHandle], TerminalEvent]) -> None:
        """Run *target* on a new worker thread.

        The value *target* returns becomes the terminal event.  Operation
        errors it raises become :class:`OperationFailed`, cancellation becomes
        :class:`OperationCancelled`.
        """
        with self._lock:
            if self._state is not OperationState.IDLE:
                raise RuntimeError(f"{self.name} run already started")
            self._state = OperationState.RUNNING
        self._thread = threading.Thread(
            target=self._run,
            args=(target,),
            name=f"diskpack-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self.cancel_token.cancel()

    def emit(self, event: Any) -> None:
        """Deliver a non-terminal event."""
        if self._terminal is not None:
            raise RuntimeError(f"{self.name} already finished, cannot emit {event!r}")
        self._deliver(event)

    def events(self, timeout: float | None = None) -> Iterator[Any]:
        """Yield events in order, ending with the terminal event.

        Raises :class:`queue.Empty` if *timeout* elapses between two events.
        """
        if self._drained:
            return
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if isinstance(event, TerminalEvent):
                self._drained = True
                return

    def wait(self, timeout: float | None = None) -> TerminalEvent | None:
        """Block until the run ends and return its terminal event."""
        self._done.wait(timeout)
        return self._terminal

    def _run(self, target: Callable[[OperationHandle], TerminalEvent]) -> None:
        try:
            terminal = target(self)
        except CancelledError:
            log.info("%s cancelled", self.name)
            terminal = OperationCancelled()
        except OperationError as exc:
            log.warning("%s failed: %s", self.name, exc)
            terminal = OperationFailed(message=str(exc))
        except Exception as exc:
            log.exception("%s worker crashed", self.name)
            terminal = OperationFailed(message=f"Unexpected error: {exc}")
        self._finish(terminal)

    def _finish(self, terminal: TerminalEvent) -> None:
        with self._lock:
            if self._terminal is not None:
                raise RuntimeError(f"{self.name} terminal event already delivered")
            self._terminal = terminal
            self._state = _TERMINAL_STATES[terminal.status]
        self._deliver(terminal)
        self._done.set()

    def _deliver(self, event: Any) -> None:
        if self._listener is not None:
            try:
                self._listener(event)
            except Exception:
                log.exception("%s event listener failed on %r", self.name, event)
        self._queue.put(event)


class BackgroundOperation:
    """Component that runs at most one invocation at a time."""

    name = "operation"

    def __init__(self, on_diagnostic: DiagnosticSink | None = None) -> None:
        self._on_diagnostic = on_diagnostic
        self._current: weakref.ref[OperationHandle] | None = None
        self._start_lock = threading.Lock()

    @property
    def current(self) -> OperationHandle | None:
        """Handle of the most recent run, while it runs or a caller still holds it.

        Only a weak reference is kept, so a finished run's undrained events
        are released together with its handle.
        """
        return self._current() if self._current is not None else None

    def _launch(
        self,
        target: Callable[[OperationHandle], TerminalEvent],
        cancel_token: CancelToken | None,
        listener: EventListener | None,
    ) -> OperationHandle:
        with self._start_lock:
            current = self.current
            if current is not None and current.running:
                raise OperationBusyError(f"{self.name} is already running")
            handle = OperationHandle(self.name, cancel_token, listener)
            self._current = weakref.ref(handle)
            handle.start(target)
        return handle

    def _diagnose(self, message: str) -> None:
        """Send a non-fatal per-item problem to the log and the diagnostic sink."""
        log.warning("%s: %s", self.name, message)
        if self._on_diagnostic is not None:
            try:
                self._on_diagnostic(message)
            except Exception:
                log.exception("%s diagnostic sink failed", self.name)
