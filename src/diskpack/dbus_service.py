"""D-Bus service for GUI communication.

D-Bus methods use PascalCase per D-Bus convention, and type signatures
like "as" and "(ust)" are D-Bus protocol types, not Python syntax.

Scan and Archive return immediately with an operation id; results arrive
as signals.  Operation events are produced on worker threads and handed to
the asyncio loop before any signal is emitted.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
from typing import Any

from dbus_next.aio import MessageBus
from dbus_next.service import ServiceInterface, method, signal
from dbus_next import BusType

from diskpack.core.archiver import Archiver
from diskpack.core.operation import BackgroundOperation, OperationError, OperationHandle
from diskpack.core.scanner import SizeScanner
from diskpack.models.events import (
    ArchiveCompleted,
    OperationFailed,
    ProgressEvent,
    ScanCompleted,
    TerminalEvent,
)
from diskpack.models.record import FolderSizeRecord
from diskpack.settings import Settings

log = logging.getLogger(__name__)

_BUS_NAME = "io.github.diskpack"
_OBJECT_PATH = "/io/github/diskpack"
_INTERFACE = "io.github.diskpack.Manager"


def _terminal_detail(event: TerminalEvent) -> str:
    if isinstance(event, ScanCompleted):
        return str(event.count)
    if isinstance(event, ArchiveCompleted):
        return str(event.destination)
    if isinstance(event, OperationFailed):
        return event.message
    return ""


# noinspection PyPep8Naming
class DiskpackDBusService(ServiceInterface):
    """D-Bus service interface for diskpack."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(_INTERFACE)
        self._loop = loop
        settings = Settings.instance()
        self._scanner = SizeScanner(
            max_workers=settings.get("scanner.max_workers"),
            follow_symlinks=bool(settings.get("scanner.follow_symlinks")),
            on_diagnostic=lambda message: self._diagnostic(SizeScanner.name, message),
        )
        self._archiver = Archiver(
            compress_level=settings.get("archiver.compress_level"),
            on_diagnostic=lambda message: self._diagnostic(Archiver.name, message),
        )
        self._ids = itertools.count(1)
        # Operation id of the latest accepted run per component, for Diagnostic signals.
        self._active_ids = {SizeScanner.name: 0, Archiver.name: 0}
        self._id_lock = threading.Lock()
        self._handles: dict[int, OperationHandle] = {}

    @method()
    def Scan(self, root: "s") -> "s":  # type: ignore[override]
        """Start measuring the folders under *root*."""
        return json.dumps(self._start(self._scanner, root))

    @method()
    def Archive(self, items: "as", destination: "s") -> "s":  # type: ignore[override]
        """Start archiving *items* into *destination*."""
        return json.dumps(self._start(self._archiver, list(items), destination))

    @method()
    def Cancel(self, operation_id: "u") -> "b":  # type: ignore[override]
        """Request cancellation of a running operation."""
        handle = self._handles.get(operation_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    @signal()
    def FolderMeasured(self, operation_id: int, path: str, total_bytes: int) -> "(ust)":  # type: ignore[override]
        return [operation_id, path, total_bytes]

    @signal()
    def ArchiveProgress(self, operation_id: int, percent: int, message: str) -> "(uis)":  # type: ignore[override]
        return [operation_id, percent, message]

    @signal()
    def Diagnostic(self, operation_id: int, message: str) -> "(us)":  # type: ignore[override]
        return [operation_id, message]

    @signal()
    def OperationFinished(self, operation_id: int, status: str, detail: str) -> "(uss)":  # type: ignore[override]
        return [operation_id, status, detail]

    def _start(self, component: BackgroundOperation, *args: Any) -> dict[str, Any]:
        op_id = next(self._ids)
        with self._id_lock:
            try:
                handle = component.start(*args, listener=lambda event: self._on_event(op_id, event))
            except OperationError as exc:
                log.warning("Could not start %s: %s", component.name, exc)
                return {"error": str(exc)}
            self._active_ids[component.name] = op_id
        self._handles[op_id] = handle
        log.info("Started %s operation %d", component.name, op_id)
        return {"operation_id": op_id}

    def _diagnostic(self, component_name: str, message: str) -> None:
        """Runs on a worker thread."""
        with self._id_lock:
            op_id = self._active_ids[component_name]
        self._post(self.Diagnostic, op_id, message)

    def _on_event(self, op_id: int, event: Any) -> None:
        """Runs on a worker thread."""
        if isinstance(event, FolderSizeRecord):
            self._post(self.FolderMeasured, op_id, str(event.path), event.total_bytes)
        elif isinstance(event, ProgressEvent):
            self._post(self.ArchiveProgress, op_id, event.percent, event.message)
        elif isinstance(event, TerminalEvent):
            self._post(self._finish, op_id, event)

    def _finish(self, op_id: int, event: TerminalEvent) -> None:
        self._handles.pop(op_id, None)
        self.OperationFinished(op_id, event.status, _terminal_detail(event))

    def _post(self, fn: Any, *args: Any) -> None:
        self._loop.call_soon_threadsafe(fn, *args)


async def run_service() -> None:
    """Start the D-Bus service."""
    bus = await MessageBus(bus_type=BusType.SESSION).connect()
    service = DiskpackDBusService(asyncio.get_running_loop())
    bus.export(_OBJECT_PATH, service)
    await bus.request_name(_BUS_NAME)
    log.info("D-Bus service started on %s", _BUS_NAME)
    await bus.wait_for_disconnect()


def start_service() -> None:
    """Entry point to start the D-Bus service."""
    asyncio.run(run_service())
