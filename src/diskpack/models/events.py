"""Events delivered on an operation's event channel."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One top-level archive entry has been fully written."""

    percent: int
    message: str


class TerminalEvent:
    """Base for the single event that ends every event stream."""

    __slots__ = ()

    status: ClassVar[str] = ""


@dataclass(frozen=True, slots=True)
class ScanCompleted(TerminalEvent):
    """Scan finished; ``count`` records were emitted before this event."""

    count: int
    status: ClassVar[str] = "completed"


@dataclass(frozen=True, slots=True)
class ArchiveCompleted(TerminalEvent):
    """Archive written successfully."""

    destination: Path
    status: ClassVar[str] = "completed"


@dataclass(frozen=True, slots=True)
class OperationFailed(TerminalEvent):
    """Operation stopped on an error that compromises its result."""

    message: str
    status: ClassVar[str] = "failed"


@dataclass(frozen=True, slots=True)
class OperationCancelled(TerminalEvent):
    """Cooperative cancellation was observed."""

    status: ClassVar[str] = "cancelled"
