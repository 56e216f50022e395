"""Diskpack data models."""

from diskpack.models.record import FolderSizeRecord, sort_records
from diskpack.models.events import (
    ArchiveCompleted,
    OperationCancelled,
    OperationFailed,
    ProgressEvent,
    ScanCompleted,
    TerminalEvent,
)

__all__ = [
    "ArchiveCompleted",
    "FolderSizeRecord",
    "OperationCancelled",
    "OperationFailed",
    "ProgressEvent",
    "ScanCompleted",
    "TerminalEvent",
    "sort_records",
]
