"""Folder size record dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class FolderSizeRecord:
    """Total size of one immediate child directory of a scanned root."""

    path: Path
    total_bytes: int


def sort_records(records: list[FolderSizeRecord]) -> list[FolderSizeRecord]:
    """Return records largest first, ties broken by path."""
    return sorted(records, key=lambda r: (-r.total_bytes, str(r.path)))
