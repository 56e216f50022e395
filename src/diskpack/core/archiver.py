"""Selection archiver.

Writes an ordered selection of files and directories into one ZIP container.
Directories are flattened recursively; entry names always use ``/`` so the
archive stays portable.  One :class:`ProgressEvent` is emitted per top-level
selection entry.
"""

from __future__ import annotations

import logging
import os
import stat
import zipfile
from pathlib import Path
from typing import Sequence

from diskpack.core.operation import (
    BackgroundOperation,
    CancelToken,
    DestinationWriteError,
    DiagnosticSink,
    EventListener,
    OperationHandle,
    SelectionEmptyError,
    SourceReadError,
)
from diskpack.models.events import ArchiveCompleted, ProgressEvent

log = logging.getLogger(__name__)

# Unix mode bits plus the MS-DOS directory flag for explicit directory entries.
_DIR_EXTERNAL_ATTR = (stat.S_IFDIR | 0o755) << 16 | 0x10

_FileKey = tuple[int, int]


def entry_name(parent: str, child: str) -> str:
    """Join a container entry name and a child's base name."""
    return f"{parent}/{child}" if parent else child


def _file_key(st: os.stat_result) -> _FileKey:
    return st.st_dev, st.st_ino


class Archiver(BackgroundOperation):
    """Archives a selection into a deflate-compressed ZIP file in the background."""

    name = "archive"

    def __init__(
        self,
        compress_level: int | None = None,
        on_diagnostic: DiagnosticSink | None = None,
    ) -> None:
        super().__init__(on_diagnostic)
        if compress_level is not None and (
            isinstance(compress_level, bool) or not isinstance(compress_level, int) or not 0 <= compress_level <= 9
        ):
            log.warning("Ignoring invalid compress_level %r, using the zlib default", compress_level)
            compress_level = None
        self.compress_level = compress_level

    def start(
        self,
        selection: Sequence[Path | str],
        destination: Path | str,
        *,
        cancel_token: CancelToken | None = None,
        listener: EventListener | None = None,
    ) -> OperationHandle:
        """Start archiving *selection* into *destination*.

        An existing destination is overwritten; asking first is up to the caller.

        Raises:
            SelectionEmptyError: if *selection* is empty.
            OperationBusyError: if the previous archive is still running.
        """
        items = [Path(p) for p in selection]
        if not items:
            raise SelectionEmptyError("Nothing selected to archive")
        dest = Path(destination)
        return self._launch(lambda handle: self._archive(items, dest, handle), cancel_token, listener)

    def _archive(self, items: list[Path], destination: Path, handle: OperationHandle) -> ArchiveCompleted:
        token = handle.cancel_token
        total = len(items)
        log.info("Archiving %d items into %s", total, destination)

        try:
            zf = zipfile.ZipFile(
                destination,
                "w",
                zipfile.ZIP_DEFLATED,
                compresslevel=self.compress_level,
                strict_timestamps=False,
            )
        except OSError as exc:
            raise DestinationWriteError(f"Cannot create {destination}: {exc.strerror or exc}") from exc

        with zf:
            writer = _ContainerWriter(zf, token, self._diagnose, destination)
            for completed, item in enumerate(items, 1):
                token.raise_if_cancelled()
                writer.add_top_level(item)
                percent = completed * 100 // total
                handle.emit(ProgressEvent(percent=percent, message=f"Compressed: {item}"))

        log.info("Compression complete: %s", destination)
        return ArchiveCompleted(destination=destination)


class _ContainerWriter:
    """Recursive container writer for a single archive run."""

    def __init__(
        self,
        zf: zipfile.ZipFile,
        token: CancelToken,
        diagnose: DiagnosticSink,
        destination: Path,
    ) -> None:
        self._zf = zf
        self._token = token
        self._diagnose = diagnose
        self._destination = destination
        self._destination_key = _file_key(destination.stat())

    def add_top_level(self, item: Path) -> None:
        name = item.name or item.resolve().name
        if not name:
            raise SourceReadError(f"Cannot archive {item}: no name to store it under")
        self._add(item, name, _stat(item), frozenset())

    def _add(self, path: Path, name: str, st: os.stat_result, ancestors: frozenset[_FileKey]) -> None:
        """Write *path* under *name*, descending into directories."""
        if stat.S_ISDIR(st.st_mode):
            self._add_dir(path, name, st, ancestors)
        elif not stat.S_ISREG(st.st_mode):
            self._diagnose(f"Skipping {path}: not a regular file")
        elif _file_key(st) == self._destination_key:
            self._diagnose(f"Skipping {path}: it is the archive being written")
        else:
            try:
                self._zf.write(path, arcname=name)
            except OSError as exc:
                if exc.filename is not None and os.fspath(exc.filename) == os.fspath(path):
                    raise SourceReadError(f"Cannot read {path}: {exc.strerror or exc}") from exc
                raise self._write_error(exc) from exc

    def _add_dir(self, path: Path, name: str, st: os.stat_result, ancestors: frozenset[_FileKey]) -> None:
        self._token.raise_if_cancelled()
        key = _file_key(st)
        if key in ancestors:
            self._diagnose(f"Skipping {path}: symbolic link loop")
            return
        ancestors = ancestors | {key}

        try:
            with os.scandir(path) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise SourceReadError(f"Cannot read {path}: {exc.strerror or exc}") from exc

        if not children:
            info = zipfile.ZipInfo(f"{name}/")
            info.external_attr = _DIR_EXTERNAL_ATTR
            try:
                self._zf.writestr(info, b"")
            except OSError as exc:
                raise self._write_error(exc) from exc
            return

        log.debug("Adding %s (%d entries)", name, len(children))
        for child in children:
            child_path = Path(child.path)
            self._add(child_path, entry_name(name, child.name), _stat(child_path), ancestors)

    def _write_error(self, exc: OSError) -> DestinationWriteError:
        return DestinationWriteError(f"Cannot write {self._destination}: {exc.strerror or exc}")


def _stat(path: Path) -> os.stat_result:
    """Stat *path* following links; a missing or unreadable source aborts the run."""
    try:
        return path.stat()
    except OSError as exc:
        raise SourceReadError(f"Cannot read {path}: {exc.strerror or exc}") from exc
