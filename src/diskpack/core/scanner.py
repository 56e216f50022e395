"""Folder size scanner.

Measures every immediate child directory of a root and streams one
:class:`FolderSizeRecord` per child as soon as its subtree walk finishes.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path

from diskpack.core.operation import (
    BackgroundOperation,
    CancelToken,
    CancelledError,
    DiagnosticSink,
    EventListener,
    OperationHandle,
    RootUnreadableError,
)
from diskpack.models.events import ScanCompleted
from diskpack.models.record import FolderSizeRecord

log = logging.getLogger(__name__)


def measure_tree(
    path: Path | str,
    *,
    follow_symlinks: bool = False,
    cancel_token: CancelToken | None = None,
    on_error: DiagnosticSink | None = None,
) -> int:
    """Return the total size of all regular files beneath *path*.

    Symbolic links and special files count as zero unless *follow_symlinks*
    is set, in which case links are measured as their targets and a
    directory already open higher up the same branch is skipped.  Items that
    cannot be read are reported to *on_error* and count as zero.

    Raises:
        CancelledError: if *cancel_token* is triggered between directories.
    """
    total = 0
    stack: list[tuple[str, frozenset[tuple[int, int]]]] = [(os.fspath(path), frozenset())]

    while stack:
        current, ancestors = stack.pop()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if follow_symlinks:
            try:
                st = os.stat(current)
            except OSError as exc:
                _report(on_error, f"Cannot access {current}: {exc}")
                continue
            key = (st.st_dev, st.st_ino)
            if key in ancestors:
                _report(on_error, f"Skipping {current}: directory loop")
                continue
            ancestors = ancestors | {key}

        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_file(follow_symlinks=follow_symlinks):
                            total += entry.stat(follow_symlinks=follow_symlinks).st_size
                        elif entry.is_dir(follow_symlinks=follow_symlinks):
                            stack.append((entry.path, ancestors))
                    except OSError as exc:
                        _report(on_error, f"Cannot access {entry.path}: {exc}")
        except OSError as exc:
            _report(on_error, f"Cannot read {current}: {exc}")

    return total


def _report(sink: DiagnosticSink | None, message: str) -> None:
    if sink is not None:
        sink(message)
    else:
        log.debug(message)


class SizeScanner(BackgroundOperation):
    """Measures the immediate child directories of a root in the background.

    Subtree walks run on a bounded thread pool, so records arrive in
    completion order rather than listing order.
    """

    name = "scan"

    def __init__(
        self,
        max_workers: int | None = None,
        follow_symlinks: bool = False,
        on_diagnostic: DiagnosticSink | None = None,
    ) -> None:
        super().__init__(on_diagnostic)
        if max_workers is not None and (
            isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1
        ):
            log.warning("Ignoring invalid max_workers %r, using the default pool size", max_workers)
            max_workers = None
        self.max_workers = max_workers
        self.follow_symlinks = follow_symlinks

    def start(
        self,
        root: Path | str,
        *,
        cancel_token: CancelToken | None = None,
        listener: EventListener | None = None,
    ) -> OperationHandle:
        """Start scanning *root* and return the run's handle.

        Raises:
            OperationBusyError: if the previous scan is still running.
        """
        root_path = Path(root)
        return self._launch(lambda handle: self._scan(root_path, handle), cancel_token, listener)

    def _scan(self, root: Path, handle: OperationHandle) -> ScanCompleted:
        token = handle.cancel_token
        log.info("Scanning %s", root)

        children = self._list_children(root)
        token.raise_if_cancelled()
        if not children:
            log.info("Scan complete: found 0 folders in %s", root)
            return ScanCompleted(count=0)

        count = 0
        workers = self._worker_count(len(children))
        log.debug("Measuring %d folders with %d workers", len(children), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="diskpack-scan") as executor:
            futures: dict[Future[int], Path] = {
                executor.submit(self._measure_child, child, token): child for child in children
            }
            try:
                for future in as_completed(futures):
                    token.raise_if_cancelled()
                    size = future.result()
                    handle.emit(FolderSizeRecord(path=futures[future], total_bytes=size))
                    count += 1
            except CancelledError:
                for future in futures:
                    future.cancel()
                raise

        log.info("Scan complete: found %d folders in %s", count, root)
        return ScanCompleted(count=count)

    def _list_children(self, root: Path) -> list[Path]:
        """Return the child directories of *root*, sorted by name."""
        children: list[Path] = []
        try:
            with os.scandir(root) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=self.follow_symlinks):
                            children.append(Path(entry.path))
                    except OSError as exc:
                        self._diagnose(f"Cannot access {entry.path}: {exc}")
        except NotADirectoryError as exc:
            # Also raised for a path below a file, which does not exist at all.
            if not root.exists():
                raise RootUnreadableError(f"Cannot list {root}: No such file or directory") from exc
            log.info("%s is not a directory, nothing to scan", root)
            return []
        except OSError as exc:
            raise RootUnreadableError(f"Cannot list {root}: {exc.strerror or exc}") from exc
        return sorted(children)

    def _measure_child(self, child: Path, token: CancelToken) -> int:
        token.raise_if_cancelled()
        return measure_tree(
            child,
            follow_symlinks=self.follow_symlinks,
            cancel_token=token,
            on_error=self._diagnose,
        )

    def _worker_count(self, children: int) -> int:
        """Pool size: configured value, else twice the CPU count, never more than needed."""
        workers = self.max_workers or (os.cpu_count() or 1) * 2
        return max(1, min(workers, children))
