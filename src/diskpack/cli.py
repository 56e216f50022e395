"""CLI interface for diskpack."""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable

import click

from diskpack.core.archiver import Archiver
from diskpack.core.operation import OperationHandle
from diskpack.core.scanner import SizeScanner
from diskpack.models.events import (
    OperationCancelled,
    OperationFailed,
    ProgressEvent,
    TerminalEvent,
)
from diskpack.models.record import FolderSizeRecord, sort_records
from diskpack.settings import Settings
from diskpack.utils import bytes_to_human, format_elapsed

_EXIT_FAILED = 1
_EXIT_CANCELLED = 130


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _echo_diagnostic(message: str) -> None:
    click.echo(f"  {click.style('!', fg='yellow')} {message}", err=True)


def _drain(handle: OperationHandle, on_event: Callable[[Any], None]) -> TerminalEvent:
    """Feed every event of *handle* to *on_event*; Ctrl-C cancels and keeps draining."""
    while True:
        try:
            for event in handle.events():
                on_event(event)
            return handle.terminal
        except KeyboardInterrupt:
            click.echo("\nCancelling...", err=True)
            handle.cancel()


def _exit_on_terminal(terminal: TerminalEvent, as_json: bool) -> None:
    """Report a failed or cancelled run and exit with a matching status."""
    if isinstance(terminal, OperationFailed):
        if as_json:
            click.echo(json.dumps({"status": "failed", "error": terminal.message}))
        else:
            click.echo(f"{click.style('✗', fg='red')} {terminal.message}", err=True)
        sys.exit(_EXIT_FAILED)
    if isinstance(terminal, OperationCancelled):
        if as_json:
            click.echo(json.dumps({"status": "cancelled"}))
        else:
            click.echo("Cancelled.", err=True)
        sys.exit(_EXIT_CANCELLED)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
def main(verbose: int) -> None:
    """Diskpack: find what takes up space and pack it away."""
    _setup_logging(verbose)


# ── scan ─────────────────────────────────────────────────────────────────

@main.command()
@click.argument("root", type=click.Path(path_type=Path))
@click.option("--workers", "-w", type=click.IntRange(min=1), default=None, help="Parallel folder walks")
@click.option(
    "--follow-symlinks/--no-follow-symlinks",
    default=None,
    help="Count symbolic links as their targets",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def scan(root: Path, workers: int | None, follow_symlinks: bool | None, as_json: bool) -> None:
    """Measure the size of every folder directly under ROOT."""
    settings = Settings.instance()
    if workers is None:
        workers = settings.get("scanner.max_workers")
    if follow_symlinks is None:
        follow_symlinks = bool(settings.get("scanner.follow_symlinks"))

    root = root.absolute()
    scanner = SizeScanner(max_workers=workers, follow_symlinks=follow_symlinks, on_diagnostic=_echo_diagnostic)
    records: list[FolderSizeRecord] = []

    if not as_json:
        click.echo(f"\n{click.style('🔍', bold=True)} Scanning {root}...\n")

    def on_event(event: Any) -> None:
        if isinstance(event, FolderSizeRecord):
            records.append(event)
            if not as_json:
                click.echo(f"  {click.style('·', fg='bright_black')} {event.path}")

    started = time.monotonic()
    terminal = _drain(scanner.start(root), on_event)
    _exit_on_terminal(terminal, as_json)

    ordered = sort_records(records)
    if as_json:
        data = [{"path": str(r.path), "total_bytes": r.total_bytes} for r in ordered]
        click.echo(json.dumps(data, indent=2))
        return

    if ordered:
        click.echo(f"\n  {'Size':>10s}  Path")
        for record in ordered:
            size_str = click.style(f"{bytes_to_human(record.total_bytes):>10s}", fg="green", bold=True)
            click.echo(f"  {size_str}  {record.path}")

    elapsed = format_elapsed(time.monotonic() - started)
    click.echo(f"\nScan complete: found {terminal.count} folders in {elapsed}.\n")


# ── archive ──────────────────────────────────────────────────────────────

@main.command()
@click.argument("destination", type=click.Path(dir_okay=False, path_type=Path))
@click.argument("items", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Overwrite DESTINATION without asking")
@click.option("--level", "-l", type=click.IntRange(0, 9), default=None, help="Deflate level (0-9)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def archive(destination: Path, items: tuple[Path, ...], yes: bool, level: int | None, as_json: bool) -> None:
    """Compress ITEMS (files or folders) into the ZIP file DESTINATION."""
    if level is None:
        level = Settings.instance().get("archiver.compress_level")

    destination = destination.absolute()
    if destination.exists() and not yes:
        if as_json:
            click.echo(json.dumps({"status": "failed", "error": f"{destination} exists (use --yes to overwrite)"}))
            sys.exit(_EXIT_FAILED)
        click.confirm(f"{destination} already exists. Overwrite?", abort=True)

    archiver = Archiver(compress_level=level, on_diagnostic=_echo_diagnostic)
    progress: list[dict[str, Any]] = []

    if not as_json:
        click.echo(f"\n{click.style('📦', bold=True)} Compressing {len(items)} items...\n")

    def on_event(event: Any) -> None:
        if isinstance(event, ProgressEvent):
            progress.append({"percent": event.percent, "message": event.message})
            if not as_json:
                click.echo(f"  [{event.percent:3d}%] {event.message}")

    terminal = _drain(archiver.start([p.absolute() for p in items], destination), on_event)
    _exit_on_terminal(terminal, as_json)

    if as_json:
        click.echo(json.dumps(
            {"status": "completed", "destination": str(terminal.destination), "progress": progress},
            indent=2,
        ))
        return

    size_str = bytes_to_human(terminal.destination.stat().st_size)
    click.echo(
        f"\nCompression complete: {terminal.destination} "
        f"({click.style(size_str, fg='green', bold=True)})\n"
    )


# ── config ───────────────────────────────────────────────────────────────

@main.group()
def config() -> None:
    """Show or change persistent settings."""


@config.command("show")
def config_show() -> None:
    """Print the effective settings."""
    settings = Settings.instance()
    click.echo(f"# {settings.path}")
    click.echo(json.dumps(settings.as_dict(), indent=2))


@config.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Print one setting, e.g. scanner.max_workers."""
    click.echo(json.dumps(Settings.instance().get(key)))


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Store a setting; VALUE is parsed as JSON when possible."""
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    Settings.instance().set(key, parsed)
    click.echo(f"{key} = {json.dumps(parsed)}")


# ── service ──────────────────────────────────────────────────────────────

@main.group()
def service() -> None:
    """D-Bus service management."""


@service.command("start")
def service_start() -> None:
    """Start the D-Bus service in foreground."""
    from diskpack.dbus_service import start_service

    click.echo("Starting diskpack D-Bus service...")
    start_service()
