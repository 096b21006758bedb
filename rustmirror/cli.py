"""Thin CLI wrapper for rustmirror.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from rustmirror import __version__
from rustmirror.config import (
    CONFIG_FILENAME,
    CONFIG_TEMPLATE,
    ConfigError,
    Settings,
    get_settings,
    load_settings,
    print_settings_json,
)

app = typer.Typer(
    name="rustmirror",
    help="rustmirror - mirror rustup and crates.io for offline use",
    no_args_is_help=True,
)
console = Console()

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Route log records through rich at the given level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rustmirror version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """rustmirror - mirror rustup and crates.io for offline use."""


def _load(path: Path, **overrides: Any) -> Settings:
    """Load mirror settings or exit with a readable error."""
    try:
        return load_settings(path.resolve(), **overrides)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None


@contextmanager
def shutdown_on_signals(shutdown: threading.Event) -> Iterator[None]:
    """Set shutdown on SIGINT/SIGTERM; a second SIGINT interrupts immediately."""

    def handler(signum: int, _frame: object) -> None:
        if shutdown.is_set() and signum == signal.SIGINT:
            raise KeyboardInterrupt
        logger.warning("Stopping after in-flight downloads (signal %d)", signum)
        shutdown.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@app.command()
def init(
    path: Annotated[Path, typer.Argument(help="Mirror directory to create")],
) -> None:
    """Create a mirror directory with a default mirror.toml."""
    from rustmirror.db import open_session_factory

    config_file = path / CONFIG_FILENAME
    if config_file.exists():
        console.print(f"[yellow]{config_file} already exists[/yellow]")
        raise typer.Exit(code=1)

    path.mkdir(parents=True, exist_ok=True)
    config_file.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    settings = _load(path)
    open_session_factory(settings.db_url)

    console.print(f"[green]✓ Initialized mirror at {path}[/green]")
    console.print(f"  Edit {config_file}, then run: rustmirror sync {path}")


def _print_outcome(outcome: Any) -> None:
    table = Table(title="Sync summary")
    table.add_column("Syncer")
    table.add_column("Downloaded", justify="right")
    table.add_column("Present", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Status")
    for report in outcome.reports:
        if report.cancelled:
            state = "[yellow]cancelled[/yellow]"
        elif report.aborted:
            state = f"[red]aborted: {report.aborted}[/red]"
        elif report.failed:
            state = "[red]incomplete[/red]"
        else:
            state = "[green]ok[/green]"
        table.add_row(
            report.name,
            str(report.downloaded),
            str(report.already_present),
            str(len(report.failed)),
            state,
        )
    console.print(table)

    for report in outcome.reports:
        for item in report.failed:
            console.print(f"  [red]✗[/red] {report.name}: {item.identifier}: {item.reason}")

    prune_report = outcome.prune
    if prune_report is not None:
        if prune_report.skipped:
            console.print(f"Prune skipped: {prune_report.skipped}")
        else:
            verb = "Would delete" if prune_report.dry_run else "Deleted"
            console.print(
                f"{verb} {len(prune_report.deleted)} of {prune_report.scanned} files"
            )
            for item in prune_report.errors:
                console.print(f"  [yellow]Could not delete {item.identifier}: {item.reason}[/yellow]")


@app.command()
def sync(
    path: Annotated[Path, typer.Argument(help="Mirror directory")],
    vendor_dir: Annotated[
        Path | None,
        typer.Argument(help="cargo vendor directory restricting crate archives"),
    ] = None,
    dry_run_prune: Annotated[
        bool,
        typer.Option("--dry-run-prune", help="Report what pruning would delete"),
    ] = False,
    no_prune: Annotated[
        bool,
        typer.Option("--no-prune", help="Do not delete unreferenced files"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output summary as JSON"),
    ] = False,
) -> None:
    """Synchronize the mirror with upstream."""
    from rich.progress import Progress, SpinnerColumn, TextColumn

    from rustmirror.fetch.progress import ProgressCounter, ProgressSnapshot
    from rustmirror.sync import SyncLockedError, run_sync

    settings = _load(path)
    configure_logging(settings.log_level)
    shutdown = threading.Event()

    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        console=Console(stderr=True),
        transient=True,
        disable=json_output,
    ) as progress_display:
        task = progress_display.add_task("Syncing", total=None)

        def on_progress(snap: ProgressSnapshot) -> None:
            progress_display.update(
                task,
                description=(
                    f"{snap.downloaded} downloaded, {snap.already_present} present, "
                    f"{snap.failed} failed, {snap.bytes_downloaded / 1_048_576:.1f} MiB"
                ),
            )

        try:
            with shutdown_on_signals(shutdown):
                outcome = run_sync(
                    settings,
                    scope_dir=vendor_dir,
                    prune_files=False if no_prune else None,
                    dry_run_prune=dry_run_prune,
                    shutdown=shutdown,
                    progress=ProgressCounter(on_progress),
                )
        except (ConfigError, SyncLockedError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(data=outcome.to_dict())
    else:
        _print_outcome(outcome)

    if not outcome.ok:
        raise typer.Exit(code=1)


@app.command()
def serve(
    path: Annotated[Path, typer.Argument(help="Mirror directory")],
    host: Annotated[str, typer.Option("--host", help="Address to bind")] = "0.0.0.0",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on")] = 8080,
    cert_file: Annotated[
        Path | None,
        typer.Option("--cert-file", help="TLS certificate (PEM)"),
    ] = None,
    key_file: Annotated[
        Path | None,
        typer.Option("--key-file", help="TLS private key (PEM)"),
    ] = None,
) -> None:
    """Serve the mirror over HTTP(S)."""
    import uvicorn

    from web.app import create_app

    if (cert_file is None) != (key_file is None):
        console.print("[red]--cert-file and --key-file must be given together[/red]")
        raise typer.Exit(code=1)

    settings = _load(path)
    if not settings.mirror_path.is_dir():
        console.print(f"[red]Mirror directory {settings.mirror_path} does not exist[/red]")
        raise typer.Exit(code=1)
    configure_logging(settings.log_level)

    uvicorn.run(
        create_app(settings),
        host=host,
        port=port,
        ssl_certfile=str(cert_file) if cert_file else None,
        ssl_keyfile=str(key_file) if key_file else None,
        log_config=None,
    )


@app.command()
def status(
    path: Annotated[Path, typer.Argument(help="Mirror directory")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show recent sync runs and mirrored releases."""
    from rustmirror.status import mirror_status

    settings = _load(path)
    if not settings.mirror_path.is_dir():
        console.print(f"[red]Mirror directory {settings.mirror_path} does not exist[/red]")
        raise typer.Exit(code=1)
    info = mirror_status(settings)

    if json_output:
        console.print_json(data=info)
        return

    console.print(f"[bold]Mirror:[/bold] {settings.mirror_path}")
    index = info["index"]
    if index:
        console.print(f"  Index: {index['cursor'][:12]} (updated {index['updated_at']})")
    else:
        console.print("  Index: [yellow]never synced[/yellow]")

    if info["channels"]:
        console.print()
        console.print("[bold]Channels:[/bold]")
        for release in info["channels"]:
            console.print(
                f"  {release['channel']:<10} {release['date']}  ({release['files']} files)"
            )

    console.print()
    if not info["runs"]:
        console.print("[yellow]No sync runs recorded[/yellow]")
        return
    console.print("[bold]Recent sync runs:[/bold]")
    for run in info["runs"]:
        color = {
            "succeeded": "green",
            "failed": "red",
            "running": "blue",
            "cancelled": "yellow",
        }.get(run["status"], "white")
        scoped = " (scoped)" if run["scoped"] else ""
        console.print(
            f"  [{color}]#{run['id']} {run['status']}[/{color}] "
            f"started {run['started_at']}{scoped}"
        )


@app.command()
def config(
    path: Annotated[
        Path | None,
        typer.Argument(help="Mirror directory (reads its mirror.toml)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load(path) if path is not None else get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Mirror directory:    {settings.mirror_path}")
    console.print(f"  Base URL:            {settings.base_url or '(not set)'}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Network:[/bold]")
    console.print(f"  Concurrency:         {settings.concurrency}")
    console.print(f"  Retries:             {settings.retries}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Verify existing:     {settings.verify_existing}")
    console.print()
    console.print("[bold]Rustup:[/bold]")
    console.print(f"  Enabled:             {settings.rustup_enabled}")
    console.print(f"  Source:              {settings.rustup_source}")
    console.print(f"  Unix platforms:      {len(settings.unix_platforms)}")
    console.print(f"  Windows platforms:   {len(settings.windows_platforms)}")
    console.print(
        "  Keep latest:         "
        f"stable={settings.keep_latest_stables} beta={settings.keep_latest_betas} "
        f"nightly={settings.keep_latest_nightlies}"
    )
    console.print()
    console.print("[bold]Crates:[/bold]")
    console.print(f"  Enabled:             {settings.crates_enabled}")
    console.print(f"  Index:               {settings.crates_source_index}")
    console.print(f"  Archives:            {settings.crates_source}")


if __name__ == "__main__":
    app()
