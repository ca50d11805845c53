"""CLI interface for archive-ingest using Typer.

This module provides the main entry point for the archive-ingest tool, with
commands for running a batch, inspecting and evicting cache entries,
sweeping expired entries, writing a default configuration and verifying the
environment.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .core.cache import CacheStore, is_logical_key
from .core.errors import CacheMissError, ConfigurationError, StoreError
from .core.events import LoggingSink, RichProgressSink
from .core.pipeline import Pipeline, PipelineResult
from .core.state import JobState
from .storage import create_backend
from .utils.config import AppConfig, get_config, load_config, save_default_config
from .utils.logging import header, setup_logging
from .utils.manifest import parse_descriptor_file
from .utils.paths import WorkdirManager

# Load .env file if present
load_dotenv()

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

app = typer.Typer(
    name="archive-ingest",
    help="Fetch remote ZIP archives and cache their entries in a key-value store.",
    add_completion=False,
)

console = Console()

WORKDIR_OPTION = typer.Option(
    Path("work"),
    "--workdir",
    "-w",
    help="Working directory for logs, reports and the local cache",
)
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Configuration file (default: <workdir>/archive-ingest.toml)",
)


def _truncate(text: str, max_length: int = 50) -> str:
    """Truncate text for display.

    Args:
        text: The text to truncate.
        max_length: Maximum length of the result.

    Returns:
        Truncated text with ellipsis if needed.
    """
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _format_state(state: JobState) -> str:
    """Format a job state with color for rich output."""
    color_map = {
        JobState.DONE: "green",
        JobState.FAILED: "red",
        JobState.CANCELLED: "yellow",
        JobState.PENDING: "white",
    }
    color = color_map.get(state, "yellow")
    return f"[{color}]{state.value}[/{color}]"


def _format_bytes(size_bytes: float) -> str:
    """Format bytes to human-readable size.

    Args:
        size_bytes: Size in bytes.

    Returns:
        Human-readable size string.
    """
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


def _load(workdir: Path, config_path: Optional[Path], create: bool = True) -> AppConfig:
    """Load the configuration, exiting with the configuration error code on failure."""
    manager = WorkdirManager(workdir)
    path = config_path or manager.config_path
    try:
        if create:
            return get_config(path)
        return load_config(path)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {path}")
        raise typer.Exit(EXIT_CONFIG)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG)


def _open_store(config: AppConfig) -> CacheStore:
    try:
        backend = create_backend(config.store)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG)
    except StoreError as e:
        console.print(f"[red]Store error:[/red] {e}")
        raise typer.Exit(EXIT_FAILURES)
    return CacheStore(backend, max_attempts=config.pipeline.store_max_attempts)


def _print_result(result: PipelineResult) -> None:
    table = Table(title="Batch Result")
    table.add_column("#", justify="right")
    table.add_column("Resource", style="cyan", no_wrap=False, max_width=50)
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Entries", justify="right")
    table.add_column("Note", max_width=40)

    for job in result.jobs:
        note = job.annotation or ""
        if job.state is JobState.FAILED:
            kind = job.error_kind.value if job.error_kind else "error"
            note = f"[red]{kind}: {_truncate(job.error or '', 30)}[/red]"
        elif job.warnings:
            note = f"[yellow]{_truncate('; '.join(job.warnings), 38)}[/yellow]"
        table.add_row(
            str(job.index),
            _truncate(job.descriptor.label),
            _format_state(job.state),
            str(job.attempts),
            str(len(job.entries)),
            note,
        )

    console.print(table)
    console.print(
        f"\n[bold]Summary:[/bold] Total: {result.total}, "
        f"[green]Succeeded: {result.succeeded}[/green], "
        f"Skipped: {result.skipped}, "
        f"[red]Failed: {result.failed}[/red], "
        f"[yellow]Cancelled: {result.cancelled_count}[/yellow], "
        f"Duration: {result.duration_seconds():.1f}s"
    )
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)


def exit_code_for(result: PipelineResult, max_failure_fraction: float = 0.0) -> int:
    """Map a batch result to the process exit code."""
    if result.cancelled:
        return EXIT_CANCELLED
    if result.failure_fraction > max_failure_fraction:
        return EXIT_FAILURES
    return EXIT_OK


@app.command()
def run(
    workdir: Path = WORKDIR_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
    resources: Optional[Path] = typer.Option(
        None,
        "--resources",
        "-r",
        help="Resource list file (one URL per line, optional hash and version)",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        "-j",
        help="Number of jobs in flight",
    ),
    max_attempts: Optional[int] = typer.Option(
        None,
        "--max-attempts",
        help="Fetch attempts per resource",
    ),
    ttl: Optional[float] = typer.Option(
        None,
        "--ttl",
        help="Time-to-live of written entries, in seconds",
    ),
    backend: Optional[str] = typer.Option(
        None,
        "--backend",
        help="Cache backend: sqlite or redis",
    ),
    token: Optional[str] = typer.Option(
        None,
        "--token",
        envvar="ARCHIVE_INGEST_TOKEN",
        help="Bearer token sent to the remote source",
    ),
    sweep: bool = typer.Option(
        False,
        "--sweep",
        help="Evict expired entries before the batch starts",
    ),
    warn_empty: bool = typer.Option(
        False,
        "--warn-empty",
        help="Accept archives without entries (with a warning) instead of failing them",
    ),
    max_failure_fraction: float = typer.Option(
        0.0,
        "--max-failure-fraction",
        min=0.0,
        max=1.0,
        help="Fraction of failed jobs tolerated before exiting with status 1",
    ),
    no_progress: bool = typer.Option(
        False,
        "--no-progress",
        help="Disable progress bars",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging",
    ),
) -> None:
    """
    Fetch, extract and cache every configured resource.
    """
    manager = WorkdirManager(workdir)
    manager.ensure_dirs()
    logger = setup_logging(manager.workdir, verbose=verbose)

    config = _load(workdir, config_path)
    pipeline_config = config.pipeline
    if concurrency is not None:
        pipeline_config.concurrency = concurrency
    if max_attempts is not None:
        pipeline_config.max_attempts = max_attempts
    if ttl is not None:
        pipeline_config.ttl = ttl
    if token:
        pipeline_config.token = token
    if sweep:
        pipeline_config.sweep_before_run = True
    if warn_empty:
        pipeline_config.empty_archive_policy = "warn"
    if backend:
        config.store.backend = backend

    descriptors = list(config.resources)
    if resources is not None:
        try:
            descriptors.extend(parse_descriptor_file(resources))
        except FileNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(EXIT_CONFIG)
        except ConfigurationError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            raise typer.Exit(EXIT_CONFIG)

    if not descriptors:
        console.print("[yellow]No resources to process.[/yellow]")
        console.print(f"Add [[resources]] to {config.path} or pass --resources.", markup=False)
        raise typer.Exit(EXIT_OK)

    logger.info(header("CONFIG", config.describe()))

    store = _open_store(config)
    try:
        if no_progress:
            with Pipeline(pipeline_config, store, sink=LoggingSink(), logger=logger) as pipeline:
                result = pipeline.run(descriptors)
        else:
            with RichProgressSink(console=console) as sink:
                with Pipeline(pipeline_config, store, sink=sink, logger=logger) as pipeline:
                    result = pipeline.run(descriptors)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG)
    finally:
        store.close()

    _print_result(result)

    report = manager.report_path(result.started_at)
    report.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    console.print(f"[dim]Report written to {report}[/dim]")

    code = exit_code_for(result, max_failure_fraction)
    if code == EXIT_CANCELLED:
        console.print("\n[yellow]Batch cancelled; unstarted resources were skipped.[/yellow]")
    elif code == EXIT_FAILURES:
        console.print("[yellow]Some resources failed. See the report for details.[/yellow]")
    else:
        console.print("[green]Batch completed.[/green]")
    raise typer.Exit(code)


@app.command()
def show(
    key: Optional[str] = typer.Argument(
        None,
        help="Entry key, or algo:digest of an archive with --manifest. Omit to list keys.",
    ),
    workdir: Path = WORKDIR_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
    manifest: bool = typer.Option(
        False,
        "--manifest",
        "-m",
        help="Treat KEY as an archive hash and list the entries it produced",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the entry payload to this file",
    ),
    prefix: str = typer.Option(
        "",
        "--prefix",
        help="Only list keys starting with this prefix",
    ),
) -> None:
    """
    Show a cache entry, an archive manifest, or the list of cached keys.
    """
    config = _load(workdir, config_path, create=False)
    store = _open_store(config)
    try:
        if key is None:
            keys = list(store.keys(prefix))
            for k in keys:
                console.print(k, highlight=False)
            console.print(f"\n[bold]{len(keys)}[/bold] key(s)")
            return

        if manifest:
            algorithm, _, digest = key.partition(":")
            if not digest:
                algorithm, digest = "sha256", algorithm
            entry_keys = store.get_manifest(algorithm, digest)
            table = Table(title=f"Manifest {algorithm}:{_truncate(digest, 16)}")
            table.add_column("#", justify="right")
            table.add_column("Name", style="cyan")
            table.add_column("Key")
            table.add_column("Size", justify="right")
            for index, entry_key in enumerate(entry_keys):
                try:
                    entry = store.get(entry_key)
                    table.add_row(str(index), entry.name or "", entry_key, _format_bytes(entry.size))
                except CacheMissError:
                    table.add_row(str(index), "", entry_key, "[red]missing[/red]")
            console.print(table)
            return

        entry = store.get(key)
        table = Table(title="Cache Entry", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for name, value in entry.metadata().items():
            table.add_row(name, "" if value is None else str(value))
        table.add_row("expired", str(entry.is_expired()))
        console.print(table)

        if output is not None:
            output.write_bytes(entry.payload)
            console.print(f"[green]Wrote {_format_bytes(entry.size)} to {output}[/green]")
    except CacheMissError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_FAILURES)
    except StoreError as e:
        console.print(f"[red]Store error:[/red] {e}")
        raise typer.Exit(EXIT_FAILURES)
    finally:
        store.close()


@app.command()
def evict(
    keys: List[str] = typer.Argument(..., help="Keys to evict"),
    workdir: Path = WORKDIR_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Evict without confirmation",
    ),
) -> None:
    """
    Remove entries from the cache.
    """
    config = _load(workdir, config_path, create=False)

    if not force:
        confirm = typer.confirm(f"Evict {len(keys)} key(s)? This cannot be undone.")
        if not confirm:
            console.print("[yellow]Cancelled.[/yellow]")
            raise typer.Exit(EXIT_OK)

    store = _open_store(config)
    missing = 0
    try:
        for key in keys:
            if store.evict(key):
                console.print(f"[green]Evicted:[/green] {key}")
            else:
                missing += 1
                kind = "logical key" if is_logical_key(key) else "key"
                console.print(f"[yellow]Not found ({kind}):[/yellow] {key}")
    except StoreError as e:
        console.print(f"[red]Store error:[/red] {e}")
        raise typer.Exit(EXIT_FAILURES)
    finally:
        store.close()

    if missing:
        raise typer.Exit(EXIT_FAILURES)


@app.command("sweep")
def sweep_command(
    workdir: Path = WORKDIR_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Evict every entry whose TTL has elapsed.
    """
    config = _load(workdir, config_path, create=False)
    store = _open_store(config)
    try:
        evicted = store.sweep()
    except StoreError as e:
        console.print(f"[red]Store error:[/red] {e}")
        raise typer.Exit(EXIT_FAILURES)
    finally:
        store.close()
    console.print(f"[bold green]Evicted {evicted} expired entr{'y' if evicted == 1 else 'ies'}[/bold green]")


@app.command("init-config")
def init_config(
    workdir: Path = WORKDIR_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing file",
    ),
) -> None:
    """
    Write the default configuration file.
    """
    path = config_path or WorkdirManager(workdir).config_path
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(EXIT_FAILURES)
    save_default_config(path)
    console.print(f"[green]Configuration written to {path}[/green]")


@app.command()
def check(
    workdir: Path = WORKDIR_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Check system dependencies and configuration.

    Verifies:
    - Python version
    - Required packages
    - Configuration file
    - Cache backend connectivity
    """
    table = Table(title="System Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Details")

    all_ok = True

    # Python version
    py_version = sys.version_info
    py_ok = py_version >= (3, 11)
    table.add_row(
        "Python",
        "[green]OK[/green]" if py_ok else "[red]FAIL[/red]",
        f"{py_version.major}.{py_version.minor}.{py_version.micro}",
    )
    if not py_ok:
        all_ok = False

    # Required packages
    packages = {"typer": "typer", "rich": "rich", "python-dotenv": "dotenv",
                "requests": "requests", "redis": "redis"}
    for pkg, module in packages.items():
        try:
            __import__(module)
            table.add_row(f"Package: {pkg}", "[green]OK[/green]", "Installed")
        except ImportError:
            table.add_row(f"Package: {pkg}", "[red]FAIL[/red]", "Not installed")
            all_ok = False

    # Configuration
    path = config_path or WorkdirManager(workdir).config_path
    config: Optional[AppConfig] = None
    if not path.exists():
        table.add_row("Config", "[yellow]WARN[/yellow]", f"{path} missing, defaults apply")
        config = AppConfig()
        config.store.path = WorkdirManager(workdir).cache_db_path
    else:
        try:
            config = load_config(path)
            table.add_row("Config", "[green]OK[/green]", f"{path} ({len(config.resources)} resources)")
        except ConfigurationError as e:
            table.add_row("Config", "[red]FAIL[/red]", str(e))
            all_ok = False

    # Backend
    if config is not None:
        try:
            backend = create_backend(config.store)
            try:
                backend.ping()
            finally:
                backend.close()
            table.add_row(f"Backend: {config.store.backend}", "[green]OK[/green]", repr(backend))
        except (ConfigurationError, StoreError) as e:
            table.add_row(f"Backend: {config.store.backend}", "[red]FAIL[/red]", str(e))
            all_ok = False

    if config is not None and config.pipeline.token:
        table.add_row("ARCHIVE_INGEST_TOKEN", "[green]OK[/green]", "Set")

    console.print(table)

    if all_ok:
        console.print("\n[bold green]All checks passed![/bold green]")
    else:
        console.print("\n[bold yellow]Some checks failed.[/bold yellow]")
        raise typer.Exit(EXIT_FAILURES)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
