"""Command line interface for bucketdock."""

from __future__ import annotations

import difflib
import logging
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional

import click
import yaml
from click.core import ParameterSource
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.syntax import Syntax
from rich.table import Table

from bucketdock.cache import CacheError, CacheNotReadyError
from bucketdock.config import (
    BucketDockConfig,
    ConfigError,
    ConfigManager,
    flatten_for_env,
    resolve_profile,
    resolve_with_precedence,
)
from bucketdock.config.models import LoggingSettings
from bucketdock.download import FINISHED_STATUSES, DownloadError
from bucketdock.events import SYNC_PHASE, SYNC_PROGRESS, Event, SyncPhaseEvent, SyncProgressEvent
from bucketdock.providers import CredentialError, MoveOperation, ProviderError, StorageConfig, get_adapter
from bucketdock.sync import SyncError
from bucketdock.transfer import MoveProgressTracker, MoveTask, SpeedEstimator, TransferError
from bucketdock.upload import UploadError, get_folder_files
from bucketdock.workspace import Workspace

console = Console()
LOGGER = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Most specific first.
_ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (ConfigError, "config_error"),
    (CredentialError, "credential_error"),
    (ProviderError, "provider_error"),
    (CacheNotReadyError, "cache_not_ready"),
    (CacheError, "cache_error"),
    (SyncError, "sync_error"),
    (TransferError, "transfer_error"),
    (UploadError, "upload_error"),
    (DownloadError, "download_error"),
)


def _handle_cli_error(
    message: str,
    *,
    code: str,
    json_output: bool,
    details: Any | None = None,
    original: Exception | None = None,
) -> None:
    """Emit a standardized error and terminate the command appropriately.

    Args:
        message: Human-readable error message.
        code: Machine-readable error identifier.
        json_output: Indicates whether JSON mode is active.
        details: Optional structured details to include in the payload.
        original: Original exception for chaining when not using JSON.

    Raises:
        SystemExit: When emitting JSON output to terminate the command.
        click.ClickException: For non-JSON flows to surface the error.
    """

    if json_output:
        payload: dict[str, Any] = {"error": {"code": code, "message": message}}
        if details is not None:
            payload["error"]["details"] = details
        console.print_json(data=payload)
        raise SystemExit(1)

    if isinstance(original, click.ClickException):
        raise original

    raise click.ClickException(message) from original


def _emit_message(message: Any, *, mode: str, quiet: bool, summary_only: bool) -> None:
    """Conditionally print CLI output according to quiet/summary settings.

    Args:
        message: Renderable or string to emit.
        mode: Output mode identifier (`detail`, `summary`, `warning`, or `error`).
        quiet: Whether quiet mode is active.
        summary_only: Whether only summary lines should be emitted.
    """

    if quiet and mode != "error":
        return

    important_modes = {"summary", "warning", "error"}
    if summary_only and mode not in important_modes:
        return

    console.print(message)


def _format_summary_line(command: str, target: str, metrics: dict[str, Any]) -> str:
    parts = ", ".join(f"{key}={value}" for key, value in metrics.items())
    return f"[green]{command} summary for {target}: {parts}.[/green]"


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _assign_nested(target: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a nested value within a dictionary for a dotted path.

    Raises:
        ConfigError: If a non-mapping value is encountered along the path.
    """

    node = target
    for segment in path[:-1]:
        existing = node.get(segment)
        if existing is None:
            existing = {}
            node[segment] = existing
        elif not isinstance(existing, dict):
            raise ConfigError(
                f"Cannot assign into '{segment}' because it is not a mapping in the config file."
            )
        node = existing
    node[path[-1]] = value


def _configure_logging(settings: LoggingSettings) -> None:
    """Install stderr (and optional rotating file) handlers on the package logger."""
    logger = logging.getLogger("bucketdock")
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.WARNING
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, "_bucketdock", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(_LOG_FORMAT)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream]
    if settings.file:
        path = Path(settings.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            path, maxBytes=settings.max_size_mb * 1024 * 1024, backupCount=settings.backup_count
        )
        rotating.setFormatter(formatter)
        handlers.append(rotating)
    for handler in handlers:
        handler._bucketdock = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def _output_modes(
    ctx: click.Context, config: BucketDockConfig, *, quiet: bool, summary_mode: bool, json_output: bool
) -> tuple[bool, bool]:
    explicit_quiet = ctx.get_parameter_source("quiet") == ParameterSource.COMMANDLINE
    explicit_summary = ctx.get_parameter_source("summary_mode") == ParameterSource.COMMANDLINE

    quiet_enabled = quiet if explicit_quiet else config.cli.quiet_default
    summary_only = summary_mode if explicit_summary else config.cli.summary_default

    if json_output:
        if explicit_quiet and quiet_enabled:
            raise click.ClickException("--json cannot be combined with --quiet.")
        if explicit_summary and summary_only:
            raise click.ClickException("--json cannot be combined with --summary.")
        return False, False

    if quiet_enabled and summary_only:
        raise click.ClickException(
            "Quiet and summary modes cannot both be enabled. Adjust CLI defaults or flags."
        )
    return quiet_enabled, summary_only


def _load_config() -> BucketDockConfig:
    manager = ConfigManager()
    manager.ensure_exists()
    config = manager.load()
    _configure_logging(config.logging)
    return config


@contextmanager
def _workspace(ctx: click.Context, *, json_output: bool) -> Iterator[tuple[Workspace, StorageConfig]]:
    """Open the workspace and selected profile, translating domain errors for the CLI."""
    workspace: Optional[Workspace] = None
    try:
        config = _load_config()
        profile = resolve_profile(config, ctx.obj.get("profile") if ctx.obj else None)
        profile.validate_credentials()
        workspace = Workspace.from_config(config, adapter_factory=get_adapter)
        yield workspace, profile
    except click.ClickException:
        raise
    except tuple(exc_type for exc_type, _ in _ERROR_CODES) as exc:
        code = next(name for exc_type, name in _ERROR_CODES if isinstance(exc, exc_type))
        _handle_cli_error(str(exc), code=code, json_output=json_output, original=exc)
    finally:
        if workspace is not None:
            workspace.close()


def _other_profile(name: str, *, json_output: bool) -> StorageConfig:
    try:
        config = _load_config()
        profile = resolve_profile(config, name)
        profile.validate_credentials()
    except (ConfigError, CredentialError) as exc:
        _handle_cli_error(str(exc), code="config_error", json_output=json_output, original=exc)
        raise
    return profile


def _move_rows(tasks: list[MoveTask]) -> Table:
    table = Table(title="Move tasks")
    table.add_column("ID")
    table.add_column("Source")
    table.add_column("Destination")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Error")
    for task in tasks:
        table.add_row(
            task.id,
            task.source_key,
            f"{task.dest_bucket}/{task.dest_key}",
            task.status.value,
            f"{task.progress}%",
            task.error or task.cleanup_error or "",
        )
    return table


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="bucketdock")
@click.option("--profile", "-p", type=str, help="Storage profile from the config file.")
@click.pass_context
def cli(ctx: click.Context, profile: Optional[str]) -> None:
    """bucketdock syncs, caches, and moves objects across S3-compatible storage."""
    ctx.ensure_object(dict)
    ctx.obj["profile"] = profile


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit bucket names as JSON.")
@click.pass_context
def buckets(ctx: click.Context, json_output: bool) -> None:
    """List buckets visible to the selected profile's credentials."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        items = workspace.list_buckets(profile)
        if json_output:
            console.print_json(data={"buckets": [bucket.model_dump(mode="json") for bucket in items]})
            return
        table = Table(title=f"Buckets ({profile.provider})")
        table.add_column("Name")
        table.add_column("Created")
        for bucket in items:
            created = bucket.creation_date.isoformat() if bucket.creation_date else ""
            table.add_row(bucket.name, created)
        console.print(table)


@cli.command("ls")
@click.argument("prefix", required=False, default="")
@click.option("--remote", is_flag=True, help="List straight from the provider instead of the cache.")
@click.option("--json", "json_output", is_flag=True, help="Emit folder contents as JSON.")
@click.pass_context
def ls_command(ctx: click.Context, prefix: str, remote: bool, json_output: bool) -> None:
    """List folders and files directly under PREFIX."""
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        if remote:
            page = workspace.list_objects(profile, prefix)
            folders = page.folders
            files = [(obj.key, obj.size, obj.last_modified) for obj in page.objects]
        else:
            contents = workspace.get_folder_contents(profile, prefix)
            folders = contents.folders
            files = [(item.key, item.size, item.last_modified) for item in contents.files]

        if json_output:
            console.print_json(
                data={
                    "prefix": prefix,
                    "folders": folders,
                    "files": [{"key": key, "size": size, "last_modified": modified} for key, size, modified in files],
                }
            )
            return

        table = Table(title=f"{profile.bucket}/{prefix}")
        table.add_column("Name")
        table.add_column("Size", justify="right")
        table.add_column("Modified")
        for folder in folders:
            table.add_row(f"[bold]{folder[len(prefix):]}[/bold]", "", "")
        for key, size, modified in files:
            table.add_row(key[len(prefix):], _format_size(size), modified)
        console.print(table)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit the sync result as JSON.")
@click.option("--summary", "summary_mode", is_flag=True, help="Only emit summary lines.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def sync(ctx: click.Context, json_output: bool, summary_mode: bool, quiet: bool) -> None:
    """Refresh the local cache of the selected bucket."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        quiet_enabled, summary_only = _output_modes(
            ctx, workspace.config, quiet=quiet, summary_mode=summary_mode, json_output=json_output
        )
        last_count = {"value": 0}

        def _on_event(name: str, payload: Event) -> None:
            if isinstance(payload, SyncPhaseEvent):
                _emit_message(
                    f"[cyan]{payload.phase}[/cyan]", mode="detail", quiet=quiet_enabled or json_output,
                    summary_only=summary_only,
                )
            elif isinstance(payload, SyncProgressEvent):
                last_count["value"] = payload.count

        unsubscribe = [
            workspace.events.subscribe(SYNC_PHASE, _on_event),
            workspace.events.subscribe(SYNC_PROGRESS, _on_event),
        ]
        try:
            result = workspace.sync_bucket(profile)
        finally:
            for handle in unsubscribe:
                handle()

        if json_output:
            console.print_json(data=result.model_dump(mode="json"))
            return
        _emit_message(
            _format_summary_line("Sync", f"{profile.account_id}/{profile.bucket}", {"objects": result.count}),
            mode="summary",
            quiet=quiet_enabled,
            summary_only=summary_only,
        )


@cli.command()
@click.argument("query")
@click.option("--limit", type=int, default=50, show_default=True, help="Maximum results to show.")
@click.option("--json", "json_output", is_flag=True, help="Emit matches as JSON.")
@click.pass_context
def search(ctx: click.Context, query: str, limit: int, json_output: bool) -> None:
    """Search cached keys; every whitespace-separated term must match."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        result = workspace.search_cached_files(profile, query, limit=limit)
        if json_output:
            console.print_json(data=result.model_dump(mode="json"))
            return
        table = Table(title=f"{result.total_count} matches for '{query}'")
        table.add_column("Key")
        table.add_column("Size", justify="right")
        for item in result.files:
            table.add_row(item.key, _format_size(item.size))
        console.print(table)


@cli.command()
@click.argument("prefix", required=False, default="")
@click.option("--json", "json_output", is_flag=True, help="Emit the size as JSON.")
@click.pass_context
def du(ctx: click.Context, prefix: str, json_output: bool) -> None:
    """Show the total cached size of objects under PREFIX."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        total = workspace.calculate_folder_size(profile, prefix)
        if json_output:
            console.print_json(data={"prefix": prefix, "size": total})
            return
        console.print(f"{_format_size(total)}\t{prefix or '/'}")


@cli.command()
@click.argument("keys", nargs=-1, required=True)
@click.option("--json", "json_output", is_flag=True, help="Emit the batch result as JSON.")
@click.pass_context
def rm(ctx: click.Context, keys: tuple[str, ...], json_output: bool) -> None:
    """Delete KEYS from the selected bucket."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        result = workspace.batch_delete_objects(profile, keys)
        if json_output:
            console.print_json(data=result.model_dump(mode="json"))
            return
        console.print(
            _format_summary_line("Delete", profile.bucket, {"deleted": result.deleted, "failed": result.failed})
        )
        for error in result.errors:
            console.print(f"[red]- {error}[/red]")


@cli.command()
@click.argument("old_key")
@click.argument("new_key")
@click.pass_context
def mv(ctx: click.Context, old_key: str, new_key: str) -> None:
    """Rename OLD_KEY to NEW_KEY inside the selected bucket."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        workspace.rename_object(profile, old_key, new_key)
        console.print(f"[green]Renamed {old_key} -> {new_key}.[/green]")


@cli.command()
@click.argument("key")
@click.option("--expires", type=int, default=3600, show_default=True, help="Signed URL lifetime in seconds.")
@click.option("--public", "public_url", is_flag=True, help="Print the public URL instead of a signed one.")
@click.pass_context
def url(ctx: click.Context, key: str, expires: int, public_url: bool) -> None:
    """Print a download URL for KEY."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        if public_url:
            click.echo(workspace.build_public_url(profile, key))
        else:
            click.echo(workspace.generate_signed_url(profile, key, expires))


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--key", type=str, help="Destination key for a single file.")
@click.option("--prefix", type=str, default="", help="Key prefix for uploaded files.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def upload(ctx: click.Context, path: Path, key: Optional[str], prefix: str, quiet: bool) -> None:
    """Upload a file or every file under a folder."""
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    if path.is_dir():
        if key:
            raise click.ClickException("--key only applies to single-file uploads; use --prefix.")
        items = [(item.path, f"{prefix}{path.name}/{item.relative_key}") for item in get_folder_files(path)]
    else:
        items = [(path, key or f"{prefix}{path.name}")]

    with _workspace(ctx, json_output=False) as (workspace, profile):
        uploaded = 0
        for source, target in items:
            result = workspace.upload_file(profile, source, target)
            uploaded += 1
            resumed = f" (resumed {result.resumed_parts} parts)" if result.resumed_parts else ""
            _emit_message(
                f"Uploaded {source} -> {target}{resumed}", mode="detail", quiet=quiet, summary_only=False
            )
        _emit_message(
            _format_summary_line("Upload", profile.bucket, {"files": uploaded}),
            mode="summary",
            quiet=quiet,
            summary_only=False,
        )


@cli.group()
def move() -> None:
    """Queue and control moves between storage profiles."""


@move.command("add")
@click.argument("keys", nargs=-1, required=True)
@click.option("--to", "dest_profile", required=True, help="Destination profile.")
@click.option("--dest-prefix", default="", help="Prefix prepended to destination keys.")
@click.option("--delete-original", is_flag=True, help="Delete each source after its copy lands.")
@click.pass_context
def move_add(
    ctx: click.Context, keys: tuple[str, ...], dest_profile: str, dest_prefix: str, delete_original: bool
) -> None:
    """Queue KEYS for moving to another profile's bucket."""
    dest = _other_profile(dest_profile, json_output=False)
    with _workspace(ctx, json_output=False) as (workspace, profile):
        operations = [MoveOperation(old_key=key, new_key=f"{dest_prefix}{key}") for key in keys]
        tasks = workspace.enqueue_moves(profile, dest, operations, delete_original=delete_original)
        console.print(f"[green]Queued {len(tasks)} moves to {dest.bucket}.[/green]")


@move.command("start")
@click.option("--to", "dest_profile", required=True, help="Destination profile.")
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Stay attached until the queue drains; detached runs pause in-flight moves on exit.",
)
@click.option("--timeout", type=float, help="Give up waiting after this many seconds.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def move_start(
    ctx: click.Context, dest_profile: str, wait: bool, timeout: Optional[float], quiet: bool
) -> None:
    """Process pending moves of the selected profile."""
    dest = _other_profile(dest_profile, json_output=False)
    with _workspace(ctx, json_output=False) as (workspace, profile):
        settings = workspace.config.progress
        tracker = MoveProgressTracker(
            throttle_ms=settings.throttle_ms,
            speed_estimator=SpeedEstimator(
                window=settings.speed_window_seconds,
                min_span=settings.speed_min_span_seconds,
                alpha=settings.speed_alpha,
                spike_factor=settings.speed_spike_factor,
                decay_after=settings.speed_decay_seconds,
            ),
            loader=workspace.moves.get_move_tasks,
        )
        tracker.load(workspace.get_move_tasks(profile))
        detach = tracker.attach(workspace.events)
        tracker.start()
        workspace.start_move_queue(profile, dest)
        if not wait:
            detach()
            tracker.stop()
            console.print("[yellow]Move queue started without waiting.[/yellow]")
            return

        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            with Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                console=console,
                disable=quiet,
                transient=True,
            ) as progress:
                bar = progress.add_task("Moving", total=len(tracker.tasks()))
                while not workspace.moves.wait_idle(profile.bucket, profile.account_id, timeout=0.25):
                    speed = _format_size(int(tracker.total_speed()))
                    progress.update(
                        bar,
                        completed=tracker.finished_count(),
                        total=len(tracker.tasks()),
                        description=f"Moving ({tracker.active_count()} active, {speed}/s)",
                    )
                    if deadline is not None and time.monotonic() >= deadline:
                        break
        finally:
            detach()
            tracker.stop()

        tasks = workspace.get_move_tasks(profile)
        counts: dict[str, int] = {}
        for task in tasks:
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        _emit_message(
            _format_summary_line("Move", f"{profile.bucket} -> {dest.bucket}", counts or {"tasks": 0}),
            mode="summary",
            quiet=quiet,
            summary_only=False,
        )
        for task in tasks:
            if task.error:
                _emit_message(f"[red]- {task.source_key}: {task.error}[/red]", mode="error", quiet=quiet,
                              summary_only=False)


@move.command("list")
@click.option("--json", "json_output", is_flag=True, help="Emit tasks as JSON.")
@click.pass_context
def move_list(ctx: click.Context, json_output: bool) -> None:
    """Show move tasks queued from the selected profile."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        tasks = workspace.get_move_tasks(profile)
        if json_output:
            console.print_json(data={"tasks": [task.model_dump(mode="json") for task in tasks]})
            return
        console.print(_move_rows(tasks))


@move.command("pause")
@click.argument("task_id", required=False)
@click.pass_context
def move_pause(ctx: click.Context, task_id: Optional[str]) -> None:
    """Pause TASK_ID, or every pending move of the selected profile."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        if task_id:
            if workspace.moves.pause_move(task_id):
                console.print(f"[green]Paused {task_id}.[/green]")
            else:
                console.print(f"[yellow]{task_id} cannot be paused in its current state.[/yellow]")
            return
        ids = workspace.pause_all_moves(profile)
        console.print(f"[green]Paused {len(ids)} pending moves.[/green]")


@move.command("resume")
@click.argument("task_id", required=False)
@click.pass_context
def move_resume(ctx: click.Context, task_id: Optional[str]) -> None:
    """Requeue TASK_ID (paused or failed), or every paused move."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        if task_id:
            task = workspace.resume_move(task_id)
            console.print(f"[green]{task.id} is {task.status.value}.[/green]")
            return
        ids = workspace.resume_all_moves(profile)
        console.print(f"[green]Resumed {len(ids)} moves.[/green]")


@move.command("cancel")
@click.argument("task_id")
@click.pass_context
def move_cancel(ctx: click.Context, task_id: str) -> None:
    """Cancel TASK_ID and abort its partial upload."""
    with _workspace(ctx, json_output=False) as (workspace, _):
        if workspace.moves.cancel_move(task_id):
            console.print(f"[green]Cancelled {task_id}.[/green]")
        else:
            console.print(f"[yellow]{task_id} has already finished.[/yellow]")


@move.command("clear")
@click.option("--all", "clear_all", is_flag=True, help="Remove every task, not only finished ones.")
@click.pass_context
def move_clear(ctx: click.Context, clear_all: bool) -> None:
    """Remove finished move tasks of the selected profile."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        if clear_all:
            ids = workspace.clear_all_moves(profile)
        else:
            ids = workspace.clear_finished_moves(profile)
        console.print(f"[green]Removed {len(ids)} move tasks.[/green]")


@cli.group()
def download() -> None:
    """Queue and control downloads to local folders."""


@download.command("add")
@click.argument("keys", nargs=-1, required=True)
@click.option(
    "--dest",
    "dest_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Local folder the files are written to.",
)
@click.pass_context
def download_add(ctx: click.Context, keys: tuple[str, ...], dest_dir: Path) -> None:
    """Queue KEYS for download into DEST."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        for key in keys:
            workspace.create_download_task(profile, key, str(dest_dir.expanduser().resolve()))
        console.print(f"[green]Queued {len(keys)} downloads to {dest_dir}.[/green]")


@download.command("start")
@click.option("--wait/--no-wait", default=True, show_default=True, help="Stay attached until the queue drains.")
@click.option("--timeout", type=float, help="Give up waiting after this many seconds.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def download_start(ctx: click.Context, wait: bool, timeout: Optional[float], quiet: bool) -> None:
    """Process pending and paused downloads of the selected profile."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        workspace.start_all_downloads(profile)
        if not wait:
            console.print("[yellow]Download queue started without waiting.[/yellow]")
            return
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
            disable=quiet,
            transient=True,
        ) as progress:
            deadline = None if timeout is None else time.monotonic() + timeout
            bar = progress.add_task("Downloading", total=len(workspace.get_download_tasks(profile)))
            while not workspace.downloads.wait_idle(profile.bucket, profile.account_id, timeout=0.25):
                tasks = workspace.get_download_tasks(profile)
                done = sum(1 for task in tasks if task.status in FINISHED_STATUSES)
                progress.update(bar, completed=done, total=len(tasks))
                if deadline is not None and time.monotonic() >= deadline:
                    break

        tasks = workspace.get_download_tasks(profile)
        counts: dict[str, int] = {}
        for task in tasks:
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        _emit_message(
            _format_summary_line("Download", profile.bucket, counts or {"tasks": 0}),
            mode="summary",
            quiet=quiet,
            summary_only=False,
        )
        for task in tasks:
            if task.error:
                _emit_message(f"[red]- {task.object_key}: {task.error}[/red]", mode="error", quiet=quiet,
                              summary_only=False)


@download.command("list")
@click.option("--json", "json_output", is_flag=True, help="Emit tasks as JSON.")
@click.pass_context
def download_list(ctx: click.Context, json_output: bool) -> None:
    """Show download tasks of the selected profile."""
    with _workspace(ctx, json_output=json_output) as (workspace, profile):
        tasks = workspace.get_download_tasks(profile)
        if json_output:
            console.print_json(data={"tasks": [task.model_dump(mode="json") for task in tasks]})
            return
        table = Table(title="Download tasks")
        table.add_column("ID")
        table.add_column("Key")
        table.add_column("Destination")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Error")
        for task in tasks:
            table.add_row(
                task.id,
                task.object_key,
                str(task.destination),
                task.status.value,
                f"{task.progress}%",
                task.error or "",
            )
        console.print(table)


@download.command("pause")
@click.argument("task_id", required=False)
@click.pass_context
def download_pause(ctx: click.Context, task_id: Optional[str]) -> None:
    """Pause TASK_ID, or every queued and running download."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        if task_id:
            if workspace.pause_download(task_id):
                console.print(f"[green]Paused {task_id}.[/green]")
            else:
                console.print(f"[yellow]{task_id} cannot be paused in its current state.[/yellow]")
            return
        ids = workspace.pause_all_downloads(profile)
        console.print(f"[green]Paused {len(ids)} downloads.[/green]")


@download.command("resume")
@click.argument("task_id")
@click.pass_context
def download_resume(ctx: click.Context, task_id: str) -> None:
    """Requeue TASK_ID (paused, failed or cancelled)."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        task = workspace.resume_download(profile, task_id)
        console.print(f"[green]{task.id} is {task.status.value}.[/green]")


@download.command("cancel")
@click.argument("task_id")
@click.pass_context
def download_cancel(ctx: click.Context, task_id: str) -> None:
    """Cancel TASK_ID and remove its partial file."""
    with _workspace(ctx, json_output=False) as (workspace, _):
        if workspace.cancel_download(task_id):
            console.print(f"[green]Cancelled {task_id}.[/green]")
        else:
            console.print(f"[yellow]{task_id} has already finished.[/yellow]")


@download.command("clear")
@click.option("--all", "clear_all", is_flag=True, help="Remove every task, not only finished ones.")
@click.pass_context
def download_clear(ctx: click.Context, clear_all: bool) -> None:
    """Remove finished download tasks of the selected profile."""
    with _workspace(ctx, json_output=False) as (workspace, profile):
        if clear_all:
            ids = workspace.clear_all_downloads(profile)
        else:
            ids = workspace.clear_finished_downloads(profile)
        console.print(f"[green]Removed {len(ids)} download tasks.[/green]")


@cli.group()
def sessions() -> None:
    """Inspect resumable multipart upload sessions."""


@sessions.command("list")
@click.option("--json", "json_output", is_flag=True, help="Emit sessions as JSON.")
@click.pass_context
def sessions_list(ctx: click.Context, json_output: bool) -> None:
    """Show unfinished upload sessions."""
    with _workspace(ctx, json_output=json_output) as (workspace, _):
        store = workspace.uploads.sessions
        pending = store.get_pending_sessions()
        if json_output:
            console.print_json(data={"sessions": [session.model_dump(mode="json") for session in pending]})
            return
        table = Table(title="Upload sessions")
        table.add_column("ID")
        table.add_column("File")
        table.add_column("Key")
        table.add_column("Parts", justify="right")
        table.add_column("Status")
        for session in pending:
            done, total = store.get_session_progress(session.id)
            table.add_row(session.id, session.file_path, session.object_key, f"{done}/{total}", session.status.value)
        console.print(table)


@sessions.command("clean")
@click.option("--days", type=int, help="Age threshold in days (defaults to upload.session_max_age_days).")
@click.pass_context
def sessions_clean(ctx: click.Context, days: Optional[int]) -> None:
    """Delete finished upload sessions older than the age threshold."""
    with _workspace(ctx, json_output=False) as (workspace, _):
        removed = workspace.uploads.cleanup_old_sessions(days)
        console.print(f"[green]Removed {removed} upload sessions.[/green]")


@cli.group()
def config() -> None:
    """Manage bucketdock configuration files and overrides."""


@config.command("view")
@click.option("--no-env", is_flag=True, help="Ignore environment overrides when displaying output.")
@click.option("--env", "as_env", is_flag=True, help="Show BUCKETDOCK__ environment variable form.")
def config_view(no_env: bool, as_env: bool) -> None:
    """Display the effective configuration after applying precedence rules.

    Raises:
        click.ClickException: If configuration cannot be loaded.
    """
    manager = ConfigManager()
    try:
        manager.ensure_exists()
        loaded = manager.load(include_env=not no_env)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_env:
        for name, value in flatten_for_env(loaded).items():
            click.echo(f"{name}={value}")
        return

    data = loaded.model_dump(mode="json")
    for profile in data.get("profiles", {}).values():
        for secret in ("secret_access_key", "api_token"):
            if profile.get(secret):
                profile[secret] = "***"
    yaml_text = yaml.safe_dump(data, sort_keys=False)
    console.print(Syntax(yaml_text, "yaml", word_wrap=True))


@config.command("set")
@click.argument("key")
@click.option("--value", required=True, help="Value to assign to KEY.")
def config_set(key: str, value: str) -> None:
    """Persist a configuration value expressed as a dotted KEY.

    Raises:
        click.ClickException: If parsing, assignment, or validation fails.
    """
    manager = ConfigManager()
    manager.ensure_exists()

    before = manager.read_text().splitlines()
    segments = [segment.strip() for segment in key.split(".") if segment.strip()]
    if not segments:
        raise click.ClickException("KEY must specify a dotted path such as 'transfer.max_concurrent_moves'.")

    try:
        parsed_value = yaml.safe_load(value)
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Unable to parse value: {exc}") from exc

    try:
        file_data = manager.load_file_overrides()
        _assign_nested(file_data, segments, parsed_value)
        resolve_with_precedence(defaults=BucketDockConfig(), file_overrides=file_data)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(file_data)
    after = manager.read_text().splitlines()

    diff = list(
        difflib.unified_diff(
            before,
            after,
            fromfile="config.yaml (before)",
            tofile="config.yaml (after)",
            lineterm="",
        )
    )
    # The timestamp line always changes.
    if not any(
        line.startswith(("+", "-")) and not line.startswith(("+++", "---", "+# Last updated", "-# Last updated"))
        for line in diff
    ):
        console.print("[yellow]No changes applied; value already up to date.[/yellow]")
        return

    console.print(Syntax("\n".join(diff), "diff", word_wrap=False))
    console.print(f"[green]Updated {'.'.join(segments)}.[/green]")


@config.command("edit")
def config_edit() -> None:
    """Open the configuration file in an interactive editor session.

    Raises:
        click.ClickException: If edited content is invalid or cannot be saved.
    """
    manager = ConfigManager()
    manager.ensure_exists()

    original = manager.read_text()
    edited = click.edit(original, extension=".yaml")

    if edited is None:
        console.print("[yellow]Edit cancelled; no changes applied.[/yellow]")
        return

    if edited == original:
        console.print("[yellow]No changes detected.[/yellow]")
        return

    try:
        parsed = yaml.safe_load(edited) or {}
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Invalid YAML: {exc}") from exc

    if not isinstance(parsed, dict):
        raise click.ClickException("Configuration file must contain a top-level mapping.")

    try:
        resolve_with_precedence(defaults=BucketDockConfig(), file_overrides=parsed)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(parsed)
    console.print("[green]Configuration updated successfully.[/green]")


def main() -> None:
    """Invoke the Click CLI as the console script entry point."""
    cli()


if __name__ == "__main__":
    main()
