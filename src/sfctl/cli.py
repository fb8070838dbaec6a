"""Typer-powered command line interface for ``sfctl``.

Each fleet command follows the same shape: build the runtime context, open a
structured operation scope, take the fleet lock, capture a snapshot of the
factory's sites, and hand the snapshot to the orchestrator or a pipeline.
Per-site failures are reported in the running commentary and the operation
log; only set-up problems (configuration, registry, lock, destination
folders) change the exit code.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupJob, BackupPipeline
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .fleet import FleetOrchestrator, SweepConfig
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .operations import (
    OperationDescriptor,
    parse_command_args,
    parse_command_options,
    parse_profiles,
)
from .providers import DelegateBackend, DrushProvider
from .reports import FleetReport
from .restore import RestoreError, RestoreJob, RestorePipeline
from .sites import ProfileResolver, SiteRegistry, SiteRegistryError, SiteSet, SitesJsonRegistry

console = Console()

T = TypeVar("T")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sfctl's YAML config file.",
)

PROFILES_OPTION = typer.Option(
    None,
    "--profiles",
    metavar="PROFILE[,PROFILE...]",
    help="Only target sites installed with one of these profiles (comma list).",
)
DELAY_OPTION = typer.Option(
    None,
    "--delay",
    min=0,
    help="Seconds to wait between sites.",
)
TOTAL_TIME_LIMIT_OPTION = typer.Option(
    None,
    "--total-time-limit",
    min=0,
    help="Repeat full passes over the fleet until this many seconds have elapsed.",
)
USE_HTTPS_OPTION = typer.Option(
    None,
    "--use-https/--no-use-https",
    help="Use https:// URIs so Drupal builds secure base URLs.",
)

RESULT_FOLDER_OPTION = typer.Option(
    None,
    "--result-folder",
    dir_okay=True,
    file_okay=False,
    help="Folder receiving the dumps (defaults to backups.root).",
)
SOURCE_FOLDER_OPTION = typer.Option(
    None,
    "--source-folder",
    dir_okay=True,
    file_okay=False,
    help="Folder holding the dumps to restore (defaults to backups.root).",
)
GZIP_OPTION = typer.Option(
    None,
    "--gzip/--no-gzip",
    help="Write or read gzip-compressed dumps.",
)
DUMP_OPTION_OPTION = typer.Option(
    None,
    "--dump-option",
    metavar="KEY[=VALUE]",
    help="Extra option passed to sql-dump (repeatable).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt and proceed non-interactively.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Site Factory fleet operations.

        Run a drush command, dump databases, or restore databases across every
        site of the factory from a single invocation.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    registry: SiteRegistry
    delegate: DelegateBackend
    profiles: ProfileResolver


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        registry=SitesJsonRegistry(config.factory.sites_json),
        delegate=DrushProvider(drush_bin=config.drush.bin, shell_bin=config.drush.shell),
        profiles=ProfileResolver(config.factory.docroot),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sfctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override fleet lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"sfctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(op: OperationScope, message: str, *, rc: int = ExitCode.VALIDATION) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, rc=int(rc))
    raise typer.Exit(code=int(rc))


def _cancelled(op: OperationScope, label: str) -> None:
    console.print(f"[yellow]{label} cancelled.[/yellow]")
    op.warning(f"{label} cancelled by operator.", warnings=["user-cancelled"], changed=0)


def _confirm(prompt: str, *, yes: bool) -> bool:
    return yes or typer.confirm(prompt, default=False)


def _snapshot_sites(runtime: RuntimeContext, op: OperationScope) -> SiteSet:
    try:
        site_set = SiteSet.snapshot(runtime.registry)
    except SiteRegistryError as exc:
        _command_error(
            op,
            f"Failed to retrieve the list of sites of the factory: {exc}",
            rc=ExitCode.ENVIRONMENT,
        )
    op.add_step("registry.snapshot", status="success", detail=f"{len(site_set)} sites")
    return site_set


def _with_fleet_lock(
    runtime: RuntimeContext,
    op: OperationScope,
    body: Callable[[], T],
) -> T:
    try:
        with runtime.locks.fleet_lock() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            return body()
    except LockError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _finish_report(op: OperationScope, report: FleetReport, *, label: str) -> None:
    console.print(f"\n{label}: {report.summary()}")
    context = {"report": report.to_dict()}
    if report.failed:
        op.warning(
            f"{label} completed with failures.",
            warnings=[f"failed:{name}" for name in report.failed_sites()],
            changed=report.succeeded,
            context=context,
        )
        return
    op.success(f"{label} completed.", changed=report.succeeded, context=context)


@app.command("run-on-fleet")
def run_on_fleet(
    ctx: typer.Context,
    cmd: str = typer.Argument(..., help="The drush command to run against every site."),
    command_args: str = typer.Argument(
        "",
        help="Quoted, space delimited arguments for the drush command.",
    ),
    command_options: str = typer.Argument(
        "",
        help="Quoted, space delimited options, e.g. \"'format=json' 'interactive-mode'\".",
    ),
    profiles: str | None = PROFILES_OPTION,
    delay: float | None = DELAY_OPTION,
    total_time_limit: float | None = TOTAL_TIME_LIMIT_OPTION,
    use_https: bool | None = USE_HTTPS_OPTION,
) -> None:
    """Run a drush command against all the sites of the factory."""
    runtime = _get_runtime(ctx)
    defaults = runtime.config.fleet
    args = {
        "cmd": cmd,
        "command_args": command_args,
        "command_options": command_options,
        "profiles": profiles,
        "delay": delay,
        "total_time_limit": total_time_limit,
        "use_https": use_https,
    }
    with runtime.logger.operation(
        "run-on-fleet",
        args=args,
        target={"kind": "fleet", "command": cmd},
    ) as op:
        try:
            operation = OperationDescriptor(
                cmd,
                parse_command_args(command_args),
                parse_command_options(command_options),
            )
            sweep = SweepConfig(
                delay=defaults.delay if delay is None else delay,
                total_time_limit=(
                    defaults.total_time_limit if total_time_limit is None else total_time_limit
                ),
                profiles=parse_profiles(profiles),
                use_https=defaults.use_https if use_https is None else use_https,
                unreadable_profile=defaults.unreadable_profile,
            )
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        orchestrator = FleetOrchestrator(
            runtime.delegate,
            console,
            alias=runtime.config.drush.alias,
            profiles=runtime.profiles,
        )

        def _sweep() -> FleetReport:
            site_set = _snapshot_sites(runtime, op)
            return orchestrator.run(site_set, operation, sweep, op=op)

        report = _with_fleet_lock(runtime, op, _sweep)
        _finish_report(op, report, label=f"Command '{cmd}'")


@app.command("backup-fleet")
def backup_fleet(
    ctx: typer.Context,
    result_folder: Path | None = RESULT_FOLDER_OPTION,
    gzip: bool | None = GZIP_OPTION,
    dump_option: list[str] | None = DUMP_OPTION_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Make a database dump for each site of the factory."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.backups
    folder = (result_folder or settings.root).expanduser()
    compressed = settings.gzip if gzip is None else gzip
    args = {
        "result_folder": str(folder),
        "gzip": compressed,
        "dump_option": list(dump_option or []),
    }
    with runtime.logger.operation(
        "backup-fleet",
        args=args,
        target={"kind": "fleet", "command": "sql-dump"},
    ) as op:
        try:
            job = BackupJob.for_date(
                folder,
                bucket_format=settings.bucket_format,
                compressed=compressed,
                dump_options=parse_command_options(dump_option or []),
            )
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if not _confirm(
            f"Dump the database of every factory site into {job.bucket_dir}?",
            yes=yes,
        ):
            _cancelled(op, "Backup")
            return

        pipeline = BackupPipeline(runtime.delegate, console, alias=runtime.config.drush.alias)

        def _backup() -> FleetReport:
            site_set = _snapshot_sites(runtime, op)
            try:
                return pipeline.run(site_set, job, op=op)
            except BackupError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        report = _with_fleet_lock(runtime, op, _backup)
        _finish_report(op, report, label="Backup")


@app.command("restore-fleet")
def restore_fleet(
    ctx: typer.Context,
    source_folder: Path | None = SOURCE_FOLDER_OPTION,
    gzip: bool | None = GZIP_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Drop and restore the database of each site from a dump folder."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.backups
    folder = (source_folder or settings.root).expanduser()
    compressed = settings.gzip if gzip is None else gzip
    args = {"source_folder": str(folder), "gzip": compressed}
    with runtime.logger.operation(
        "restore-fleet",
        args=args,
        target={"kind": "fleet", "command": "restore"},
    ) as op:
        if not _confirm(
            f"Drop and restore the database of every factory site from {folder}?",
            yes=yes,
        ):
            _cancelled(op, "Restore")
            return

        job = RestoreJob(folder, compressed=compressed)
        pipeline = RestorePipeline(runtime.delegate, console, alias=runtime.config.drush.alias)
        try:
            pipeline.validate(job)
        except RestoreError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        def _restore() -> FleetReport:
            site_set = _snapshot_sites(runtime, op)
            try:
                return pipeline.run(site_set, job, op=op)
            except RestoreError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        report = _with_fleet_lock(runtime, op, _restore)
        _finish_report(op, report, label="Restore")


app.command("ml", hidden=True)(run_on_fleet)
app.command("dump", hidden=True)(backup_fleet)
app.command("restore", hidden=True)(restore_fleet)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["RuntimeContext", "app"]
