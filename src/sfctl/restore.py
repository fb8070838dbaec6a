"""Fleet database restores.

Every site is restored from ``<source_folder>/<prefix>.sql[.gz]`` through a
strictly ordered sequence; a step only runs once its predecessor succeeded::

    source-check -> decompress (gzip only) -> sql-connect -> sql-drop -> load

Compressed dumps are expanded into a private temporary file that is removed
when the site is done, whichever step stopped it.
"""
from __future__ import annotations

import json
import os
import shlex
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from .logging import OperationScope
from .operations import OperationDescriptor
from .providers.drush import DelegateBackend
from .reports import FleetReport, OutcomeStatus, SiteOutcome, record_outcome
from .sites import SiteDescriptor, SiteSet

CONNECT_COMMAND = "sql-connect"
DROP_COMMAND = "sql-drop"


class RestoreError(RuntimeError):
    """Raised when a restore run cannot start."""


class RestoreStep(str, Enum):
    """Per-site restore steps that can stop a site, in execution order."""

    SOURCE = "source-check"
    DECOMPRESS = "decompress"
    CONNECT = "sql-connect"
    DROP = "sql-drop"
    LOAD = "load"


@dataclass(frozen=True, slots=True)
class RestoreJob:
    """Where a fleet restore reads its dumps from."""

    source_folder_root: Path
    compressed: bool = False

    def __post_init__(self) -> None:
        """Normalise the source folder path."""
        object.__setattr__(self, "source_folder_root", Path(self.source_folder_root).expanduser())

    def source_path(self, site: SiteDescriptor) -> Path:
        """Return the dump file restored into *site*."""
        name = f"{site.prefix}.sql.gz" if self.compressed else f"{site.prefix}.sql"
        return self.source_folder_root / name


class StepFailed(Exception):
    """A restore step failed for one site; the site is abandoned."""

    def __init__(self, step: RestoreStep, message: str, reason: str | None = None) -> None:
        """Record the failing step and its operator-facing message."""
        super().__init__(message)
        self.step = step
        self.message = message
        self.reason = reason


def parse_connection(output: str) -> str | None:
    """Extract the database client command from ``sql-connect`` output.

    Drush prints either the bare client command or, when asked for structured
    output, a JSON object carrying it under ``object``.
    """
    text = output.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        return lines[-1] if lines else None
    if isinstance(payload, Mapping):
        value = payload.get("object")
        if not value:
            return None
        return str(value).strip() or None
    if isinstance(payload, str):
        return payload.strip() or None
    return None


class RestorePipeline:
    """Drop and reload every site's database from a dump folder."""

    def __init__(
        self,
        delegate: DelegateBackend,
        console: Console,
        *,
        alias: str = "@self",
        temp_dir: Path | None = None,
    ) -> None:
        """Bind the pipeline to its delegate backend and output console."""
        self._delegate = delegate
        self._console = console
        self._alias = alias
        self._temp_dir = temp_dir

    def validate(self, job: RestoreJob) -> None:
        """Fail fast when the source folder is missing."""
        if not job.source_folder_root.is_dir():
            raise RestoreError(f"Source folder {job.source_folder_root} does not exist.")

    def run(
        self,
        site_set: SiteSet,
        job: RestoreJob,
        *,
        op: OperationScope | None = None,
    ) -> FleetReport:
        """Restore every site of *site_set* from *job*'s folder."""
        self.validate(job)
        report = FleetReport(command="restore", passes=1)

        for site in site_set.values():
            domain = site.primary_domain
            try:
                self._restore_site(site, job)
            except StepFailed as failure:
                self._console.print(f"\n[red]=> {escape(failure.message)}[/red]")
                record_outcome(
                    report,
                    op,
                    SiteOutcome(
                        site=site.name,
                        address=domain,
                        status=OutcomeStatus.FAILED,
                        step=failure.step.value,
                        detail=failure.reason,
                    ),
                    scope="restore",
                )
                continue

            self._console.print(f"\n=> Dropping and restoring database on {domain} completed.")
            record_outcome(
                report,
                op,
                SiteOutcome(
                    site=site.name,
                    address=domain,
                    status=OutcomeStatus.SUCCEEDED,
                    detail=str(job.source_path(site)),
                ),
                scope="restore",
            )
        return report

    # ------------------------------------------------------------------
    def _restore_site(self, site: SiteDescriptor, job: RestoreJob) -> None:
        source = job.source_path(site)
        if not source.is_file():
            raise StepFailed(
                RestoreStep.SOURCE,
                f"No source file {source} for {site.prefix} site.",
            )

        with self._dump_file(site, source, compressed=job.compressed) as dump:
            domain = site.primary_domain
            self._console.print(f"\n=> Restoring the database on the domain {domain}.")
            connection = self._connect(site)
            self._drop(site)
            self._load(site, connection, dump)

    @contextmanager
    def _dump_file(
        self,
        site: SiteDescriptor,
        source: Path,
        *,
        compressed: bool,
    ) -> Iterator[Path]:
        if not compressed:
            yield source
            return

        fd, name = tempfile.mkstemp(
            prefix=f"sfctl-{site.prefix}-",
            suffix=".sql",
            dir=str(self._temp_dir) if self._temp_dir is not None else None,
        )
        os.close(fd)
        temp_path = Path(name)
        try:
            command = f"gunzip -c {shlex.quote(str(source))} > {shlex.quote(str(temp_path))}"
            result = self._delegate.shell(command, site=site.name)
            if not result.ok:
                raise StepFailed(
                    RestoreStep.DECOMPRESS,
                    f"The command gunzip failed to execute for the site {site.primary_domain}.",
                    result.failure_reason,
                )
            yield temp_path
        finally:
            self._cleanup(temp_path, site)

    def _cleanup(self, path: Path, site: SiteDescriptor) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            self._console.print(
                f"\n[yellow]=> Could not remove temporary dump {escape(str(path))} "
                f"for the site {site.primary_domain}: {escape(str(exc))}[/yellow]"
            )

    def _connect(self, site: SiteDescriptor) -> str:
        domain = site.primary_domain
        descriptor = OperationDescriptor(CONNECT_COMMAND).for_site({"uri": domain})
        result = self._delegate.invoke(self._alias, descriptor, site=site.name)
        if not result.ok:
            raise StepFailed(
                RestoreStep.CONNECT,
                f"The sql-connect command failed to execute for the site {domain}.",
                result.failure_reason,
            )
        connection = parse_connection(result.stdout)
        if connection is None:
            raise StepFailed(
                RestoreStep.CONNECT,
                f"The sql-connect command returned no connection for the site {domain}.",
            )
        return connection

    def _drop(self, site: SiteDescriptor) -> None:
        domain = site.primary_domain
        descriptor = OperationDescriptor(DROP_COMMAND).for_site({"uri": domain, "yes": True})
        result = self._delegate.invoke(self._alias, descriptor, site=site.name)
        if not result.ok:
            raise StepFailed(
                RestoreStep.DROP,
                f"The sql-drop command failed to execute for the site {domain}.",
                result.failure_reason,
            )

    def _load(self, site: SiteDescriptor, connection: str, dump: Path) -> None:
        result = self._delegate.shell(f"{connection} < {shlex.quote(str(dump))}", site=site.name)
        if not result.ok:
            raise StepFailed(
                RestoreStep.LOAD,
                f"The command failed to execute for the site {site.primary_domain}.",
                result.failure_reason,
            )


__all__ = [
    "RestoreError",
    "RestoreJob",
    "RestorePipeline",
    "RestoreStep",
    "StepFailed",
    "parse_connection",
]
