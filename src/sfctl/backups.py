"""Fleet database dumps.

Each site is dumped with ``drush sql-dump`` into a date bucket::

    <result_folder>/<YYYYMMDD>/<prefix>.sql[.gz]

The bucket is day-granular by default, so a second run on the same day
overwrites that day's dumps. ``backups.bucket_format`` may include a time
component (``%Y%m%d-%H%M%S``) to keep every run separately.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from types import MappingProxyType

from rich.console import Console

from .logging import OperationScope
from .operations import OperationDescriptor, OptionValue
from .providers.drush import DelegateBackend
from .reports import FleetReport, OutcomeStatus, SiteOutcome, record_outcome
from .sites import SiteDescriptor, SiteSet

DUMP_COMMAND = "sql-dump"
DEFAULT_BUCKET_FORMAT = "%Y%m%d"


class BackupError(RuntimeError):
    """Raised when backup destinations cannot be prepared."""


@dataclass(frozen=True, slots=True)
class BackupJob:
    """Where and how one fleet dump run writes its files."""

    result_folder_root: Path
    date_bucket: str
    compressed: bool = False
    dump_options: Mapping[str, OptionValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Normalise the root path and freeze extra dump options."""
        object.__setattr__(self, "result_folder_root", Path(self.result_folder_root).expanduser())
        object.__setattr__(self, "dump_options", MappingProxyType(dict(self.dump_options)))
        if not self.date_bucket or "/" in self.date_bucket:
            raise ValueError(f"Invalid backup bucket name: {self.date_bucket!r}")

    @classmethod
    def for_date(
        cls,
        result_folder_root: Path,
        *,
        when: date | datetime | None = None,
        bucket_format: str = DEFAULT_BUCKET_FORMAT,
        compressed: bool = False,
        dump_options: Mapping[str, OptionValue] | None = None,
    ) -> BackupJob:
        """Build a job whose bucket is derived from *when* (default: now)."""
        moment = when or datetime.now()
        return cls(
            result_folder_root=result_folder_root,
            date_bucket=moment.strftime(bucket_format),
            compressed=compressed,
            dump_options=dump_options or {},
        )

    @property
    def bucket_dir(self) -> Path:
        """Return the folder holding this run's dumps."""
        return self.result_folder_root / self.date_bucket

    def dump_path(self, site: SiteDescriptor) -> Path:
        """Return the ``--result-file`` passed to drush for *site*."""
        return self.bucket_dir / f"{site.prefix}.sql"

    def artifact_path(self, site: SiteDescriptor) -> Path:
        """Return the file drush actually writes for *site*."""
        path = self.dump_path(site)
        return path.with_name(f"{path.name}.gz") if self.compressed else path


class BackupPipeline:
    """Dump every site of a SiteSet, isolating per-site failures."""

    def __init__(
        self,
        delegate: DelegateBackend,
        console: Console,
        *,
        alias: str = "@self",
    ) -> None:
        """Bind the pipeline to its delegate backend and output console."""
        self._delegate = delegate
        self._console = console
        self._alias = alias

    def ensure_destination(self, job: BackupJob) -> Path:
        """Create the bucket folder if needed and return it."""
        try:
            job.bucket_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup folder {job.bucket_dir}: {exc}") from exc
        return job.bucket_dir

    def run(
        self,
        site_set: SiteSet,
        job: BackupJob,
        *,
        op: OperationScope | None = None,
    ) -> FleetReport:
        """Dump each site into *job*'s bucket."""
        report = FleetReport(command=DUMP_COMMAND, passes=1)
        base = OperationDescriptor(DUMP_COMMAND, options=job.dump_options)

        for site in site_set.values():
            domain = site.primary_domain
            self.ensure_destination(job)
            descriptor = base.for_site(
                {
                    "uri": domain,
                    "result-file": str(job.dump_path(site)),
                    "gzip": job.compressed,
                }
            )

            self._console.print(f"\n=> Running {DUMP_COMMAND} on {domain}")
            result = self._delegate.invoke(self._alias, descriptor, site=site.name)
            if not result.ok:
                self._console.print(
                    f"\n[red]=> The command failed to execute for the site {domain}.[/red]"
                )
                record_outcome(
                    report,
                    op,
                    SiteOutcome(
                        site=site.name,
                        address=domain,
                        status=OutcomeStatus.FAILED,
                        step=DUMP_COMMAND,
                        detail=result.failure_reason,
                    ),
                    scope="backup",
                )
                continue

            artifact = job.artifact_path(site)
            self._console.print(f"\n=> DB dump for the site {domain} completed successfully.")
            record_outcome(
                report,
                op,
                SiteOutcome(
                    site=site.name,
                    address=domain,
                    status=OutcomeStatus.SUCCEEDED,
                    detail=str(artifact),
                ),
                scope="backup",
            )
        return report


__all__ = ["BackupError", "BackupJob", "BackupPipeline", "DUMP_COMMAND"]
