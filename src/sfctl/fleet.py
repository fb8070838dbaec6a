"""Fleet orchestrator: run one drush command against every factory site.

Sites are processed strictly one after another. Drush resolves the target
site, its connection and its working directory per process from ``--uri``, so
invocations are never overlapped. A failing site is reported and the sweep
moves on; nothing a single site does aborts the run.

With ``total_time_limit`` set, whole passes are repeated until the deadline has
elapsed. The deadline is only checked between passes, so a pass that is in
progress always completes. A pass that invoked no site ends the run, and
consecutive passes start at least ``MIN_PASS_INTERVAL`` seconds apart.
"""
from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from rich.console import Console
from rich.markup import escape

from .logging import OperationScope
from .operations import OperationDescriptor
from .providers.drush import DelegateBackend
from .reports import FleetReport, OutcomeStatus, SiteOutcome, record_outcome
from .sites import ProfileResolver, SiteDescriptor, SiteSet

HTTPS_SCHEME = "https://"
UNREADABLE_PROFILE_POLICIES = ("include", "exclude")
MIN_PASS_INTERVAL = 1.0


@dataclass(frozen=True, slots=True)
class SweepConfig:
    """Filtering, throttling and repetition settings for one sweep."""

    delay: float = 0.0
    total_time_limit: float = 0.0
    profiles: frozenset[str] = frozenset()
    use_https: bool = False
    unreadable_profile: str = "include"

    def __post_init__(self) -> None:
        """Validate numeric bounds and normalise the profile set."""
        if self.delay < 0:
            raise ValueError(f"delay must be non-negative. Got {self.delay}.")
        if self.total_time_limit < 0:
            raise ValueError(
                f"total_time_limit must be non-negative. Got {self.total_time_limit}."
            )
        if self.unreadable_profile not in UNREADABLE_PROFILE_POLICIES:
            raise ValueError(
                f"Unsupported unreadable_profile policy '{self.unreadable_profile}'."
            )
        object.__setattr__(self, "profiles", frozenset(self.profiles))


def routing_address(site: SiteDescriptor, *, use_https: bool) -> str:
    """Return the ``--uri`` value for *site*."""
    domain = site.routing_domain
    if use_https and not domain.startswith(HTTPS_SCHEME):
        return f"{HTTPS_SCHEME}{domain}"
    return domain


class FleetOrchestrator:
    """Drive a filtered, throttled, optionally repeated sweep over a SiteSet."""

    def __init__(
        self,
        delegate: DelegateBackend,
        console: Console,
        *,
        alias: str = "@self",
        profiles: ProfileResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the orchestrator to its delegate backend and output console."""
        self._delegate = delegate
        self._console = console
        self._alias = alias
        self._profiles = profiles or ProfileResolver()
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        site_set: SiteSet,
        operation: OperationDescriptor,
        sweep: SweepConfig,
        *,
        op: OperationScope | None = None,
    ) -> FleetReport:
        """Apply *operation* to every eligible site of *site_set*."""
        report = FleetReport(command=operation.command)
        sites = list(site_set.values())
        if not sites:
            return report

        deadline: float | None = None
        if sweep.total_time_limit > 0:
            deadline = self._clock() + sweep.total_time_limit

        while True:
            started = self._clock()
            pass_number = report.start_pass()
            # Per-site steps are only kept for the first pass; later passes
            # are summarised in a single step each.
            invoked = self._run_pass(
                sites, operation, sweep, report, op if pass_number == 1 else None
            )
            if op is not None and pass_number > 1:
                self._record_pass(report, op)
            if deadline is None or self._clock() >= deadline:
                break
            if invoked == 0:
                self._console.print(
                    "\n=> No site was eligible for the command; not repeating the pass."
                )
                break
            idle = MIN_PASS_INTERVAL - (self._clock() - started)
            if idle > 0:
                self._sleep(min(idle, deadline - self._clock()))
                if self._clock() >= deadline:
                    break
        return report

    # ------------------------------------------------------------------
    def _run_pass(
        self,
        sites: Sequence[SiteDescriptor],
        operation: OperationDescriptor,
        sweep: SweepConfig,
        report: FleetReport,
        op: OperationScope | None,
    ) -> int:
        invoked = 0
        last_index = len(sites) - 1
        for index, site in enumerate(sites):
            address = routing_address(site, use_https=sweep.use_https)
            if not self._eligible(site, address, sweep, report, op):
                continue

            self._console.print(f"\n=> Running command on {address}")
            descriptor = operation.for_site({"uri": address})
            result = self._delegate.invoke(self._alias, descriptor, site=site.name)
            invoked += 1

            if result.ok:
                output = result.stdout.rstrip()
                if output:
                    self._console.print(output, markup=False, highlight=False)
                record_outcome(
                    report,
                    op,
                    SiteOutcome(
                        site=site.name,
                        address=address,
                        status=OutcomeStatus.SUCCEEDED,
                        pass_number=report.passes,
                    ),
                )
            else:
                self._console.print(
                    f"\n[red]=> The command failed to execute for the site {address}.[/red]"
                )
                record_outcome(
                    report,
                    op,
                    SiteOutcome(
                        site=site.name,
                        address=address,
                        status=OutcomeStatus.FAILED,
                        step=operation.command,
                        detail=result.failure_reason,
                        pass_number=report.passes,
                    ),
                )

            if sweep.delay > 0 and index < last_index:
                self._console.print(
                    f"\n=> Sleeping for {sweep.delay:g} seconds before running command "
                    "on next site."
                )
                self._sleep(sweep.delay)
        return invoked

    @staticmethod
    def _record_pass(report: FleetReport, op: OperationScope) -> None:
        counts = {status: 0 for status in OutcomeStatus}
        for outcome in report.outcomes:
            counts[outcome.status] += 1
        failed = counts[OutcomeStatus.FAILED]
        op.add_step(
            f"fleet.pass.{report.passes}",
            status="failed" if failed else "success",
            detail=(
                f"{counts[OutcomeStatus.SUCCEEDED]} succeeded, {failed} failed, "
                f"{counts[OutcomeStatus.SKIPPED]} skipped"
            ),
        )

    def _eligible(
        self,
        site: SiteDescriptor,
        address: str,
        sweep: SweepConfig,
        report: FleetReport,
        op: OperationScope | None,
    ) -> bool:
        if not sweep.profiles:
            return True

        lookup = self._profiles.resolve(site)
        if not lookup.readable:
            source = escape(str(lookup.source)) if lookup.source else "settings"
            if sweep.unreadable_profile == "include":
                self._console.print(
                    f"\n[yellow]=> Could not read install profile for {address} from "
                    f"{source}; running without profile filtering.[/yellow]"
                )
                if op is not None:
                    op.add_step(
                        f"fleet.{site.name}.profile",
                        status="warning",
                        detail="profile-unreadable",
                    )
                return True
            self._console.print(f"\n=> Skipping command on {address}")
            record_outcome(
                report,
                op,
                SiteOutcome(
                    site=site.name,
                    address=address,
                    status=OutcomeStatus.SKIPPED,
                    detail="profile-unreadable",
                    pass_number=report.passes,
                ),
            )
            return False

        if lookup.profile is None or lookup.profile in sweep.profiles:
            return True

        self._console.print(f"\n=> Skipping command on {address}")
        record_outcome(
            report,
            op,
            SiteOutcome(
                site=site.name,
                address=address,
                status=OutcomeStatus.SKIPPED,
                detail=f"profile:{lookup.profile}",
                pass_number=report.passes,
            ),
        )
        return False


__all__ = ["FleetOrchestrator", "SweepConfig", "routing_address"]
