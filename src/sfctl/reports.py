"""Per-site outcomes aggregated over a fleet run."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .logging import OperationScope


class OutcomeStatus(str, Enum):
    """What happened to one site during a pass."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class SiteOutcome:
    """Outcome of processing one site."""

    site: str
    address: str
    status: OutcomeStatus
    step: str | None = None
    detail: str | None = None
    pass_number: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "site": self.site,
            "address": self.address,
            "status": self.status.value,
            "pass": self.pass_number,
        }
        if self.step is not None:
            payload["step"] = self.step
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class FleetReport:
    """Outcomes of a fleet run.

    Totals cover every pass; ``outcomes`` only holds the latest pass so a long
    time-boxed run keeps a bounded record.
    """

    command: str
    passes: int = 0
    outcomes: list[SiteOutcome] = field(default_factory=list)
    totals: dict[OutcomeStatus, int] = field(
        default_factory=lambda: dict.fromkeys(OutcomeStatus, 0)
    )
    _failed: dict[str, None] = field(default_factory=dict, repr=False)

    def start_pass(self) -> int:
        """Begin a new pass, dropping the previous pass's outcomes."""
        self.passes += 1
        self.outcomes = []
        return self.passes

    def record(self, outcome: SiteOutcome) -> SiteOutcome:
        """Append *outcome* and return it."""
        self.outcomes.append(outcome)
        self.totals[outcome.status] += 1
        if outcome.status is OutcomeStatus.FAILED:
            self._failed.setdefault(outcome.site, None)
        return outcome

    def _count(self, status: OutcomeStatus) -> int:
        return self.totals[status]

    @property
    def succeeded(self) -> int:
        """Number of successful site runs."""
        return self._count(OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        """Number of failed site runs."""
        return self._count(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> int:
        """Number of skipped site runs."""
        return self._count(OutcomeStatus.SKIPPED)

    def failed_sites(self) -> list[str]:
        """Return the names of sites that failed in any pass, once each."""
        return list(self._failed)

    def summary(self) -> str:
        """Return a one-line human summary."""
        return (
            f"{self.succeeded} succeeded, {self.failed} failed, {self.skipped} skipped "
            f"over {self.passes} pass{'es' if self.passes != 1 else ''}"
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "command": self.command,
            "passes": self.passes,
            "totals": {
                "succeeded": self.succeeded,
                "failed": self.failed,
                "skipped": self.skipped,
            },
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


_STEP_STATUS = {
    OutcomeStatus.SUCCEEDED: "success",
    OutcomeStatus.FAILED: "failed",
    OutcomeStatus.SKIPPED: "skipped",
}


def record_outcome(
    report: FleetReport,
    op: OperationScope | None,
    outcome: SiteOutcome,
    *,
    scope: str = "fleet",
) -> SiteOutcome:
    """Add *outcome* to *report* and mirror it as an operation step."""
    report.record(outcome)
    if op is not None:
        detail = outcome.address
        if outcome.step is not None:
            detail = f"{detail}:{outcome.step}"
        if outcome.detail is not None:
            detail = f"{detail}:{outcome.detail}"
        op.add_step(f"{scope}.{outcome.site}", status=_STEP_STATUS[outcome.status], detail=detail)
    return outcome


__all__ = ["FleetReport", "OutcomeStatus", "SiteOutcome", "record_outcome"]
