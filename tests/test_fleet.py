"""Tests for the fleet orchestrator."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import RecordingDelegate, console_text
from rich.console import Console

from sfctl.fleet import FleetOrchestrator, SweepConfig, routing_address
from sfctl.logging import StructuredLogger
from sfctl.operations import ExecutionResult, OperationDescriptor
from sfctl.reports import OutcomeStatus
from sfctl.sites import ProfileResolver, SiteDescriptor, SiteSet


class FakeClock:
    """Monotonic clock advanced by fake sleeps and delegate calls."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _site(name: str, *domains: str) -> SiteDescriptor:
    return SiteDescriptor(id=name, name=name, domains=domains)


def _fleet() -> SiteSet:
    return SiteSet(
        [
            _site("g1", "abc.acme.acsitefactory.com", "www.abc.com"),
            _site("g2", "def.acme.acsitefactory.com"),
            _site("g3", "ghi.acme.acsitefactory.com", "ghi.org"),
        ]
    )


def _write_profile(resolver: ProfileResolver, site: SiteDescriptor, profile: str) -> None:
    path = resolver.settings_path(site)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"$settings['install_profile'] = '{profile}';\n", encoding="utf-8")


def _uris(delegate: RecordingDelegate) -> list[str]:
    return [str(operation.options["uri"]) for operation in delegate.invocations]


def test_sweep_visits_sites_in_snapshot_order(
    delegate: RecordingDelegate,
    console: Console,
) -> None:
    """Each site is invoked once, routed through its first custom domain."""
    orchestrator = FleetOrchestrator(delegate, console)

    report = orchestrator.run(_fleet(), OperationDescriptor("cr"), SweepConfig())

    assert _uris(delegate) == ["www.abc.com", "def.acme.acsitefactory.com", "ghi.org"]
    assert report.passes == 1
    assert report.succeeded == 3
    assert "=> Running command on www.abc.com" in console_text(console)


def test_sweep_strips_reserved_options(delegate: RecordingDelegate, console: Console) -> None:
    """Operator supplied uri values are replaced by the routing domain."""
    operation = OperationDescriptor("status", ("core",), {"uri": "evil.com", "format": "json"})

    FleetOrchestrator(delegate, console).run(_fleet(), operation, SweepConfig())

    for invoked in delegate.invocations:
        assert invoked.args == ("core",)
        assert invoked.options["format"] == "json"
    assert "evil.com" not in _uris(delegate)


def test_failures_do_not_stop_the_sweep(console: Console) -> None:
    """A failing site is reported and later sites still run."""

    def handler(alias: str, operation: OperationDescriptor) -> ExecutionResult:
        code = 1 if operation.options["uri"] == "www.abc.com" else 0
        return ExecutionResult(command=("drush",), returncode=code, stderr="no database")

    delegate = RecordingDelegate(invoke_handler=handler)

    report = FleetOrchestrator(delegate, console).run(
        _fleet(), OperationDescriptor("updb"), SweepConfig()
    )

    assert len(delegate.invocations) == 3
    assert report.failed == 1
    assert report.succeeded == 2
    assert report.failed_sites() == ["g1"]
    assert report.outcomes[0].detail == "exit 1: no database"
    assert "The command failed to execute for the site www.abc.com." in console_text(console)


def test_successful_output_is_echoed(console: Console) -> None:
    """Delegate stdout is shown verbatim after each successful site."""
    delegate = RecordingDelegate(
        invoke_handler=lambda alias, op: ExecutionResult(
            command=("drush",), returncode=0, stdout="[ok] Cache rebuild complete.\n"
        )
    )

    FleetOrchestrator(delegate, console).run(
        SiteSet([_site("g1", "abc.acme.acsitefactory.com")]), OperationDescriptor("cr"), SweepConfig()
    )

    assert "[ok] Cache rebuild complete." in console_text(console)


def test_use_https_prefixes_once() -> None:
    """The https scheme is prefixed a single time."""
    site = _site("g1", "abc.acme.acsitefactory.com", "https://www.abc.com")
    plain = _site("g2", "def.acme.acsitefactory.com")

    assert routing_address(site, use_https=True) == "https://www.abc.com"
    assert routing_address(plain, use_https=True) == "https://def.acme.acsitefactory.com"
    assert routing_address(plain, use_https=False) == "def.acme.acsitefactory.com"


def test_delay_sleeps_between_sites_only(console: Console) -> None:
    """The throttle falls between two invocations and never after a pass's last site."""
    clock = FakeClock()
    events: list[tuple[str, object]] = []

    def handler(alias: str, operation: OperationDescriptor) -> ExecutionResult:
        events.append(("invoke", operation.options["uri"]))
        clock.now += 4
        return ExecutionResult(command=("drush",), returncode=0)

    def sleep(seconds: float) -> None:
        events.append(("sleep", seconds))
        clock.sleep(seconds)

    delegate = RecordingDelegate(invoke_handler=handler)
    orchestrator = FleetOrchestrator(delegate, console, clock=clock, sleep=sleep)

    report = orchestrator.run(
        _fleet(), OperationDescriptor("cr"), SweepConfig(delay=2, total_time_limit=20)
    )

    one_pass = [
        ("invoke", "www.abc.com"),
        ("sleep", 2),
        ("invoke", "def.acme.acsitefactory.com"),
        ("sleep", 2),
        ("invoke", "ghi.org"),
    ]
    assert report.passes == 2
    assert events == one_pass + one_pass
    assert "Sleeping for 2 seconds" in console_text(console)


def test_all_skipped_time_boxed_sweep_stops_after_one_pass(
    tmp_path: Path,
    delegate: RecordingDelegate,
    console: Console,
) -> None:
    """A pass that invokes no site is not repeated, whatever the time limit."""
    fleet = _fleet()
    resolver = ProfileResolver(tmp_path)
    for site in fleet.values():
        _write_profile(resolver, site, "minimal")
    clock = FakeClock()
    orchestrator = FleetOrchestrator(
        delegate, console, profiles=resolver, clock=clock, sleep=clock.sleep
    )

    report = orchestrator.run(
        fleet,
        OperationDescriptor("cr"),
        SweepConfig(profiles=frozenset({"gardens"}), delay=5, total_time_limit=3600),
    )

    assert report.passes == 1
    assert report.skipped == 3
    assert delegate.calls == []
    assert clock.sleeps == []
    assert "not repeating the pass" in console_text(console)


def test_fast_failing_passes_are_spaced_and_bounded(tmp_path: Path, console: Console) -> None:
    """Instant failures cannot spin: passes are spaced and the record stays small."""
    clock = FakeClock()
    delegate = RecordingDelegate(
        invoke_handler=lambda alias, op: ExecutionResult(
            command=("drush",), returncode=127, stderr="drush not found"
        )
    )
    orchestrator = FleetOrchestrator(delegate, console, clock=clock, sleep=clock.sleep)
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run-on-fleet") as op:
        report = orchestrator.run(
            _fleet(), OperationDescriptor("cr"), SweepConfig(total_time_limit=3), op=op
        )
        names = [step["name"] for step in op.steps]

    assert report.passes == 3
    assert clock.sleeps == [1.0, 1.0, 1.0]
    assert report.failed == 9
    assert len(report.outcomes) == 3
    assert report.failed_sites() == ["g1", "g2", "g3"]
    assert names == ["fleet.g1", "fleet.g2", "fleet.g3", "fleet.pass.2", "fleet.pass.3"]
    assert len(report.to_dict()["outcomes"]) == 3  # type: ignore[arg-type]


def test_time_limit_repeats_whole_passes(console: Console) -> None:
    """Passes repeat until the deadline, finishing the pass in progress."""
    clock = FakeClock()

    def handler(alias: str, operation: OperationDescriptor) -> ExecutionResult:
        clock.now += 4
        return ExecutionResult(command=("drush",), returncode=0)

    delegate = RecordingDelegate(invoke_handler=handler)
    orchestrator = FleetOrchestrator(delegate, console, clock=clock, sleep=clock.sleep)

    report = orchestrator.run(
        _fleet(),
        OperationDescriptor("cron"),
        SweepConfig(total_time_limit=20, use_https=True),
    )

    # Each pass costs 12 seconds: passes end at 12 and 24, the second crossing 20.
    assert report.passes == 2
    assert len(delegate.invocations) == 6
    assert _uris(delegate)[3:] == [
        "https://www.abc.com",
        "https://def.acme.acsitefactory.com",
        "https://ghi.org",
    ]
    assert [outcome.pass_number for outcome in report.outcomes] == [2, 2, 2]
    assert report.succeeded == 6


def test_profile_filter_skips_other_profiles(
    tmp_path: Path,
    delegate: RecordingDelegate,
    console: Console,
) -> None:
    """Only sites installed with a requested profile are invoked."""
    fleet = _fleet()
    resolver = ProfileResolver(tmp_path)
    _write_profile(resolver, fleet["g1"], "gardens")
    _write_profile(resolver, fleet["g2"], "minimal")
    _write_profile(resolver, fleet["g3"], "gardens")
    orchestrator = FleetOrchestrator(delegate, console, profiles=resolver)

    report = orchestrator.run(
        fleet, OperationDescriptor("cr"), SweepConfig(profiles=frozenset({"gardens"}))
    )

    assert _uris(delegate) == ["www.abc.com", "ghi.org"]
    assert report.skipped == 1
    assert report.outcomes[1].status is OutcomeStatus.SKIPPED
    assert report.outcomes[1].detail == "profile:minimal"
    assert "=> Skipping command on def.acme.acsitefactory.com" in console_text(console)


@pytest.mark.parametrize(("policy", "expected"), [("include", 3), ("exclude", 2)])
def test_unreadable_profile_policy(
    tmp_path: Path,
    delegate: RecordingDelegate,
    console: Console,
    policy: str,
    expected: int,
) -> None:
    """Sites whose settings cannot be read follow the configured policy."""
    fleet = _fleet()
    resolver = ProfileResolver(tmp_path)
    _write_profile(resolver, fleet["g1"], "gardens")
    _write_profile(resolver, fleet["g3"], "gardens")
    orchestrator = FleetOrchestrator(delegate, console, profiles=resolver)

    orchestrator.run(
        fleet,
        OperationDescriptor("cr"),
        SweepConfig(profiles=frozenset({"gardens"}), unreadable_profile=policy),
    )

    assert len(delegate.invocations) == expected


def test_empty_fleet_is_a_no_op(delegate: RecordingDelegate, console: Console) -> None:
    """An empty snapshot results in zero invocations."""
    report = FleetOrchestrator(delegate, console).run(
        SiteSet([]), OperationDescriptor("cr"), SweepConfig(total_time_limit=10)
    )

    assert delegate.calls == []
    assert report.passes == 0


def test_outcomes_are_recorded_as_steps(
    tmp_path: Path,
    delegate: RecordingDelegate,
    console: Console,
) -> None:
    """Every site outcome is mirrored into the operation scope."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run-on-fleet") as op:
        FleetOrchestrator(delegate, console).run(
            _fleet(), OperationDescriptor("cr"), SweepConfig(), op=op
        )
        names = [step["name"] for step in op.steps]

    assert names == ["fleet.g1", "fleet.g2", "fleet.g3"]


@pytest.mark.parametrize(
    "kwargs",
    [{"delay": -1}, {"total_time_limit": -5}, {"unreadable_profile": "maybe"}],
)
def test_sweep_config_validation(kwargs: dict[str, object]) -> None:
    """Invalid sweep settings are rejected up front."""
    with pytest.raises(ValueError):
        SweepConfig(**kwargs)  # type: ignore[arg-type]
