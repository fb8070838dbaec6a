"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from rich.console import Console

from sfctl.operations import ExecutionResult, OperationDescriptor


@dataclass
class RecordingDelegate:
    """In-memory delegate backend recording every call in order."""

    invoke_handler: Callable[[str, OperationDescriptor], ExecutionResult] | None = None
    shell_handler: Callable[[str], ExecutionResult] | None = None
    calls: list[tuple[str, object]] = field(default_factory=list)

    def invoke(
        self,
        alias: str,
        operation: OperationDescriptor,
        *,
        site: str | None = None,
    ) -> ExecutionResult:
        """Record *operation* and return the handler's result (success by default)."""
        self.calls.append(("invoke", operation))
        if self.invoke_handler is not None:
            return self.invoke_handler(alias, operation)
        return ExecutionResult(command=(alias, operation.command), returncode=0, site=site)

    def shell(self, raw_command: str, *, site: str | None = None) -> ExecutionResult:
        """Record *raw_command* and return the handler's result (success by default)."""
        self.calls.append(("shell", raw_command))
        if self.shell_handler is not None:
            return self.shell_handler(raw_command)
        return ExecutionResult(command=raw_command, returncode=0, site=site)

    @property
    def invocations(self) -> list[OperationDescriptor]:
        """Return the descriptors passed to :meth:`invoke`."""
        return [payload for kind, payload in self.calls if kind == "invoke"]  # type: ignore[misc]

    @property
    def shell_commands(self) -> list[str]:
        """Return the raw commands passed to :meth:`shell`."""
        return [str(payload) for kind, payload in self.calls if kind == "shell"]


@pytest.fixture()
def delegate() -> RecordingDelegate:
    """Return a delegate that succeeds for every call."""
    return RecordingDelegate()


@pytest.fixture()
def console() -> Console:
    """Return a wide console writing into memory."""
    return Console(file=io.StringIO(), width=200, color_system=None)


def console_text(console: Console) -> str:
    """Return everything printed to an in-memory *console*."""
    return console.file.getvalue()  # type: ignore[attr-defined]


def write_sites_json(path: Path, sites: Mapping[str, Mapping[str, object]]) -> Path:
    """Write a factory site map keyed by domain."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"sites": dict(sites)}), encoding="utf-8")
    return path
