"""Drush provider: the delegate command backend for fleet operations."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from ..operations import ExecutionResult, OperationDescriptor, OptionValue

COMMAND_NOT_FOUND = 127


class DelegateBackend(Protocol):
    """Interface the orchestrator and pipelines call into once per site."""

    def invoke(
        self,
        alias: str,
        operation: OperationDescriptor,
        *,
        site: str | None = None,
    ) -> ExecutionResult:
        """Run *operation* against *alias* and capture its output."""
        ...

    def shell(self, raw_command: str, *, site: str | None = None) -> ExecutionResult:
        """Run *raw_command* through the shell and capture its output."""
        ...


def render_options(options: Mapping[str, OptionValue]) -> list[str]:
    """Render an option map as ``--key=value`` / ``--flag`` arguments."""
    rendered: list[str] = []
    for key, value in options.items():
        if value is True:
            rendered.append(f"--{key}")
        elif value is False or value == "":
            continue
        else:
            rendered.append(f"--{key}={value}")
    return rendered


@dataclass(slots=True)
class DrushProvider:
    """Invoke drush (and auxiliary shell commands) as blocking subprocesses."""

    drush_bin: str = "drush"
    shell_bin: str = "/bin/sh"
    env: Mapping[str, str] | None = None

    def build_command(self, alias: str, operation: OperationDescriptor) -> list[str]:
        """Return the argv used to run *operation* against *alias*."""
        args: list[str] = [self.drush_bin]
        if alias:
            args.append(alias)
        args.append(operation.command)
        args.extend(operation.args)
        args.extend(render_options(operation.options))
        return args

    def invoke(
        self,
        alias: str,
        operation: OperationDescriptor,
        *,
        site: str | None = None,
    ) -> ExecutionResult:
        """Run *operation* through drush and return the captured result."""
        return self._run_command(self.build_command(alias, operation), site=site)

    def shell(self, raw_command: str, *, site: str | None = None) -> ExecutionResult:
        """Run *raw_command* with the configured shell."""
        result = self._run_command([self.shell_bin, "-c", raw_command], site=site)
        return ExecutionResult(
            command=raw_command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            site=site,
        )

    # ------------------------------------------------------------------
    def _run_command(self, args: Sequence[str], *, site: str | None) -> ExecutionResult:
        try:
            completed = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(self.env) if self.env is not None else None,
            )
        except FileNotFoundError as exc:
            return ExecutionResult(
                command=tuple(args),
                returncode=COMMAND_NOT_FOUND,
                stderr=f"{args[0]} not found: {exc}",
                site=site,
            )
        return ExecutionResult(
            command=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            site=site,
        )


__all__ = ["COMMAND_NOT_FOUND", "DelegateBackend", "DrushProvider", "render_options"]
