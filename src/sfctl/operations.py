"""Operation descriptors and the delegate result envelope.

An :class:`OperationDescriptor` is built once from operator input and never
mutated. Each site receives a fresh descriptor from
:meth:`OperationDescriptor.for_site`, which strips the options sfctl manages
itself and injects the per-site ones (``uri``, ``result-file``...).
"""
from __future__ import annotations

import shlex
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

OptionValue = str | bool

RESERVED_OPTIONS = frozenset(
    {
        "uri",
        "result-file",
        "source-folder",
        "result-folder",
        "gzip",
        "profiles",
        "delay",
        "total-time-limit",
        "use-https",
    }
)


def _is_empty(value: object) -> bool:
    return value is None or value is False or value == ""


@dataclass(frozen=True, slots=True)
class OperationDescriptor:
    """A delegate command with its positional arguments and options."""

    command: str
    args: tuple[str, ...] = ()
    options: Mapping[str, OptionValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze args/options and validate the command name."""
        if not self.command or not self.command.strip():
            raise ValueError("Operation command must be a non-empty string.")
        object.__setattr__(self, "command", self.command.strip())
        object.__setattr__(self, "args", tuple(str(arg) for arg in self.args))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def for_site(self, injected: Mapping[str, OptionValue | None]) -> OperationDescriptor:
        """Return a new descriptor carrying *injected* per-site options.

        Reserved keys supplied by the operator are dropped, then *injected*
        is applied; empty values are removed from the result.
        """
        options: dict[str, OptionValue] = {
            key: value
            for key, value in self.options.items()
            if key not in RESERVED_OPTIONS and not _is_empty(value)
        }
        for key, value in injected.items():
            if _is_empty(value):
                options.pop(key, None)
            else:
                options[key] = value  # type: ignore[assignment]
        return OperationDescriptor(self.command, self.args, options)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one delegate invocation or raw shell command."""

    command: Sequence[str] | str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    site: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0

    @property
    def failure_reason(self) -> str | None:
        """Return a short explanation for a non-zero exit."""
        if self.ok:
            return None
        message = self.stderr.strip() or self.stdout.strip()
        if message:
            return f"exit {self.returncode}: {message.splitlines()[-1]}"
        return f"exit {self.returncode}"


def parse_command_args(raw: str | None) -> tuple[str, ...]:
    """Split a quoted, space-delimited argument string."""
    if not raw:
        return ()
    return tuple(shlex.split(raw))


def parse_command_options(raw: str | Iterable[str] | None) -> dict[str, OptionValue]:
    """Parse ``'format=json' 'interactive-mode'`` style option strings.

    ``key=value`` tokens become string options and bare tokens become flags.
    Leading dashes are tolerated.
    """
    if not raw:
        return {}
    tokens = shlex.split(raw) if isinstance(raw, str) else list(raw)
    options: dict[str, OptionValue] = {}
    for token in tokens:
        text = token.strip().lstrip("-")
        if not text:
            continue
        key, sep, value = text.partition("=")
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid option token: {token!r}")
        options[key] = value if sep else True
    return options


def parse_profiles(raw: str | None) -> frozenset[str]:
    """Parse a comma separated profile list."""
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


__all__ = [
    "ExecutionResult",
    "OperationDescriptor",
    "OptionValue",
    "RESERVED_OPTIONS",
    "parse_command_args",
    "parse_command_options",
    "parse_profiles",
]
