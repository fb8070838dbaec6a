"""Structured operation logging for sfctl.

Every CLI command runs inside an :class:`OperationScope`. When the scope
closes, a single JSON record describing the command (arguments, target, the
per-site steps taken, and the final result) is appended to
``<logs_dir>/operations.jsonl``. A one-line human summary of each step and
result is mirrored to ``<logs_dir>/sfctl.log`` through a rotating handler.

Logging must never break a fleet run: when the log directory cannot be
prepared, or a write fails, the logger disables itself and later operations
become no-ops.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "sfctl.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _json_safe(value: object) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class StructuredLogger:
    """Append JSON operation records under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory and the human-readable log handler."""
        self.log_dir = log_dir.expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG
        self._human_log_path = self.log_dir / HUMAN_LOG
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._logger = logging.getLogger(f"sfctl.operations.{self.log_dir}")
        self._logger.propagate = False
        self._logger.setLevel(logging.INFO)
        if self._enabled and not self._logger.handlers:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=MAX_LOG_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
                delay=True,
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(message)s")
            )
            self._logger.addHandler(handler)

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            scope.close()

    def emit(self, level: int, message: str) -> None:
        """Write *message* to the human-readable log."""
        if not self._enabled:
            return
        try:
            self._logger.log(level, message)
        except Exception:  # pragma: no cover - logging handles its own errors
            self._enabled = False

    def write_record(self, record: Mapping[str, object]) -> None:
        """Append *record* to the operations log, disabling on failure."""
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(_json_safe(record), sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


class OperationScope:
    """Collect steps and the final result for one CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* and start the duration timer."""
        self._logger = logger
        self.command = command
        self.operation_id = f"op-{datetime.now(tz=UTC):%Y%m%d%H%M%S}-{secrets.token_hex(3)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._start = time.perf_counter()
        self._lock_wait_ms: int | None = None
        self._closed = False

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for the fleet lock."""
        self._lock_wait_ms = wait_ms

    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record an intermediate step (typically one per site)."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)
        level = logging.WARNING if status in {"failed", "error", "warning"} else logging.INFO
        suffix = f" ({detail})" if detail is not None else ""
        self._logger.emit(level, f"[{self.command}] {name}: {status}{suffix}")

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        artifacts: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            artifacts=artifacts,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        artifacts: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            artifacts=artifacts,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        artifacts: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if artifacts:
            result["artifacts"] = list(artifacts)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _json_safe(context)
        self.result = result
        level = {"success": logging.INFO, "warning": logging.WARNING}.get(status, logging.ERROR)
        self._logger.emit(level, f"[{self.command}] {status}: {message}")

    def close(self) -> None:
        """Persist the operation record (idempotent)."""
        if self._closed:
            return
        self._closed = True
        result = self.result or {"status": "success", "message": "Operation completed."}
        record: dict[str, object] = {
            "id": self.operation_id,
            "command": self.command,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "args": self.args,
            "target": self.target,
            "steps": self.steps,
            "result": result,
        }
        if self._lock_wait_ms is not None:
            record["lock_wait_ms"] = self._lock_wait_ms
        self._logger.write_record(record)


__all__ = ["OperationScope", "StructuredLogger"]
