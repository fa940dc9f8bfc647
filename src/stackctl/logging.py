"""Structured operation logging for stackctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. When the scope closes, a single JSON record is
appended to ``<logs_dir>/operations.jsonl`` describing the command, the
steps it took, how long it waited for the installation lock and how it
ended. The logger never raises: an unavailable log directory or a failed
write disables it for the rest of the process.

External command output is kept out of the operations log and appended to
``<logs_dir>/tools.log`` through :class:`ToolOutputLog`.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import subprocess
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
TOOLS_LOG_NAME = "tools.log"


def _utc_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = None
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


@dataclass
class OperationScope:
    """Collects steps and the final result for one logged operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object] | None
    actor: dict[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_utc_now)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, step_id: str, *, status: str = "success", detail: object = None) -> None:
        """Record a named step inside the operation."""
        entry: dict[str, object] = {"name": step_id, "status": status, "at": _utc_now()}
        if detail is not None:
            entry["detail"] = _json_safe(detail)
        self.steps.append(entry)
        LOGGER.debug("%s: %s [%s] %s", self.command, step_id, status, detail or "")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as finished with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            backups=backups,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
            "changed": changed,
            "backups": [str(item) for item in backups or []],
            "context": _json_safe(dict(context or {})),
        }
        if rc is not None:
            self.result["rc"] = rc

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        result = self.result or {"status": "unknown", "message": "Operation ended without result."}
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "actor": self.actor,
            "started_at": self.started_at,
            "finished_at": _utc_now(),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": result,
        }


class StructuredLogger:
    """Append-only JSONL logger for CLI operations."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging if it cannot be created."""
        self.logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled, %s unavailable: %s", logs_dir, exc)
            self._enabled = False

    @property
    def tools_log_path(self) -> Path:
        """Location of the external tool output log."""
        return self.logs_dir / TOOLS_LOG_NAME

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
            actor=_actor(),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}", errors=[str(exc) or repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Operation logging disabled after write failure: %s", exc)
            self._enabled = False


class ToolOutputLog:
    """Append external command output to a plain text log file."""

    def __init__(self, path: Path) -> None:
        """Remember *path*; the parent directory is created on first write."""
        self.path = path

    def record(self, args: Sequence[str], result: subprocess.CompletedProcess[str]) -> None:
        """Append the command line, exit code and captured output."""
        lines = [f"[{_utc_now()}] $ {' '.join(str(arg) for arg in args)} (exit {result.returncode})"]
        for label, stream in (("stdout", result.stdout), ("stderr", result.stderr)):
            text = (stream or "").rstrip()
            if text:
                lines.append(f"--- {label} ---")
                lines.append(text)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")
        except OSError as exc:
            LOGGER.warning("Unable to write tool output to %s: %s", self.path, exc)


__all__ = ["OperationScope", "StructuredLogger", "ToolOutputLog"]
