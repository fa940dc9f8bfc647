"""Error taxonomy shared by the lifecycle subsystem.

Every failure raised by stackctl falls into one of three families:

* :class:`PreconditionError` - detected before any mutation; nothing changed.
* :class:`ToolError` - an external command (database engine, service manager,
  package manager) returned non-zero. The tool's output is written to the tool
  log and only its location is referenced in the message.
* :class:`ConsistencyError` - the installation may be in a state that needs
  operator recovery; the relevant recovery snapshot id is attached.

Best-effort failures never raise; they are collected as warning strings.
"""
from __future__ import annotations

from pathlib import Path

from .exit_codes import ExitCode


class PreconditionError(RuntimeError):
    """Raised when an operation cannot start because a requirement is unmet."""

    exit_code: ExitCode = ExitCode.VALIDATION


class ToolError(RuntimeError):
    """Raised when an external command fails."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, log_path: Path | None = None) -> None:
        """Store *message* and the optional tool log location."""
        if log_path is not None:
            message = f"{message} (see {log_path})"
        super().__init__(message)
        self.log_path = log_path


class ConsistencyError(RuntimeError):
    """Raised when the installation did not reach the expected end state."""

    exit_code: ExitCode = ExitCode.CONSISTENCY

    def __init__(self, message: str, *, recovery_snapshot: str | None = None) -> None:
        """Store *message* and the snapshot an operator should recover from."""
        super().__init__(message)
        self.recovery_snapshot = recovery_snapshot


__all__ = ["ConsistencyError", "PreconditionError", "ToolError"]
