"""Subprocess execution shared by the providers."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from ..errors import ToolError
from ..logging import ToolOutputLog


def run_command(
    args: Sequence[str],
    *,
    error_cls: type[ToolError],
    error_prefix: str,
    tool_log: ToolOutputLog | None,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args*, record its output in *tool_log* and raise *error_cls* on failure.

    *env* entries are added to the current environment for the child only.
    *input_text* is fed on stdin and never logged.
    """
    child_env = None
    if env:
        child_env = os.environ.copy()
        child_env.update(env)
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
            env=child_env,
            cwd=str(cwd) if cwd is not None else None,
            input=input_text,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}") from exc
    if tool_log is not None:
        tool_log.record(args, result)
    if check and result.returncode != 0:
        log_path = tool_log.path if tool_log is not None else None
        if log_path is None:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise error_cls(f"{error_prefix} failed (exit {result.returncode}): {message}")
        raise error_cls(f"{error_prefix} failed (exit {result.returncode})", log_path=log_path)
    return result


__all__ = ["run_command"]
