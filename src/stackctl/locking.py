"""Advisory file locks guarding lifecycle operations.

Locks are ``fcntl.flock`` exclusive locks on files under the runtime
directory. Lock files are left in place after release; they carry JSON
metadata about the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import hashlib
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from .errors import PreconditionError
from .exit_codes import ExitCode

_POLL_INTERVAL = 0.05


class LockTimeoutError(PreconditionError):
    """Raised when a lock cannot be acquired within the timeout."""

    exit_code = ExitCode.ENVIRONMENT


class OperationInProgressError(LockTimeoutError):
    """Raised when another lifecycle operation holds the installation lock."""


@dataclass(slots=True)
class LockHandle:
    """Information about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out exclusive locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 0.0) -> None:
        """Remember the lock directory and the default wait in seconds."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path_for(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path_for(name)
        with self._acquire(path, self.default_timeout if timeout is None else timeout) as handle:
            yield handle

    @contextmanager
    def installation_lock(
        self,
        root: Path,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock scoped to the installation at *root*.

        Raises :class:`OperationInProgressError` when another process holds it.
        """
        try:
            with self.instance_lock(_lock_name_for(root), timeout=timeout) as handle:
                yield handle
        except OperationInProgressError:
            raise
        except LockTimeoutError as exc:
            raise OperationInProgressError(
                f"Another lifecycle operation is already in progress for {root}."
            ) from exc

    @contextmanager
    def _acquire(self, path: Path, timeout: float) -> Iterator[LockHandle]:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle: IO[str] = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - started >= timeout:
                        raise LockTimeoutError(
                            f"Timed out waiting for lock {path} ({_describe_holder(path)})."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            handle.seek(0)
            handle.truncate()
            handle.write(json.dumps({"pid": os.getpid(), "path": str(path)}))
            handle.flush()
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _lock_name_for(root: Path) -> str:
    resolved = str(root.expanduser().resolve(strict=False))
    slug = re.sub(r"[^A-Za-z0-9]+", "-", resolved).strip("-") or "root"
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:8]
    return f"installation-{slug}-{digest}"


def _describe_holder(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, json.JSONDecodeError):
        return "holder unknown"
    pid = data.get("pid") if isinstance(data, dict) else None
    return f"held by pid {pid}" if pid else "holder unknown"


__all__ = ["LockHandle", "LockManager", "LockTimeoutError", "OperationInProgressError"]
