"""Systemd provider for the installation's service set."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ToolError
from ..logging import ToolOutputLog
from .commands import run_command

# ``systemctl`` exit status / messages for units that simply do not exist.
_NOT_LOADED_MARKERS = ("not loaded", "not found", "does not exist", "no such file")


class SystemdError(ToolError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop and inspect the units that make up the service set."""

    tool_log: ToolOutputLog | None = None
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_name(self, service: str) -> str:
        """Return the unit name for *service*."""
        return service if "." in service else f"{service}.service"

    def unit_path(self, service: str) -> Path:
        """Return the unit file path for *service*."""
        return self.systemd_dir / self.unit_name(service)

    def start(self, service: str) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name(service))

    def stop(self, service: str) -> subprocess.CompletedProcess[str]:
        """Stop the unit; an absent or already stopped unit is not an error."""
        try:
            return self._systemctl("stop", self.unit_name(service))
        except SystemdError as exc:
            if _is_not_loaded(exc):
                return subprocess.CompletedProcess([self.systemctl_bin, "stop"], 0, "", "")
            raise

    def enable(self, service: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name(service))

    def disable(self, service: str) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit_name(service))

    def is_active(self, service: str) -> str:
        """Return the ``systemctl is-active`` state (``active``, ``inactive``...)."""
        result = self._systemctl("is-active", self.unit_name(service), check=False)
        state = (result.stdout or "").strip().splitlines()
        return state[0] if state else "unknown"

    def start_all(self, services: Iterable[str]) -> None:
        """Start every service in order."""
        for service in services:
            self.start(service)

    def stop_all(self, services: Sequence[str]) -> None:
        """Stop every service, workers before the main service."""
        for service in reversed(list(services)):
            self.stop(service)

    def enable_all(self, services: Iterable[str]) -> None:
        """Enable every service."""
        for service in services:
            self.enable(service)

    def statuses(self, services: Iterable[str]) -> dict[str, str]:
        """Return the active state of every service."""
        return {service: self.is_active(service) for service in services}

    def install_unit(self, source: Path) -> Path:
        """Copy the unit file *source* into the unit directory."""
        self.systemd_dir.mkdir(parents=True, exist_ok=True)
        target = self.systemd_dir / source.name
        shutil.copy2(source, target)
        target.chmod(0o644)
        return target

    def remove_unit(self, service: str) -> bool:
        """Remove the unit file for *service*; returns False if it was absent."""
        path = self.unit_path(service)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def daemon_reload(self) -> None:
        """Ask systemd to re-read unit files."""
        self._systemctl("daemon-reload")

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            args,
            error_cls=SystemdError,
            error_prefix=error_prefix,
            tool_log=self.tool_log,
            check=check,
        )


def _is_not_loaded(exc: SystemdError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _NOT_LOADED_MARKERS) or "(exit 5)" in text


__all__ = ["SystemdError", "SystemdProvider"]
