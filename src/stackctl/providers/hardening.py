"""Best-effort ownership, permission and SELinux label hardening."""
from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path

from ..errors import ToolError
from ..installation import Installation
from ..logging import ToolOutputLog
from .commands import run_command

LOGGER = logging.getLogger(__name__)

DIR_MODE = 0o755
FILE_MODE = 0o644
EXEC_MODE = 0o755
SETTINGS_MODE = 0o640
PRIVATE_DIR_MODE = 0o750


class HardeningError(ToolError):
    """Raised internally for failing label commands; never escapes ``apply``."""


@dataclass(slots=True)
class SecurityHardener:
    """Apply the installation's ownership and permission rules.

    Nothing here raises; every problem is returned as a warning string.
    """

    tool_log: ToolOutputLog | None = None
    enabled: bool = True
    restorecon_bin: str = "restorecon"

    def apply(self, installation: Installation) -> list[str]:
        """Harden everything below the installation root."""
        if not self.enabled:
            return []
        root = installation.root
        if not root.exists():
            return [f"Hardening skipped: {root} does not exist."]

        warnings: list[str] = []
        private = set(secret_files(installation))
        is_root = os.geteuid() == 0
        for path in [root, *root.rglob("*")]:
            if path.is_symlink():
                continue
            try:
                if is_root:
                    shutil.chown(path, user=installation.service_user, group=installation.service_group)
                if path.is_dir():
                    os.chmod(path, DIR_MODE)
                elif path in private:
                    os.chmod(path, SETTINGS_MODE)
                else:
                    current = path.stat().st_mode
                    executable = current & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                    os.chmod(path, EXEC_MODE if executable else FILE_MODE)
            except (LookupError, OSError) as exc:
                warnings.append(f"{path}: {exc}")
                if len(warnings) > 20:
                    warnings.append("Further permission errors suppressed.")
                    break

        for relative in installation.preserve_paths:
            warnings.extend(_chmod_quiet(installation.tree_dir / relative, PRIVATE_DIR_MODE))
        # Secret files are tightened even when the walk above gave up early.
        for path in sorted(private):
            warnings.extend(_chmod_quiet(path, SETTINGS_MODE))
        warnings.extend(self._restore_labels(root))
        for warning in warnings:
            LOGGER.warning("Hardening: %s", warning)
        return warnings

    def _restore_labels(self, root: Path) -> list[str]:
        if shutil.which(self.restorecon_bin) is None:
            return []
        try:
            run_command(
                [self.restorecon_bin, "-R", str(root)],
                error_cls=HardeningError,
                error_prefix=self.restorecon_bin,
                tool_log=self.tool_log,
            )
        except HardeningError as exc:
            return [str(exc)]
        return []


def secret_files(installation: Installation) -> list[Path]:
    """Return the settings file and its copies (``settings.yml.pre-restore`` and the like)."""
    settings = installation.settings_path
    if not settings.parent.is_dir():
        return []
    return sorted(
        path
        for path in settings.parent.glob(f"{settings.name}*")
        if path.is_file() and not path.is_symlink()
    )


def _chmod_quiet(path: Path, mode: int) -> list[str]:
    if not path.exists():
        return []
    try:
        os.chmod(path, mode)
    except OSError as exc:
        return [f"{path}: {exc}"]
    return []


__all__ = ["SETTINGS_MODE", "SecurityHardener", "secret_files"]
