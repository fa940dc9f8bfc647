"""Management commands run inside the application's virtualenv."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence

from ..errors import ToolError
from ..installation import Installation
from ..logging import ToolOutputLog
from .commands import run_command

MANAGE_SCRIPT = "manage.py"


class ApplicationError(ToolError):
    """Raised when a management command fails."""


class MigrationError(ApplicationError):
    """Raised when schema migrations fail."""


class ApplicationProvider:
    """Run ``manage.py`` subcommands for an installation."""

    def __init__(self, *, tool_log: ToolOutputLog | None = None) -> None:
        """Remember where command output is recorded."""
        self.tool_log = tool_log

    def migrate(self, installation: Installation) -> None:
        """Apply pending schema migrations."""
        try:
            self.manage(installation, "migrate", "--no-input")
        except ApplicationError as exc:
            raise MigrationError(str(exc), log_path=exc.log_path) from exc

    def collect_static(self, installation: Installation) -> None:
        """Rebuild the static asset directory."""
        self.manage(installation, "collectstatic", "--no-input", "--clear")

    def remove_stale_content_types(self, installation: Installation) -> None:
        """Drop content types left behind by removed models."""
        self.manage(installation, "remove_stale_contenttypes", "--no-input")

    def create_admin(
        self,
        installation: Installation,
        *,
        username: str,
        email: str,
        password: str,
    ) -> None:
        """Create the initial administrator; the password reaches the child only."""
        self.manage(
            installation,
            "createsuperuser",
            "--no-input",
            "--username",
            username,
            "--email",
            email,
            env={"DJANGO_SUPERUSER_PASSWORD": password},
        )

    def manage(
        self,
        installation: Installation,
        *args: str,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``manage.py`` with *args* from the installation's virtualenv."""
        cmd = [str(installation.python_bin), str(installation.tree_dir / MANAGE_SCRIPT), *args]
        return self._run_manage_command(cmd, error_prefix=f"manage.py {args[0]}", env=env)

    def _run_manage_command(
        self,
        cmd: Sequence[str],
        *,
        error_prefix: str,
        env: Mapping[str, str] | None,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            cmd,
            error_cls=ApplicationError,
            error_prefix=error_prefix,
            tool_log=self.tool_log,
            env=env,
        )


__all__ = ["ApplicationError", "ApplicationProvider", "MigrationError"]
