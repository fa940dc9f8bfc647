"""The managed installation and its on-disk layout.

::

    <install_root>/
      venv/                   derived, rebuilt from wheels
      <tree>/                 application tree, replaced on update
        release.yml           ``version: x.y.z``
        requirements.txt
        settings.yml          written by stackctl
        static/               derived, regenerated by collectstatic
        media/ scripts/       operator data carried across updates
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from .config import AppConfig
from .errors import PreconditionError
from .settings import ApplicationSettings, load_settings


class InstallationError(PreconditionError):
    """Raised when the installation is missing or unreadable."""


@dataclass(frozen=True, slots=True)
class Installation:
    """Paths and identities describing the single managed deployment."""

    root: Path
    tree_dirname: str = "app"
    settings_name: str = "settings.yml"
    venv_dirname: str = "venv"
    static_dirname: str = "static"
    release_name: str = "release.yml"
    preserve_paths: tuple[str, ...] = ("media", "scripts")
    services: tuple[str, ...] = ("app", "app-rq")
    service_user: str = "app"
    service_group: str = "app"

    @classmethod
    def from_config(cls, config: AppConfig) -> Installation:
        """Build the installation described by *config*."""
        return cls(
            root=config.install_root,
            tree_dirname=config.tree_dirname,
            settings_name=config.settings_file,
            venv_dirname=config.venv_dirname,
            static_dirname=config.static_dirname,
            release_name=config.release_file,
            preserve_paths=config.preserve_paths,
            services=config.services,
            service_user=config.service_user,
            service_group=config.service_group,
        )

    @property
    def tree_dir(self) -> Path:
        return self.root / self.tree_dirname

    @property
    def settings_path(self) -> Path:
        return self.tree_dir / self.settings_name

    @property
    def venv_dir(self) -> Path:
        return self.root / self.venv_dirname

    @property
    def static_dir(self) -> Path:
        return self.tree_dir / self.static_dirname

    @property
    def release_path(self) -> Path:
        return self.tree_dir / self.release_name

    @property
    def requirements_path(self) -> Path:
        return self.tree_dir / "requirements.txt"

    @property
    def python_bin(self) -> Path:
        return self.venv_dir / "bin" / "python"

    def derived_paths(self) -> tuple[str, ...]:
        """Subtrees (relative to ``root``) that are excluded from snapshots."""
        return (self.venv_dirname, f"{self.tree_dirname}/{self.static_dirname}")

    def exists(self) -> bool:
        """Return True when an application tree is present."""
        return self.tree_dir.is_dir()

    def has_remnants(self) -> bool:
        """Return True when anything of a (possibly partial) install is left."""
        return self.root.exists() and any(self.root.iterdir())

    def require(self) -> None:
        """Raise :class:`InstallationError` unless the installation exists."""
        if not self.exists():
            raise InstallationError(f"No installation found at {self.tree_dir}.")

    def settings(self) -> ApplicationSettings:
        """Load the application settings file."""
        return load_settings(self.settings_path)

    def installed_version(self) -> str | None:
        """Return the version recorded in the tree's release file."""
        return read_release_version(self.tree_dir, self.release_name)


def read_release_version(tree_dir: Path, release_name: str = "release.yml") -> str | None:
    """Return the ``version`` declared in *tree_dir*'s release file."""
    path = tree_dir / release_name
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, yaml.YAMLError) as exc:
        raise InstallationError(f"Unable to read release file {path}: {exc}") from exc
    if not isinstance(data, dict):
        return None
    version = data.get("version")
    return str(version) if version is not None else None


__all__ = ["Installation", "InstallationError", "read_release_version"]
