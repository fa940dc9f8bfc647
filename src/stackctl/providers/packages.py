"""Offline release packages and dependency installation.

A release package is a directory produced by the build pipeline::

    <package>/
      manifest.yml            name, version, optional os.id/os.major, python
      source/<name>.tar.gz    application tree (one top-level directory)
      wheels/                 every Python dependency as a wheel
      systemd/*.service       optional unit files
      checksums.sha256        optional ``<sha256>  <relative path>`` lines
"""
from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ..archive import ArchiveError, compute_checksum, extract_archive
from ..errors import PreconditionError, ToolError
from ..logging import ToolOutputLog
from ..versioning import parse_version
from .commands import run_command

MANIFEST_NAME = "manifest.yml"
CHECKSUMS_NAME = "checksums.sha256"


class PackageError(PreconditionError):
    """Raised when a release package is missing pieces or fails validation."""


class DependencyError(ToolError):
    """Raised when creating the virtualenv or installing wheels fails."""


@dataclass(frozen=True, slots=True)
class ReleasePackage:
    """A validated release package on disk."""

    root: Path
    name: str
    version: str
    source_archive: Path
    wheels_dir: Path
    os_id: str | None = None
    os_major: str | None = None
    python: str | None = None
    unit_files: tuple[Path, ...] = ()
    verified_files: int = 0
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def python_bin(self) -> str:
        """Interpreter used to create the virtualenv."""
        return f"python{self.python}" if self.python else "python3"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "root": str(self.root),
            "name": self.name,
            "version": self.version,
            "source_archive": str(self.source_archive),
            "wheels_dir": str(self.wheels_dir),
            "os": {"id": self.os_id, "major": self.os_major},
            "python": self.python,
            "unit_files": [str(path) for path in self.unit_files],
            "verified_files": self.verified_files,
        }


class PackageProvider:
    """Load release packages and install their dependencies."""

    def __init__(self, *, tool_log: ToolOutputLog | None = None, pip_args: Sequence[str] | None = None) -> None:
        """Configure logging of pip output and extra pip arguments."""
        self.tool_log = tool_log
        self.pip_args = list(pip_args or [])

    def load(self, package_dir: Path) -> ReleasePackage:
        """Validate *package_dir* and return its description."""
        root = package_dir.expanduser()
        if not root.is_dir():
            raise PackageError(f"Package directory not found: {root}")

        manifest = _read_manifest(root / MANIFEST_NAME)
        version = str(manifest.get("version") or "").strip()
        if not version:
            raise PackageError(f"{MANIFEST_NAME} does not declare a version.")
        parse_version(version)
        name = str(manifest.get("name") or "app")

        source_dir = root / "source"
        archives = sorted(source_dir.glob("*.tar.gz")) if source_dir.is_dir() else []
        if len(archives) != 1:
            raise PackageError(
                f"Expected exactly one source archive under {source_dir}, found {len(archives)}."
            )

        wheels_dir = root / "wheels"
        if not wheels_dir.is_dir() or not any(wheels_dir.glob("*.whl")):
            raise PackageError(f"No wheels found under {wheels_dir}.")

        os_section = manifest.get("os") or {}
        if not isinstance(os_section, Mapping):
            raise PackageError(f"{MANIFEST_NAME} 'os' must be a mapping.")
        python_value = manifest.get("python")

        unit_dir = root / "systemd"
        unit_files = tuple(sorted(unit_dir.glob("*.service"))) if unit_dir.is_dir() else ()

        verified = self.verify_checksums(root)

        return ReleasePackage(
            root=root,
            name=name,
            version=version,
            source_archive=archives[0],
            wheels_dir=wheels_dir,
            os_id=_optional_str(os_section.get("id")),
            os_major=_optional_str(os_section.get("major")),
            python=_optional_str(python_value),
            unit_files=unit_files,
            verified_files=verified,
            metadata=dict(manifest),
        )

    def verify_checksums(self, root: Path) -> int:
        """Check every entry in ``checksums.sha256``; returns the count verified."""
        checksum_path = root / CHECKSUMS_NAME
        if not checksum_path.exists():
            return 0
        verified = 0
        mismatches: list[str] = []
        for raw in checksum_path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split(maxsplit=1)
            if len(parts) != 2:
                raise PackageError(f"Malformed line in {CHECKSUMS_NAME}: {raw!r}")
            expected, relative = parts[0].lower(), parts[1].lstrip("*").strip()
            target = (root / relative).resolve()
            if root.resolve() not in target.parents:
                raise PackageError(f"Checksum entry escapes the package: {relative}")
            if not target.is_file():
                mismatches.append(f"{relative} (missing)")
                continue
            if compute_checksum(target) != expected:
                mismatches.append(relative)
                continue
            verified += 1
        if mismatches:
            raise PackageError("Checksum verification failed: " + ", ".join(mismatches))
        return verified

    def extract_tree(self, package: ReleasePackage, parent: Path) -> Path:
        """Extract the application tree into a fresh staging directory under *parent*."""
        parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".stackctl-stage-{package.version}-", dir=str(parent)))
        try:
            extract_archive(package.source_archive, staging, strip_components=1)
        except ArchiveError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if not any(staging.iterdir()):
            shutil.rmtree(staging, ignore_errors=True)
            raise PackageError(f"Source archive {package.source_archive} is empty.")
        os.chmod(staging, 0o755)
        return staging

    def ensure_virtualenv(self, venv_dir: Path, *, python_bin: str = "python3") -> bool:
        """Create *venv_dir* when missing; returns True if it was created."""
        if (venv_dir / "bin" / "python").exists():
            return False
        venv_dir.parent.mkdir(parents=True, exist_ok=True)
        self._run_install_command([python_bin, "-m", "venv", str(venv_dir)], error_prefix="venv")
        return True

    def install_dependencies(
        self,
        venv_dir: Path,
        requirements: Path,
        wheels_dir: Path,
    ) -> None:
        """Install *requirements* from *wheels_dir* only, replacing what is there."""
        if not requirements.is_file():
            raise PackageError(f"Requirements file not found: {requirements}")
        cmd = [
            str(venv_dir / "bin" / "python"),
            "-m",
            "pip",
            "install",
            "--upgrade",
            "--force-reinstall",
            "--no-index",
            "--find-links",
            str(wheels_dir),
            "-r",
            str(requirements),
        ]
        cmd.extend(self.pip_args)
        self._run_install_command(cmd, error_prefix="pip install")

    def _run_install_command(
        self,
        cmd: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        """Execute an installer command (isolated for testing)."""
        return run_command(
            cmd,
            error_cls=DependencyError,
            error_prefix=error_prefix,
            tool_log=self.tool_log,
            env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
        )


def _read_manifest(path: Path) -> dict[str, object]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PackageError(f"Package manifest not found: {path}") from exc
    except (OSError, yaml.YAMLError) as exc:
        raise PackageError(f"Unable to read package manifest {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise PackageError(f"Package manifest {path} must be a mapping.")
    return {str(key): value for key, value in data.items()}


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


__all__ = ["DependencyError", "PackageError", "PackageProvider", "ReleasePackage"]
