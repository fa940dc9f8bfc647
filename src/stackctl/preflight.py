"""Host checks performed before an installation is created."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import PreflightConfig
from .errors import PreconditionError
from .exit_codes import ExitCode
from .providers.packages import ReleasePackage

GIB = 1024**3


class PreflightError(PreconditionError):
    """Raised when the host does not meet a requirement."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True, slots=True)
class OSInfo:
    """Operating system identity parsed from os-release."""

    id: str
    version_id: str
    id_like: tuple[str, ...] = ()
    pretty_name: str | None = None

    @property
    def major(self) -> str:
        return self.version_id.split(".", 1)[0]


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines from an os-release file."""
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def detect_os(os_release: Path) -> OSInfo:
    """Return the host OS described by *os_release*."""
    try:
        values = parse_os_release(os_release.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PreflightError(f"Unable to read {os_release}: {exc}") from exc
    os_id = values.get("ID", "").lower()
    version_id = values.get("VERSION_ID", "")
    if not os_id or not version_id:
        raise PreflightError(f"{os_release} does not declare ID and VERSION_ID.")
    return OSInfo(
        id=os_id,
        version_id=version_id,
        id_like=tuple(values.get("ID_LIKE", "").lower().split()),
        pretty_name=values.get("PRETTY_NAME"),
    )


@dataclass(slots=True)
class Preflight:
    """Run the host requirement checks described by :class:`PreflightConfig`."""

    config: PreflightConfig

    def require_root(self) -> None:
        """Fail unless running with effective uid 0 (when required)."""
        if self.config.require_root and os.geteuid() != 0:
            raise PreflightError("This operation must be run as root.")

    def require_supported_os(self) -> OSInfo:
        """Fail unless the host OS family and major version are supported."""
        info = detect_os(self.config.os_release)
        families = {info.id, *info.id_like}
        supported = set(self.config.supported_os)
        if supported and not families & supported:
            raise PreflightError(
                f"Unsupported operating system '{info.id}'. Supported: {', '.join(sorted(supported))}."
            )
        if self.config.supported_majors and info.major not in self.config.supported_majors:
            raise PreflightError(
                f"Unsupported {info.id} release {info.version_id}. "
                f"Supported major versions: {', '.join(self.config.supported_majors)}."
            )
        return info

    def require_package_match(self, package: ReleasePackage, host: OSInfo) -> None:
        """Fail when the package was built for another OS major version."""
        if package.os_major and package.os_major != host.major:
            raise PreflightError(
                f"Package {package.version} targets OS major {package.os_major}, "
                f"host runs {host.major}."
            )

    def require_disk_space(self, target: Path) -> int:
        """Fail when the filesystem holding *target* has too little free space."""
        check_path = target
        while not check_path.exists() and check_path != check_path.parent:
            check_path = check_path.parent
        usage = shutil.disk_usage(check_path)
        required = int(self.config.min_free_gb * GIB)
        if usage.free < required:
            raise PreflightError(
                f"Insufficient free space under {check_path} "
                f"(need {required // GIB} GiB, have {usage.free / GIB:.1f} GiB)."
            )
        return usage.free


__all__ = ["OSInfo", "Preflight", "PreflightError", "detect_os", "parse_os_release"]
