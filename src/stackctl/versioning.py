"""Version comparison used to gate updates."""
from __future__ import annotations

from enum import Enum

from packaging.version import InvalidVersion, Version

from .errors import PreconditionError


class VersionError(PreconditionError):
    """Raised when a version string cannot be parsed."""


class VersionRelation(str, Enum):
    """How a candidate version relates to the installed one."""

    SAME = "same"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"

    def inverse(self) -> VersionRelation:
        """Return the relation seen from the other side."""
        if self is VersionRelation.UPGRADE:
            return VersionRelation.DOWNGRADE
        if self is VersionRelation.DOWNGRADE:
            return VersionRelation.UPGRADE
        return self


def parse_version(value: str) -> Version:
    """Parse *value* (an optional leading ``v`` is ignored).

    Missing trailing segments compare as zero, so ``4.4`` equals ``4.4.0``.
    Pre-release suffixes such as ``4.4.9-rc1`` order before the final release.
    """
    text = value.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version(text)
    except InvalidVersion as exc:
        raise VersionError(f"Invalid version string: {value!r}") from exc


def compare_versions(current: str, candidate: str) -> VersionRelation:
    """Classify *candidate* relative to *current*."""
    current_version = parse_version(current)
    candidate_version = parse_version(candidate)
    if candidate_version == current_version:
        return VersionRelation.SAME
    if candidate_version > current_version:
        return VersionRelation.UPGRADE
    return VersionRelation.DOWNGRADE


__all__ = ["VersionError", "VersionRelation", "compare_versions", "parse_version"]
