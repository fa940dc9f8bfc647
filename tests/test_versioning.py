"""Tests for update version gating."""
from __future__ import annotations

import pytest

from stackctl.versioning import VersionError, VersionRelation, compare_versions, parse_version


@pytest.mark.parametrize(
    ("current", "candidate", "expected"),
    [
        ("4.4.0", "4.4.0", VersionRelation.SAME),
        ("4.4", "4.4.0", VersionRelation.SAME),
        ("v4.4.1", "4.4.1", VersionRelation.SAME),
        ("4.4.0", "4.5.0", VersionRelation.UPGRADE),
        ("4.4.9", "4.4.10", VersionRelation.UPGRADE),
        ("4.4.9-rc1", "4.4.9", VersionRelation.UPGRADE),
        ("5.0.0", "4.9.9", VersionRelation.DOWNGRADE),
    ],
)
def test_compare_versions(current: str, candidate: str, expected: VersionRelation) -> None:
    """Candidates are classified numerically, not lexically."""
    assert compare_versions(current, candidate) is expected


@pytest.mark.parametrize(("a", "b"), [("1.0.0", "1.2.0"), ("2.0", "2.0.0"), ("3.1", "3.0.9")])
def test_compare_versions_is_symmetric(a: str, b: str) -> None:
    """Swapping the arguments yields the inverse relation."""
    assert compare_versions(b, a) is compare_versions(a, b).inverse()


def test_parse_version_strips_prefix() -> None:
    """A leading ``v`` and whitespace are ignored."""
    assert str(parse_version(" V1.2.3 ")) == "1.2.3"


@pytest.mark.parametrize("value", ["", "latest", "1.x"])
def test_invalid_versions_raise(value: str) -> None:
    """Unparseable strings raise a precondition error."""
    with pytest.raises(VersionError) as excinfo:
        compare_versions("1.0.0", value)

    assert "Invalid version string" in str(excinfo.value)
