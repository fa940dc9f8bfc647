#!/usr/bin/env python3
"""Check that a release tag matches the version stackctl declares.

CI runs this before publishing: ``v<version>`` tags must equal the
``__version__`` in ``src/stackctl/__init__.py`` and the ``version`` in
``pyproject.toml``; ``v<version>-rc<N>`` tags are accepted for release
candidates of that same version.
"""
from __future__ import annotations

import argparse
import ast
import pathlib
import re
import sys

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
INIT_PATH = PROJECT_ROOT / "src" / "stackctl" / "__init__.py"
PYPROJECT_PATH = PROJECT_ROOT / "pyproject.toml"

_RELEASE_TAG = re.compile(r"^v(?P<version>\d+\.\d+\.\d+)$")
_CANDIDATE_TAG = re.compile(r"^v(?P<version>\d+\.\d+\.\d+)-rc(?P<number>\d+)$")
_PYPROJECT_VERSION = re.compile(r'^version\s*=\s*"(?P<version>[^"]+)"\s*$', re.MULTILINE)


class TagValidationError(RuntimeError):
    """Raised when a tag does not match the expected scheme."""


def load_package_version(init_path: pathlib.Path = INIT_PATH) -> str:
    """Parse ``__version__`` from the package without importing it."""
    module = ast.parse(init_path.read_text(encoding="utf-8"), filename=str(init_path))
    for node in module.body:
        if not isinstance(node, ast.Assign):
            continue
        for target in node.targets:
            if isinstance(target, ast.Name) and target.id == "__version__":
                if isinstance(node.value, ast.Constant) and isinstance(node.value.value, str):
                    return node.value.value
                raise TagValidationError(f"__version__ in {init_path} is not a string literal.")
    raise TagValidationError(f"Unable to determine __version__ from {init_path}.")


def load_project_version(pyproject_path: pathlib.Path = PYPROJECT_PATH) -> str:
    """Return the ``version`` declared in ``pyproject.toml``."""
    match = _PYPROJECT_VERSION.search(pyproject_path.read_text(encoding="utf-8"))
    if match is None:
        raise TagValidationError(f"No version declared in {pyproject_path}.")
    return match.group("version")


def expected_version_from_tag(tag: str, kind: str) -> str:
    """Return the version string encoded in *tag*."""
    if kind == "release":
        match = _RELEASE_TAG.match(tag)
        if match is None:
            raise TagValidationError(f"Release tags must be formatted as v<x.y.z>; received '{tag}'.")
        return match.group("version")
    if kind == "candidate":
        match = _CANDIDATE_TAG.match(tag)
        if match is None:
            raise TagValidationError(
                f"Candidate tags must be formatted as v<x.y.z>-rc<N>; received '{tag}'."
            )
        return match.group("version")
    raise TagValidationError(f"Unknown tag kind '{kind}'.")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Return parsed CLI arguments for tag validation."""
    parser = argparse.ArgumentParser(description="Validate tag name against package version.")
    parser.add_argument(
        "--kind",
        required=True,
        choices=["release", "candidate"],
        help="Tag category to validate.",
    )
    parser.add_argument("--tag", required=True, help="Git tag name to validate.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint for tag validation in CI."""
    args = parse_args(argv)
    try:
        expected_version = expected_version_from_tag(args.tag, args.kind)
        package_version = load_package_version()
        project_version = load_project_version()
    except TagValidationError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1

    if project_version != package_version:
        sys.stderr.write(
            f"pyproject.toml version '{project_version}' does not match "
            f"__version__ '{package_version}'.\n"
        )
        return 1
    if package_version != expected_version:
        sys.stderr.write(
            f"Tag version '{expected_version}' does not match package version "
            f"'{package_version}'.\n"
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
