"""Archive helpers shared by snapshot, restore and package workflows."""
from __future__ import annotations

import gzip
import hashlib
import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from .errors import ToolError

GZIP_LEVEL = 6


class ArchiveError(ToolError):
    """Raised when creating or extracting an archive fails."""


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create or extract archives.")
    return tar_bin


def _run_tar(cmd: list[str]) -> None:
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())


def create_tree_archive(
    source_dir: Path,
    archive_path: Path,
    *,
    exclude: Sequence[str] = (),
) -> None:
    """Write a gzip tarball of *source_dir*'s contents to *archive_path*.

    Entries in *exclude* are paths relative to *source_dir*; the directories
    themselves are skipped along with everything below them.
    """
    if not source_dir.is_dir():
        raise ArchiveError(f"Cannot archive missing directory {source_dir}.")
    cmd: list[str] = [_tar_bin(), "-czf", str(archive_path)]
    for relative in exclude:
        cmd.append(f"--exclude=./{relative.strip('/')}")
    cmd.extend(["-C", str(source_dir), "."])
    _run_tar(cmd)
    os.chmod(archive_path, 0o640)


def extract_archive(archive_path: Path, destination: Path, *, strip_components: int = 0) -> None:
    """Extract the gzip tarball *archive_path* into *destination*."""
    if not archive_path.is_file():
        raise ArchiveError(f"Archive not found: {archive_path}")
    destination.mkdir(parents=True, exist_ok=True)
    cmd = [_tar_bin(), "-xzf", str(archive_path), "-C", str(destination)]
    if strip_components:
        cmd.append(f"--strip-components={strip_components}")
    _run_tar(cmd)


def gzip_file(source: Path, destination: Path, *, remove_source: bool = True) -> Path:
    """Compress *source* into *destination* and return the destination."""
    try:
        with source.open("rb") as reader, gzip.open(
            destination, "wb", compresslevel=GZIP_LEVEL
        ) as writer:
            shutil.copyfileobj(reader, writer, length=1024 * 1024)
    except OSError as exc:
        raise ArchiveError(f"Failed to compress {source}: {exc}") from exc
    if remove_source:
        source.unlink(missing_ok=True)
    return destination


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def directory_size(path: Path) -> int:
    """Return the total size in bytes of regular files below *path*."""
    total = 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file() and not entry.is_symlink():
                total += entry.stat().st_size
        except OSError:
            continue
    return total


__all__ = [
    "ArchiveError",
    "compute_checksum",
    "create_tree_archive",
    "directory_size",
    "extract_archive",
    "gzip_file",
]
