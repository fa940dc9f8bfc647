"""Snapshot sets and their on-disk store.

Layout of one snapshot::

    <root>/<id>/
      metadata.json          written last; marks the snapshot complete
      config/<settings file>
      database/database.sql.gz
      tree.tar.gz

While being written the directory is called ``<id>.partial``. Only
directories without that suffix, with readable metadata and with every
payload present are listed, restored from or counted by retention.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .archive import compute_checksum, directory_size
from .errors import PreconditionError

LOGGER = logging.getLogger(__name__)

METADATA_NAME = "metadata.json"
PARTIAL_SUFFIX = ".partial"
CONFIG_DIRNAME = "config"
DATABASE_DIRNAME = "database"
DATABASE_DUMP_NAME = "database.sql.gz"
TREE_ARCHIVE_NAME = "tree.tar.gz"
ID_PREFIX = "backup-"
METADATA_FORMAT = 1

_KIND_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,39}$")


class SnapshotKind(str, Enum):
    """Well-known snapshot kinds."""

    MANUAL = "manual"
    INITIAL = "initial"
    PRE_UPDATE = "pre-update"
    PRE_ROLLBACK = "pre-rollback"
    FINAL = "final-pre-uninstall"


class SnapshotError(RuntimeError):
    """Raised when the snapshot store cannot be read or written."""


class SnapshotNotFoundError(PreconditionError):
    """Raised when a requested snapshot does not exist or is incomplete."""


def normalize_kind(kind: str | SnapshotKind) -> str:
    """Return *kind* as a validated tag."""
    value = kind.value if isinstance(kind, SnapshotKind) else str(kind).strip().lower()
    if not _KIND_PATTERN.match(value):
        raise SnapshotError(f"Invalid snapshot kind {kind!r}; use lowercase letters, digits and '-'.")
    return value


@dataclass(frozen=True, slots=True)
class SnapshotSet:
    """One complete, immutable snapshot."""

    id: str
    kind: str
    created_at: datetime
    source_version: str | None
    path: Path
    config_name: str
    checksums: dict[str, str] = field(default_factory=dict)
    size_bytes: int = 0
    hostname: str | None = None
    install_root: str | None = None
    protected: bool = False

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_NAME

    @property
    def config_file(self) -> Path:
        return self.path / CONFIG_DIRNAME / self.config_name

    @property
    def database_dump(self) -> Path:
        return self.path / DATABASE_DIRNAME / DATABASE_DUMP_NAME

    @property
    def tree_archive(self) -> Path:
        return self.path / TREE_ARCHIVE_NAME

    def payloads(self) -> dict[str, Path]:
        """Return the payload files keyed by checksum name."""
        return {
            "config": self.config_file,
            "database": self.database_dump,
            "tree": self.tree_archive,
        }

    def is_complete(self) -> bool:
        """Return True when metadata and every payload exist."""
        return self.metadata_path.is_file() and all(p.is_file() for p in self.payloads().values())

    def to_listing(self) -> dict[str, object]:
        """Return the operator-facing summary."""
        return {
            "id": self.id,
            "kind": self.kind,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "source_version": self.source_version,
            "size_bytes": self.size_bytes,
            "protected": self.protected,
        }

    def to_metadata(self) -> dict[str, object]:
        """Return the JSON document stored as ``metadata.json``."""
        return {
            "format": METADATA_FORMAT,
            "id": self.id,
            "kind": self.kind,
            "created_at": self.created_at.isoformat(),
            "source_version": self.source_version,
            "hostname": self.hostname,
            "install_root": self.install_root,
            "payloads": {
                "config": f"{CONFIG_DIRNAME}/{self.config_name}",
                "database": f"{DATABASE_DIRNAME}/{DATABASE_DUMP_NAME}",
                "tree": TREE_ARCHIVE_NAME,
            },
            "checksums": dict(self.checksums),
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_metadata(cls, path: Path, data: Mapping[str, object]) -> SnapshotSet:
        """Rebuild a snapshot from its metadata document."""
        try:
            created_at = datetime.fromisoformat(str(data["created_at"]))
            payloads = data.get("payloads") or {}
            if not isinstance(payloads, Mapping):
                raise ValueError("payloads must be a mapping")
            config_rel = str(payloads.get("config") or "")
            checksums = data.get("checksums") or {}
            if not isinstance(checksums, Mapping):
                raise ValueError("checksums must be a mapping")
            size_value = data.get("size_bytes") or 0
            return cls(
                id=str(data.get("id") or path.name),
                kind=str(data["kind"]),
                created_at=created_at,
                source_version=_optional_str(data.get("source_version")),
                path=path,
                config_name=Path(config_rel).name,
                checksums={str(k): str(v) for k, v in checksums.items()},
                size_bytes=int(size_value) if isinstance(size_value, (int, str)) else 0,
                hostname=_optional_str(data.get("hostname")),
                install_root=_optional_str(data.get("install_root")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SnapshotError(f"Malformed snapshot metadata in {path}: {exc}") from exc

    def with_protected(self, protected: bool) -> SnapshotSet:
        """Return a copy with the transient protected flag set."""
        return SnapshotSet(
            id=self.id,
            kind=self.kind,
            created_at=self.created_at,
            source_version=self.source_version,
            path=self.path,
            config_name=self.config_name,
            checksums=dict(self.checksums),
            size_bytes=self.size_bytes,
            hostname=self.hostname,
            install_root=self.install_root,
            protected=protected,
        )


@dataclass(slots=True)
class SnapshotWorkspace:
    """A snapshot directory that is still being written."""

    id: str
    kind: str
    created_at: datetime
    path: Path
    final_path: Path

    @property
    def config_dir(self) -> Path:
        return self.path / CONFIG_DIRNAME

    @property
    def database_dir(self) -> Path:
        return self.path / DATABASE_DIRNAME

    @property
    def database_dump(self) -> Path:
        return self.database_dir / DATABASE_DUMP_NAME

    @property
    def tree_archive(self) -> Path:
        return self.path / TREE_ARCHIVE_NAME


class SnapshotStore:
    """Allocate, finalise, list and delete snapshots below *root*."""

    def __init__(self, root: Path) -> None:
        """Remember the snapshot root directory."""
        self.root = root

    def ensure_root(self) -> None:
        """Create the snapshot root (traversable, not listable by others)."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o711)
        except OSError as exc:
            raise SnapshotError(f"Unable to prepare snapshot root {self.root}: {exc}") from exc

    def allocate(
        self,
        kind: str | SnapshotKind,
        *,
        now: datetime | None = None,
        owner: tuple[str, str] | None = None,
    ) -> SnapshotWorkspace:
        """Create an empty ``.partial`` directory for a new snapshot.

        When *owner* (user, group) is given and the caller is root, the
        workspace is handed to that account so it can write the dump.
        """
        tag = normalize_kind(kind)
        created_at = now or datetime.now(tz=UTC)
        self.ensure_root()
        base = f"{ID_PREFIX}{created_at:%Y%m%d-%H%M%S}-{tag}"
        snapshot_id = base
        counter = 1
        while (self.root / snapshot_id).exists() or (
            self.root / f"{snapshot_id}{PARTIAL_SUFFIX}"
        ).exists():
            counter += 1
            snapshot_id = f"{base}-{counter}"

        workspace = SnapshotWorkspace(
            id=snapshot_id,
            kind=tag,
            created_at=created_at,
            path=self.root / f"{snapshot_id}{PARTIAL_SUFFIX}",
            final_path=self.root / snapshot_id,
        )
        try:
            for directory in (workspace.path, workspace.config_dir, workspace.database_dir):
                directory.mkdir(mode=0o750, exist_ok=False)
                os.chmod(directory, 0o750)
                if owner is not None:
                    _chown_if_root(directory, owner)
        except OSError as exc:
            raise SnapshotError(f"Unable to allocate snapshot directory: {exc}") from exc
        return workspace

    def finalize(self, workspace: SnapshotWorkspace, snapshot: SnapshotSet) -> SnapshotSet:
        """Write metadata into *workspace* and publish it under its final id."""
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(workspace.path), prefix=f".{METADATA_NAME}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot.to_metadata(), handle, indent=2)
                handle.write("\n")
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, workspace.path / METADATA_NAME)
            os.rename(workspace.path, workspace.final_path)
        except OSError as exc:
            raise SnapshotError(f"Failed to finalise snapshot {workspace.id}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return self.require(workspace.id)

    def list_snapshots(self, *, protected_id: str | None = None) -> list[SnapshotSet]:
        """Return complete snapshots, newest first."""
        if not self.root.is_dir():
            return []
        snapshots: list[SnapshotSet] = []
        for candidate in self.root.iterdir():
            if not candidate.is_dir() or candidate.name.endswith(PARTIAL_SUFFIX):
                continue
            snapshot = self._load(candidate)
            if snapshot is None:
                continue
            if protected_id is not None and snapshot.id == protected_id:
                snapshot = snapshot.with_protected(True)
            snapshots.append(snapshot)
        snapshots.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return snapshots

    def get(self, snapshot_id: str) -> SnapshotSet | None:
        """Return the complete snapshot called *snapshot_id*, if any."""
        if not snapshot_id or "/" in snapshot_id or snapshot_id.endswith(PARTIAL_SUFFIX):
            return None
        path = self.root / snapshot_id
        if not path.is_dir():
            return None
        return self._load(path)

    def require(self, snapshot_id: str) -> SnapshotSet:
        """Return *snapshot_id* or raise :class:`SnapshotNotFoundError`."""
        snapshot = self.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(
                f"Snapshot '{snapshot_id}' does not exist or is incomplete under {self.root}."
            )
        return snapshot

    def delete(self, snapshot_id: str) -> None:
        """Remove the snapshot directory for *snapshot_id*."""
        path = self.root / snapshot_id
        if path.parent != self.root or not path.is_dir():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found under {self.root}.")
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise SnapshotError(f"Failed to delete snapshot {snapshot_id}: {exc}") from exc

    def partials(self) -> list[Path]:
        """Return leftover directories from interrupted or failed snapshots."""
        if not self.root.is_dir():
            return []
        return sorted(
            path
            for path in self.root.iterdir()
            if path.is_dir() and path.name.endswith(PARTIAL_SUFFIX)
        )

    def remove_partial(self, path: Path) -> None:
        """Delete one leftover ``.partial`` directory returned by :meth:`partials`."""
        if path.parent != self.root or not path.name.endswith(PARTIAL_SUFFIX):
            raise SnapshotError(f"{path} is not a partial snapshot under {self.root}.")
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise SnapshotError(f"Failed to delete partial snapshot {path.name}: {exc}") from exc

    def verify(self, snapshot: SnapshotSet) -> dict[str, str]:
        """Recompute payload checksums; returns ``ok``/``mismatch``/``missing``/``unrecorded``."""
        report: dict[str, str] = {}
        for name, path in snapshot.payloads().items():
            expected = snapshot.checksums.get(name)
            if not path.is_file():
                report[name] = "missing"
            elif not expected:
                report[name] = "unrecorded"
            else:
                report[name] = "ok" if compute_checksum(path) == expected else "mismatch"
        return report

    def measure(self, workspace: SnapshotWorkspace) -> int:
        """Return the on-disk size of *workspace*."""
        return directory_size(workspace.path)

    def _load(self, path: Path) -> SnapshotSet | None:
        metadata_path = path / METADATA_NAME
        if not metadata_path.is_file():
            return None
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise SnapshotError(f"Metadata in {path} is not a JSON object.")
            snapshot = SnapshotSet.from_metadata(path, data)
        except (OSError, json.JSONDecodeError, SnapshotError) as exc:
            LOGGER.warning("Ignoring unreadable snapshot %s: %s", path, exc)
            return None
        if not snapshot.is_complete():
            LOGGER.warning("Ignoring incomplete snapshot %s", path)
            return None
        return snapshot


def _chown_if_root(path: Path, owner: tuple[str, str]) -> None:
    if os.geteuid() != 0:
        return
    user, group = owner
    try:
        shutil.chown(path, user=user, group=group)
    except (LookupError, OSError) as exc:
        LOGGER.warning("Could not hand %s to %s:%s: %s", path, user, group, exc)


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


__all__ = [
    "SnapshotError",
    "SnapshotKind",
    "SnapshotNotFoundError",
    "SnapshotSet",
    "SnapshotStore",
    "SnapshotWorkspace",
    "normalize_kind",
]
