"""Snapshot creation for the live installation."""
from __future__ import annotations

import logging
import shutil
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from .archive import compute_checksum, create_tree_archive
from .credentials import CredentialContext, CredentialProvider
from .errors import PreconditionError, ToolError
from .installation import Installation
from .logging import OperationScope
from .retention import RetentionPolicy
from .settings import DatabaseSettings, load_settings
from .snapshots import (
    SnapshotError,
    SnapshotKind,
    SnapshotSet,
    SnapshotStore,
    SnapshotWorkspace,
)

LOGGER = logging.getLogger(__name__)

DATABASE_PASSWORD = "database_password"


class BackupError(ToolError):
    """Raised when a snapshot could not be completed."""

    def __init__(self, message: str, *, step: str, workspace: Path | None = None) -> None:
        """Record the failing *step* and the partial directory left behind."""
        super().__init__(message)
        self.step = step
        self.workspace = workspace


class DatabaseDumper(Protocol):
    """The part of the database provider snapshots need."""

    def dump(self, settings: DatabaseSettings, destination: Path, *, run_as: str) -> Path: ...


@dataclass(slots=True)
class CreatedSnapshot:
    """A finished snapshot and whatever retention removed afterwards."""

    snapshot: SnapshotSet
    pruned: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.snapshot.id


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def resolve_database_settings(
    installation: Installation,
    *,
    credentials: CredentialContext | None = None,
    provider: CredentialProvider | None = None,
    settings_path: Path | None = None,
) -> DatabaseSettings:
    """Read connection parameters from the settings file, asking for a missing password."""
    settings = load_settings(settings_path or installation.settings_path)
    database = settings.database
    if database.password:
        return database
    password = credentials.get(DATABASE_PASSWORD) if credentials is not None else None
    if not password and provider is not None:
        password = provider.prompt(f"password for database user '{database.user}'", check_strength=False)
        if credentials is not None:
            credentials.set(DATABASE_PASSWORD, password)
    if not password:
        raise PreconditionError(
            f"No database password in {settings_path or installation.settings_path} and none supplied."
        )
    return DatabaseSettings(
        name=database.name,
        user=database.user,
        password=password,
        host=database.host,
        port=database.port,
    )


@dataclass
class BackupManager:
    """Capture config, database and tree of the installation as a snapshot.

    Payloads are written into ``<id>.partial`` in a fixed order and the
    metadata document comes last; a failure at any step leaves the partial
    directory in place without metadata so it is never listed or restored.
    """

    installation: Installation
    store: SnapshotStore
    database: DatabaseDumper
    retention: RetentionPolicy
    credential_provider: CredentialProvider | None = None
    clock: Callable[[], datetime] = _utc_now

    def create_snapshot(
        self,
        kind: str | SnapshotKind,
        *,
        credentials: CredentialContext | None = None,
        protected_id: str | None = None,
        op: OperationScope | None = None,
    ) -> CreatedSnapshot:
        """Create a snapshot of *kind* and enforce retention."""
        installation = self.installation
        installation.require()
        db_settings = resolve_database_settings(
            installation,
            credentials=credentials,
            provider=self.credential_provider,
        )
        source_version = installation.installed_version()

        try:
            workspace = self.store.allocate(
                kind,
                now=self.clock(),
                owner=(installation.service_user, installation.service_group),
            )
        except SnapshotError as exc:
            raise BackupError(str(exc), step="allocate") from exc
        _step(op, "snapshot.allocate", workspace.id)

        checksums: dict[str, str] = {}
        step = "config"
        try:
            config_copy = workspace.config_dir / installation.settings_path.name
            shutil.copy2(installation.settings_path, config_copy)
            config_copy.chmod(0o640)
            checksums["config"] = compute_checksum(config_copy)
            _step(op, "snapshot.config", config_copy.name)

            step = "database"
            dump_path = self.database.dump(
                db_settings,
                workspace.database_dump,
                run_as=installation.service_user,
            )
            checksums["database"] = compute_checksum(dump_path)
            _step(op, "snapshot.database", dump_path.name)

            step = "tree"
            create_tree_archive(
                installation.root,
                workspace.tree_archive,
                exclude=installation.derived_paths(),
            )
            checksums["tree"] = compute_checksum(workspace.tree_archive)
            _step(op, "snapshot.tree", workspace.tree_archive.name)

            step = "metadata"
            snapshot = self.store.finalize(
                workspace,
                self._describe(workspace, source_version, checksums),
            )
        except (OSError, ToolError, SnapshotError) as exc:
            _step(op, f"snapshot.{step}", str(exc), status="error")
            LOGGER.error("Snapshot %s failed at %s: %s", workspace.id, step, exc)
            raise BackupError(
                f"Snapshot {workspace.id} failed at the {step} step: {exc}",
                step=step,
                workspace=workspace.path,
            ) from exc
        _step(op, "snapshot.complete", snapshot.id)

        created = CreatedSnapshot(snapshot=snapshot)
        try:
            created.pruned = self.retention.enforce(self.store, protected_id=protected_id)
        except (SnapshotError, PreconditionError) as exc:
            created.warnings.append(f"Retention enforcement failed: {exc}")
        if created.pruned:
            _step(op, "snapshot.retention", ", ".join(created.pruned))
        return created

    def _describe(
        self,
        workspace: SnapshotWorkspace,
        source_version: str | None,
        checksums: dict[str, str],
    ) -> SnapshotSet:
        return SnapshotSet(
            id=workspace.id,
            kind=workspace.kind,
            created_at=workspace.created_at,
            source_version=source_version,
            path=workspace.final_path,
            config_name=self.installation.settings_path.name,
            checksums=checksums,
            size_bytes=self.store.measure(workspace),
            hostname=socket.gethostname(),
            install_root=str(self.installation.root),
        )


def _step(op: OperationScope | None, name: str, detail: object, *, status: str = "success") -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "BackupError",
    "BackupManager",
    "CreatedSnapshot",
    "DATABASE_PASSWORD",
    "resolve_database_settings",
]
