"""Rebuild the live installation from a snapshot."""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .archive import compute_checksum, extract_archive
from .backups import resolve_database_settings
from .credentials import CredentialContext, CredentialProvider
from .errors import ConsistencyError, PreconditionError, ToolError
from .health import HealthChecker, ServiceStateSource
from .installation import Installation
from .interrupts import InterruptedAtBoundary, deferred_interrupts
from .logging import OperationScope
from .settings import DatabaseSettings
from .snapshots import SnapshotNotFoundError, SnapshotSet

LOGGER = logging.getLogger(__name__)

RESTORE_STEPS = (
    "stop-services",
    "reset-database",
    "load-database",
    "replace-tree",
    "restore-config",
    "harden",
    "start-services",
)


class RestoreFailure(ConsistencyError):
    """Raised when a restore step fails or services do not come back."""

    def __init__(
        self,
        message: str,
        *,
        step: str,
        recovery_snapshot: str | None = None,
        failed_services: Sequence[str] = (),
    ) -> None:
        """Record the failing *step*, affected services and recovery path."""
        if recovery_snapshot:
            message = f"{message} Recover with snapshot '{recovery_snapshot}'."
        super().__init__(message, recovery_snapshot=recovery_snapshot)
        self.step = step
        self.failed_services = list(failed_services)


class ServiceController(ServiceStateSource, Protocol):
    def stop_all(self, services: Sequence[str]) -> None: ...

    def start_all(self, services: Sequence[str]) -> None: ...


class DatabaseRestorer(Protocol):
    def drop_database(self, name: str) -> None: ...

    def create_database(self, name: str, owner: str) -> None: ...

    def load(self, settings: DatabaseSettings, dump_path: Path, *, run_as: str) -> None: ...


class Hardener(Protocol):
    def apply(self, installation: Installation) -> list[str]: ...


class StaticCollector(Protocol):
    def collect_static(self, installation: Installation) -> None: ...


@dataclass(slots=True)
class RestoreResult:
    """Outcome of a healthy restore."""

    snapshot_id: str
    services: dict[str, str]
    probe_ok: bool | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return True


@dataclass
class RestoreEngine:
    """Apply a snapshot to the installation in a fixed, non-reentrant order.

    Every step failure is fatal and raises :class:`RestoreFailure`; nothing is
    undone automatically. The database reset and tree replacement run with
    interrupts deferred.
    """

    installation: Installation
    services: ServiceController
    database: DatabaseRestorer
    hardener: Hardener
    health: HealthChecker
    static: StaticCollector | None = None
    credential_provider: CredentialProvider | None = None

    def restore(
        self,
        snapshot: SnapshotSet,
        *,
        credentials: CredentialContext | None = None,
        recovery_snapshot: str | None = None,
        op: OperationScope | None = None,
    ) -> RestoreResult:
        """Restore *snapshot*; *recovery_snapshot* is named in any failure."""
        if not snapshot.is_complete():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot.id}' is incomplete.")
        db_settings = resolve_database_settings(
            self.installation,
            credentials=credentials,
            provider=self.credential_provider,
            settings_path=snapshot.config_file,
        )
        warnings = self._checksum_warnings(snapshot)
        installation = self.installation
        services = list(installation.services)

        step = RESTORE_STEPS[0]
        try:
            self.services.stop_all(services)
            _step(op, step, services)

            step = RESTORE_STEPS[1]
            with deferred_interrupts(step):
                self.database.drop_database(db_settings.name)
                self.database.create_database(db_settings.name, db_settings.user)
            _step(op, step, db_settings.name)

            step = RESTORE_STEPS[2]
            self.database.load(db_settings, snapshot.database_dump, run_as=installation.service_user)
            _step(op, step, snapshot.database_dump.name)

            step = RESTORE_STEPS[3]
            previous_settings = _read_bytes(installation.settings_path)
            with deferred_interrupts(step):
                self._replace_tree(snapshot)
            _step(op, step, str(installation.root))

            step = RESTORE_STEPS[4]
            shutil.copy2(snapshot.config_file, installation.settings_path)
            os.chmod(installation.settings_path, 0o640)
            if previous_settings is not None:
                backup = installation.settings_path.with_name(
                    f"{installation.settings_path.name}.pre-restore"
                )
                _write_private(backup, previous_settings)
            _step(op, step, installation.settings_path.name)
        except InterruptedAtBoundary as exc:
            _step(op, step, str(exc), status="error")
            raise RestoreFailure(
                f"Restore of '{snapshot.id}' was interrupted after step '{step}' ({exc}); "
                "services are stopped.",
                step=step,
                recovery_snapshot=recovery_snapshot,
                failed_services=services,
            ) from exc
        except (ToolError, OSError, PreconditionError) as exc:
            _step(op, step, str(exc), status="error")
            raise RestoreFailure(
                f"Restore of '{snapshot.id}' failed at step '{step}': {exc}.",
                step=step,
                recovery_snapshot=recovery_snapshot,
            ) from exc

        step = RESTORE_STEPS[5]
        if self.static is not None:
            try:
                self.static.collect_static(installation)
            except ToolError as exc:
                warnings.append(f"Static assets were not regenerated: {exc}")
        hardening_warnings = self.hardener.apply(installation)
        warnings.extend(hardening_warnings)
        _step(op, step, None, status="warning" if hardening_warnings else "success")

        step = RESTORE_STEPS[6]
        try:
            self.services.start_all(services)
        except ToolError as exc:
            _step(op, step, str(exc), status="error")
            raise RestoreFailure(
                f"Restore of '{snapshot.id}' failed at step '{step}': {exc}.",
                step=step,
                recovery_snapshot=recovery_snapshot,
                failed_services=services,
            ) from exc
        report = self.health.wait_for_active(self.services, services)
        warnings.extend(report.warnings)
        if not report.healthy:
            failed = report.failed_services
            _step(op, step, report.services, status="error")
            raise RestoreFailure(
                f"Services did not become active after restoring '{snapshot.id}': "
                f"{', '.join(failed)}.",
                step=step,
                recovery_snapshot=recovery_snapshot,
                failed_services=failed,
            )
        _step(op, step, report.services)
        return RestoreResult(
            snapshot_id=snapshot.id,
            services=report.services,
            probe_ok=report.probe_ok,
            warnings=warnings,
        )

    def _replace_tree(self, snapshot: SnapshotSet) -> None:
        """Swap the live tree for the archived one, keeping derived subtrees."""
        root = self.installation.root
        root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".stackctl-restore-", dir=str(root.parent)))
        try:
            extract_archive(snapshot.tree_archive, staging)
            for relative in self.installation.derived_paths():
                live = root / relative
                if live.exists() and not (staging / relative).exists():
                    (staging / relative).parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(live), str(staging / relative))
            for child in list(root.iterdir()):
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            for child in list(staging.iterdir()):
                shutil.move(str(child), str(root / child.name))
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _checksum_warnings(self, snapshot: SnapshotSet) -> list[str]:
        warnings: list[str] = []
        for name, path in snapshot.payloads().items():
            expected = snapshot.checksums.get(name)
            if not expected:
                warnings.append(f"No checksum recorded for {name} payload.")
            elif compute_checksum(path) != expected:
                warnings.append(f"Checksum mismatch for {name} payload ({path.name}).")
        for warning in warnings:
            LOGGER.warning("Snapshot %s: %s", snapshot.id, warning)
        return warnings


def _read_bytes(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _write_private(path: Path, data: bytes) -> None:
    """Write *data* to *path* without ever exposing it beyond mode 0640."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, 0o640)


def _step(op: OperationScope | None, name: str, detail: object, *, status: str = "success") -> None:
    if op is not None:
        op.add_step(f"restore.{name}", status=status, detail=detail)


__all__ = ["RESTORE_STEPS", "RestoreEngine", "RestoreFailure", "RestoreResult"]
