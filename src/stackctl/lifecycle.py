"""Install, update, rollback and uninstall the managed installation.

Each operation is a linear run of named steps executed while holding the
installation lock. Preconditions are checked before anything is mutated and
raise immediately; a failing step after that point ends the operation and is
reported through :class:`LifecycleResult` with the snapshot an operator should
recover from. Update is the only operation that restores on its own, and only
when dependency installation or tree replacement fails.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .backups import DATABASE_PASSWORD, BackupManager, CreatedSnapshot
from .bootstrap.service_accounts import (
    Runner,
    ServiceAccountSpec,
    apply_service_account_plan,
    plan_service_account,
    plan_service_account_removal,
)
from .config import AppConfig
from .credentials import CredentialContext, CredentialProvider
from .errors import ConsistencyError, PreconditionError, ToolError
from .exit_codes import ExitCode
from .health import HealthChecker
from .installation import Installation, InstallationError
from .interrupts import InterruptedAtBoundary, deferred_interrupts
from .locking import LockManager
from .logging import OperationScope, StructuredLogger, ToolOutputLog
from .preflight import Preflight
from .providers import (
    ApplicationProvider,
    PackageProvider,
    PostgresProvider,
    ReleasePackage,
    SecurityHardener,
    SystemdProvider,
)
from .restore import RestoreEngine, RestoreFailure
from .retention import RetentionPolicy
from .settings import ApplicationSettings, DatabaseSettings, write_settings
from .snapshots import SnapshotError, SnapshotKind, SnapshotStore
from .versioning import VersionRelation, compare_versions

LOGGER = logging.getLogger(__name__)

SECRET_KEY = "secret_key"
ADMIN_PASSWORD = "admin_password"

_STEP_ERRORS = (ToolError, PreconditionError, ConsistencyError, SnapshotError, OSError)

Confirm = Callable[[VersionRelation, str, str], bool]


@dataclass(slots=True)
class LifecycleResult:
    """Outcome of one lifecycle operation."""

    operation: str
    success: bool = True
    message: str = ""
    version: str | None = None
    services: dict[str, str] = field(default_factory=dict)
    failed_step: str | None = None
    recovery_snapshot: str | None = None
    auto_restored: bool = False
    exit_code: int = ExitCode.OK
    warnings: list[str] = field(default_factory=list)
    snapshots_created: list[str] = field(default_factory=list)
    snapshots_pruned: list[str] = field(default_factory=list)
    # Generated secrets the operator has to see once; never serialised.
    reveal: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def healthy(self) -> bool:
        return bool(self.services) and all(state == "active" for state in self.services.values())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary (generated secrets excluded)."""
        return {
            "operation": self.operation,
            "success": self.success,
            "message": self.message,
            "version": self.version,
            "services": dict(self.services),
            "healthy": self.healthy,
            "failed_step": self.failed_step,
            "recovery_snapshot": self.recovery_snapshot,
            "auto_restored": self.auto_restored,
            "exit_code": int(self.exit_code),
            "warnings": list(self.warnings),
            "snapshots_created": list(self.snapshots_created),
            "snapshots_pruned": list(self.snapshots_pruned),
        }


@dataclass
class _Run:
    """Step bookkeeping shared by the operation bodies."""

    result: LifecycleResult
    op: OperationScope | None
    step: str = "preflight"

    def begin(self, step: str) -> None:
        self.step = step

    def done(self, detail: object = None) -> None:
        self._record("success", detail)

    def warn(self, message: str) -> None:
        self.result.warnings.append(message)
        self._record("warning", message)

    def snapshot(self, created: CreatedSnapshot) -> None:
        self.result.snapshots_created.append(created.id)
        self.result.snapshots_pruned.extend(created.pruned)
        self.result.warnings.extend(created.warnings)

    def fail(self, exc: BaseException, *, recovery: str | None = None) -> LifecycleResult:
        result = self.result
        result.success = False
        result.failed_step = self.step
        result.exit_code = _exit_code_for(exc)
        result.recovery_snapshot = getattr(exc, "recovery_snapshot", None) or recovery
        result.message = f"{result.operation.title()} failed at step '{self.step}': {exc}"
        if result.recovery_snapshot:
            result.message += f" Recovery snapshot: {result.recovery_snapshot}."
        if isinstance(exc, RestoreFailure) and exc.failed_services:
            result.services.update({name: "failed" for name in exc.failed_services})
        self._record("error", str(exc))
        LOGGER.error(result.message)
        return result

    def _record(self, status: str, detail: object) -> None:
        if self.op is not None:
            self.op.add_step(f"{self.result.operation}.{self.step}", status=status, detail=detail)


def _exit_code_for(exc: BaseException) -> int:
    code = getattr(exc, "exit_code", None)
    if code is not None:
        return int(code)
    if isinstance(exc, OSError):
        return int(ExitCode.ENVIRONMENT)
    return int(ExitCode.PROVIDER)


@dataclass
class LifecycleOrchestrator:
    """Drive the four lifecycle operations against one installation."""

    config: AppConfig
    installation: Installation
    locks: LockManager
    store: SnapshotStore
    backups: BackupManager
    restorer: RestoreEngine
    services: SystemdProvider
    database: PostgresProvider
    packages: PackageProvider
    application: ApplicationProvider
    hardener: SecurityHardener
    health: HealthChecker
    preflight: Preflight
    credential_provider: CredentialProvider
    account_runner: Runner | None = None
    manage_accounts: bool = True

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        logger: StructuredLogger,
        locks: LockManager | None = None,
        credential_provider: CredentialProvider | None = None,
    ) -> LifecycleOrchestrator:
        """Wire the real providers described by *config*."""
        tool_log = ToolOutputLog(logger.tools_log_path)
        installation = Installation.from_config(config)
        store = SnapshotStore(config.snapshots.root)
        credentials = credential_provider or CredentialProvider()
        database = PostgresProvider(
            tool_log=tool_log,
            admin_user=config.database.admin_user,
            psql_bin=config.database.psql_bin,
            pg_dump_bin=config.database.pg_dump_bin,
            sudo_bin=config.database.sudo_bin,
        )
        services = SystemdProvider(
            tool_log=tool_log,
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
        )
        application = ApplicationProvider(tool_log=tool_log)
        hardener = SecurityHardener(
            tool_log=tool_log,
            enabled=config.hardening.enabled,
            restorecon_bin=config.hardening.restorecon_bin,
        )
        health = HealthChecker(
            retries=config.health.retries,
            interval=config.health.interval,
            probe_url=config.health.probe_url,
            probe_timeout=config.health.probe_timeout,
        )
        backups = BackupManager(
            installation=installation,
            store=store,
            database=database,
            retention=RetentionPolicy(config.snapshots.keep_count),
            credential_provider=credentials,
        )
        restorer = RestoreEngine(
            installation=installation,
            services=services,
            database=database,
            hardener=hardener,
            health=health,
            static=application,
            credential_provider=credentials,
        )
        return cls(
            config=config,
            installation=installation,
            locks=locks or LockManager(config.runtime_dir, config.lock_timeout),
            store=store,
            backups=backups,
            restorer=restorer,
            services=services,
            database=database,
            packages=PackageProvider(tool_log=tool_log),
            application=application,
            hardener=hardener,
            health=health,
            preflight=Preflight(config.preflight),
            credential_provider=credentials,
        )

    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self, op: OperationScope | None) -> Iterator[CredentialContext]:
        """Hold the installation lock and a credential context for one operation."""
        with self.locks.installation_lock(self.installation.root) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            with CredentialContext() as credentials:
                yield credentials

    def _account_spec(self) -> ServiceAccountSpec:
        return ServiceAccountSpec(
            name=self.installation.service_user,
            group=self.installation.service_group,
            home=self.installation.root,
        )

    # -- install -------------------------------------------------------
    def install(self, package_dir: Path, *, op: OperationScope | None = None) -> LifecycleResult:
        """Deploy the release in *package_dir* onto a host without an installation."""
        with self._locked(op) as credentials:
            return self._install(package_dir, credentials, op)

    def _install(
        self,
        package_dir: Path,
        credentials: CredentialContext,
        op: OperationScope | None,
    ) -> LifecycleResult:
        installation = self.installation
        config = self.config
        self.preflight.require_root()
        host = self.preflight.require_supported_os()
        if installation.exists() or installation.has_remnants():
            raise InstallationError(
                f"{installation.root} is not empty; run 'stackctl uninstall' before installing again."
            )
        package = self.packages.load(package_dir)
        self.preflight.require_package_match(package, host)
        self.preflight.require_disk_space(installation.root)
        if self.database.database_exists(config.database.name):
            raise PreconditionError(
                f"Database '{config.database.name}' already exists; drop it or uninstall first."
            )

        provider = self.credential_provider
        db_password = provider.resolve(
            credentials,
            DATABASE_PASSWORD,
            config.database.password,
            label=f"password for database user '{config.database.user}'",
        )
        secret_key = provider.resolve(
            credentials, SECRET_KEY, config.application.secret_key, kind="secret_key"
        )
        admin_password = None
        if config.application.create_admin:
            admin_password = provider.resolve(
                credentials,
                ADMIN_PASSWORD,
                config.application.admin.password,
                label=f"password for administrator '{config.application.admin.username}'",
            )

        result = LifecycleResult(operation="install", version=package.version)
        run = _Run(result, op)
        try:
            run.begin("service-account")
            self._ensure_service_account(run)

            run.begin("extract")
            installation.root.mkdir(parents=True, exist_ok=True)
            staging = self.packages.extract_tree(package, installation.root)
            os.replace(staging, installation.tree_dir)
            run.done(str(installation.tree_dir))
            shipped = installation.installed_version()
            if shipped != package.version:
                run.warn(
                    f"Release file declares {shipped or 'no version'}, package manifest {package.version}."
                )

            run.begin("dependencies")
            self._install_dependencies(package, installation.requirements_path)
            run.done(str(installation.venv_dir))

            run.begin("units")
            self._install_units(package)
            run.done([path.name for path in package.unit_files])

            run.begin("database")
            db_settings = DatabaseSettings(
                name=config.database.name,
                user=config.database.user,
                password=db_password,
                host=config.database.host,
                port=config.database.port,
            )
            self.database.create_role(db_settings.user, db_password)
            self.database.create_database(db_settings.name, db_settings.user)
            run.done(db_settings.name)

            run.begin("configure")
            write_settings(
                installation.settings_path,
                ApplicationSettings(
                    database=db_settings,
                    secret_key=secret_key,
                    allowed_hosts=list(config.application.allowed_hosts),
                ),
            )
            run.done(installation.settings_path.name)

            run.begin("migrate")
            self.application.migrate(installation)
            run.done()

            run.begin("static")
            self.application.collect_static(installation)
            run.done()

            if admin_password is not None:
                run.begin("admin")
                admin = config.application.admin
                try:
                    self.application.create_admin(
                        installation,
                        username=admin.username,
                        email=admin.email,
                        password=admin_password,
                    )
                except ToolError as exc:
                    run.warn(f"Administrator '{admin.username}' was not created: {exc}")
                else:
                    run.done(admin.username)
                    if ADMIN_PASSWORD in credentials.generated:
                        result.reveal[f"administrator '{admin.username}' password"] = admin_password

            run.begin("harden")
            self._harden(run)

            run.begin("start")
            self.services.enable_all(installation.services)
            self._start_and_verify(run)

            run.begin("snapshot")
            run.snapshot(self.backups.create_snapshot(SnapshotKind.INITIAL, credentials=credentials, op=op))
            run.done(result.snapshots_created[-1])
        except _STEP_ERRORS as exc:
            run.fail(exc)
            result.message += " Partial installs are not cleaned up; run 'stackctl uninstall'."
            return result

        result.message = f"Installed version {package.version} at {installation.root}."
        return result

    # -- update --------------------------------------------------------
    def update(
        self,
        package_dir: Path,
        *,
        confirm: Confirm | None = None,
        op: OperationScope | None = None,
    ) -> LifecycleResult:
        """Replace the installed release with the one in *package_dir*.

        *confirm* is asked before a same-version reinstall or a downgrade; when
        it is missing or declines, the update is refused.
        """
        with self._locked(op) as credentials:
            return self._update(package_dir, credentials, confirm, op)

    def _update(
        self,
        package_dir: Path,
        credentials: CredentialContext,
        confirm: Confirm | None,
        op: OperationScope | None,
    ) -> LifecycleResult:
        installation = self.installation
        self.preflight.require_root()
        installation.require()
        current = installation.installed_version()
        if current is None:
            raise InstallationError(f"{installation.release_path} does not declare the installed version.")
        package = self.packages.load(package_dir)
        host = self.preflight.require_supported_os()
        self.preflight.require_package_match(package, host)
        relation = compare_versions(current, package.version)
        if relation is not VersionRelation.UPGRADE:
            if confirm is None or not confirm(relation, current, package.version):
                raise PreconditionError(
                    f"Refusing {relation.value} from {current} to {package.version} without confirmation."
                )
        self.preflight.require_disk_space(installation.root)

        result = LifecycleResult(operation="update", version=current)
        run = _Run(result, op)
        services = list(installation.services)

        try:
            run.begin("snapshot")
            created = self.backups.create_snapshot(SnapshotKind.PRE_UPDATE, credentials=credentials, op=op)
            run.snapshot(created)
            run.done(created.id)
        except _STEP_ERRORS as exc:
            return run.fail(exc)
        recovery = created.id

        try:
            run.begin("stop")
            self.services.stop_all(services)
            run.done(services)
        except _STEP_ERRORS as exc:
            return run.fail(exc, recovery=recovery)

        staging: Path | None = None
        try:
            run.begin("extract")
            staging = self.packages.extract_tree(package, installation.root)
            run.done(staging.name)
        except _STEP_ERRORS as exc:
            # Nothing has been touched yet; put the old release back in service.
            self._restart_quietly(run, services)
            return run.fail(exc, recovery=recovery)

        try:
            try:
                run.begin("dependencies")
                self._install_dependencies(package, staging / "requirements.txt")
                run.done(str(installation.venv_dir))

                run.begin("replace-tree")
                with deferred_interrupts("replace-tree"):
                    self._swap_tree(staging)
                staging = None
                run.done(str(installation.tree_dir))
            except InterruptedAtBoundary as exc:
                # The swap finished; stop here without migrating or restarting.
                staging = None
                run.fail(exc, recovery=recovery)
                result.message += f" Services are stopped; run 'stackctl rollback {recovery}' to return."
                return result
            except _STEP_ERRORS as exc:
                return self._auto_restore(run, exc, recovery, credentials)
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        try:
            run.begin("migrate")
            self.application.migrate(installation)
            run.done()
        except _STEP_ERRORS as exc:
            run.fail(exc, recovery=recovery)
            result.exit_code = ExitCode.CONSISTENCY
            result.message += (
                " Schema migrations are not reverted automatically; review the tool log and, "
                f"if needed, run 'stackctl rollback {recovery}'."
            )
            return result

        run.begin("static")
        try:
            self.application.collect_static(installation)
            run.done()
        except ToolError as exc:
            run.warn(f"Static assets were not collected: {exc}")

        run.begin("stale-content-types")
        try:
            self.application.remove_stale_content_types(installation)
            run.done()
        except ToolError as exc:
            run.warn(f"Stale content types were not removed: {exc}")

        run.begin("harden")
        self._harden(run)

        try:
            run.begin("start")
            self._start_and_verify(run)
        except _STEP_ERRORS as exc:
            run.fail(exc, recovery=recovery)
            result.exit_code = ExitCode.CONSISTENCY
            return result

        run.begin("verify")
        installed = installation.installed_version()
        result.version = installed
        if installed != package.version:
            run.warn(f"Installed version reads {installed}, expected {package.version}.")
        else:
            run.done(installed)

        result.message = f"Updated from {current} to {package.version}."
        return result

    def _auto_restore(
        self,
        run: _Run,
        exc: BaseException,
        snapshot_id: str,
        credentials: CredentialContext,
    ) -> LifecycleResult:
        """Put the pre-update snapshot back after an early update failure."""
        failed_step = run.step
        run.fail(exc, recovery=snapshot_id)
        failure = run.result.message
        run.begin("auto-restore")
        try:
            snapshot = self.store.require(snapshot_id)
            restored = self.restorer.restore(
                snapshot,
                credentials=credentials,
                recovery_snapshot=snapshot_id,
                op=run.op,
            )
        except _STEP_ERRORS as restore_exc:
            run.fail(restore_exc, recovery=snapshot_id)
            run.result.failed_step = failed_step
            run.result.exit_code = ExitCode.CONSISTENCY
            run.result.message = f"{failure} Automatic restore also failed: {restore_exc}"
            return run.result

        result = run.result
        result.failed_step = failed_step
        result.auto_restored = True
        result.services = dict(restored.services)
        result.warnings.extend(restored.warnings)
        result.version = self.installation.installed_version()
        result.message = (
            f"{failure} The installation was restored from '{snapshot_id}' and is running "
            f"version {result.version}."
        )
        run.done(snapshot_id)
        return result

    def _swap_tree(self, staging: Path) -> None:
        """Replace the live tree with *staging*, carrying settings and operator data."""
        installation = self.installation
        tree = installation.tree_dir
        carry = Path(tempfile.mkdtemp(prefix=".stackctl-carry-", dir=str(installation.root)))
        carried_settings = carry / "settings"
        carried: list[str] = []
        if installation.settings_path.exists():
            shutil.copy2(installation.settings_path, carried_settings)
        for relative in installation.preserve_paths:
            source = tree / relative
            if source.exists():
                target = carry / "preserve" / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), str(target))
                carried.append(relative)

        if tree.exists():
            shutil.rmtree(tree)
        os.replace(staging, tree)

        if carried_settings.exists():
            shutil.copy2(carried_settings, installation.settings_path)
        for relative in carried:
            destination = tree / relative
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            elif destination.exists():
                destination.unlink()
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(carry / "preserve" / relative), str(destination))
        # Only discarded once everything is back in place.
        shutil.rmtree(carry)

    # -- rollback ------------------------------------------------------
    def rollback(self, snapshot_id: str, *, op: OperationScope | None = None) -> LifecycleResult:
        """Restore the installation from *snapshot_id* after taking a safety snapshot."""
        with self._locked(op) as credentials:
            self.preflight.require_root()
            target = self.store.require(snapshot_id)
            self.installation.require()

            result = LifecycleResult(operation="rollback", version=self.installation.installed_version())
            run = _Run(result, op)
            try:
                run.begin("snapshot")
                # The target is exempt from retention while the safety snapshot is taken.
                created = self.backups.create_snapshot(
                    SnapshotKind.PRE_ROLLBACK,
                    credentials=credentials,
                    protected_id=target.id,
                    op=op,
                )
                run.snapshot(created)
                run.done(created.id)
            except _STEP_ERRORS as exc:
                return run.fail(exc)

            try:
                run.begin("restore")
                restored = self.restorer.restore(
                    target,
                    credentials=credentials,
                    recovery_snapshot=created.id,
                    op=op,
                )
            except _STEP_ERRORS as exc:
                return run.fail(exc, recovery=created.id)
            run.done(target.id)

        result.services = dict(restored.services)
        result.warnings.extend(restored.warnings)
        result.recovery_snapshot = created.id
        result.version = self.installation.installed_version()
        result.message = (
            f"Rolled back to '{target.id}' (version {result.version}). "
            f"The previous state is kept as '{created.id}'."
        )
        return result

    # -- uninstall -----------------------------------------------------
    def uninstall(
        self,
        *,
        final_snapshot: bool = True,
        delete_snapshots: bool = False,
        op: OperationScope | None = None,
    ) -> LifecycleResult:
        """Remove the installation; every step is attempted even if another failed."""
        with self._locked(op) as credentials:
            self.preflight.require_root()
            installation = self.installation
            if not (installation.exists() or installation.has_remnants()):
                raise InstallationError(f"Nothing to uninstall at {installation.root}.")

            result = LifecycleResult(operation="uninstall", version=installation.installed_version())
            run = _Run(result, op)
            services = list(installation.services)
            db_name, db_user = self._database_identity()

            if final_snapshot and installation.exists():
                self._best_effort(
                    run,
                    "snapshot",
                    lambda: run.snapshot(
                        self.backups.create_snapshot(SnapshotKind.FINAL, credentials=credentials, op=op)
                    ),
                )
            self._best_effort(run, "stop", lambda: self.services.stop_all(services))
            for service in services:
                self._best_effort(run, f"disable.{service}", lambda name=service: self.services.disable(name))
            self._best_effort(run, "units", lambda: self._remove_units(services))

            def _drop_database() -> None:
                with deferred_interrupts("drop-database"):
                    self.database.drop_database(db_name)
                self.database.drop_role(db_user)

            def _delete_tree() -> None:
                with deferred_interrupts("delete-tree"):
                    if installation.root.exists():
                        shutil.rmtree(installation.root)

            try:
                self._best_effort(run, "database", _drop_database)
                self._best_effort(run, "tree", _delete_tree)
            except InterruptedAtBoundary as exc:
                recovery = result.snapshots_created[-1] if result.snapshots_created else None
                return run.fail(exc, recovery=recovery)
            if self.manage_accounts:
                self._best_effort(run, "service-account", lambda: self._remove_service_account(run))
            if delete_snapshots:
                self._best_effort(run, "snapshots", lambda: self._delete_all_snapshots(run))

        result.services = {service: "removed" for service in services}
        if result.warnings:
            result.message = f"Uninstalled with {len(result.warnings)} warning(s)."
        else:
            result.message = f"Uninstalled {installation.root}."
        if result.snapshots_created and not delete_snapshots:
            result.recovery_snapshot = result.snapshots_created[-1]
        return result

    def _best_effort(self, run: _Run, step: str, action: Callable[[], object]) -> None:
        run.begin(step)
        try:
            action()
        except _STEP_ERRORS as exc:
            run.warn(f"{step}: {exc}")
            return
        run.done()

    def _database_identity(self) -> tuple[str, str]:
        """Database name and owner, preferring the installed settings file."""
        try:
            database = self.installation.settings().database
        except PreconditionError:
            return self.config.database.name, self.config.database.user
        return database.name, database.user

    def _remove_units(self, services: list[str]) -> None:
        removed = [service for service in services if self.services.remove_unit(service)]
        if removed:
            self.services.daemon_reload()

    def _remove_service_account(self, run: _Run) -> None:
        plan = plan_service_account_removal(self._account_spec())
        for warning in plan.warnings:
            run.warn(warning)
        apply_service_account_plan(plan, runner=self.account_runner)

    def _delete_all_snapshots(self, run: _Run) -> None:
        for snapshot in self.store.list_snapshots():
            self.store.delete(snapshot.id)
            run.result.snapshots_pruned.append(snapshot.id)
        for partial in self.store.partials():
            self.store.remove_partial(partial)

    # -- snapshots and status ------------------------------------------
    def backup(
        self,
        kind: str | SnapshotKind = SnapshotKind.MANUAL,
        *,
        op: OperationScope | None = None,
    ) -> CreatedSnapshot:
        """Create a snapshot of the live installation under the lock."""
        with self._locked(op) as credentials:
            return self.backups.create_snapshot(kind, credentials=credentials, op=op)

    def prune(
        self,
        *,
        keep: int | None = None,
        partials: bool = False,
        op: OperationScope | None = None,
    ) -> tuple[list[str], list[Path]]:
        """Apply retention (optionally with another *keep*) and drop partial snapshots."""
        policy = RetentionPolicy(keep) if keep is not None else self.backups.retention
        with self._locked(op):
            deleted = policy.enforce(self.store)
            removed: list[Path] = []
            if partials:
                for path in self.store.partials():
                    self.store.remove_partial(path)
                    removed.append(path)
        return deleted, removed

    def status(self) -> dict[str, object]:
        """Describe the installation, its services and the newest snapshot."""
        installation = self.installation
        exists = installation.exists()
        payload: dict[str, object] = {
            "installed": exists,
            "install_root": str(installation.root),
            "version": installation.installed_version() if exists else None,
            "services": {},
            "warnings": [],
        }
        try:
            payload["services"] = self.services.statuses(installation.services)
        except ToolError as exc:
            payload["warnings"] = [f"Service states unavailable: {exc}"]
        snapshots = self.store.list_snapshots()
        payload["snapshots"] = len(snapshots)
        payload["latest_snapshot"] = snapshots[0].id if snapshots else None
        return payload

    # -- shared steps --------------------------------------------------
    def _ensure_service_account(self, run: _Run) -> None:
        if not self.manage_accounts:
            run.done("skipped")
            return
        plan = plan_service_account(self._account_spec())
        for warning in plan.warnings:
            run.warn(warning)
        applied = apply_service_account_plan(plan, runner=self.account_runner)
        run.done(applied or "present")

    def _install_dependencies(self, package: ReleasePackage, requirements: Path) -> None:
        venv = self.installation.venv_dir
        self.packages.ensure_virtualenv(venv, python_bin=package.python_bin)
        self.packages.install_dependencies(venv, requirements, package.wheels_dir)

    def _install_units(self, package: ReleasePackage) -> None:
        for unit in package.unit_files:
            self.services.install_unit(unit)
        self.services.daemon_reload()

    def _harden(self, run: _Run) -> None:
        warnings = self.hardener.apply(self.installation)
        if warnings:
            for warning in warnings:
                run.warn(warning)
        else:
            run.done()

    def _start_and_verify(self, run: _Run) -> None:
        services = list(self.installation.services)
        self.services.start_all(services)
        report = self.health.wait_for_active(self.services, services)
        run.result.services = dict(report.services)
        for warning in report.warnings:
            run.warn(warning)
        if not report.healthy:
            raise ConsistencyError(
                f"Services not active after {report.attempts} checks: {', '.join(report.failed_services)}"
            )
        run.done(report.services)

    def _restart_quietly(self, run: _Run, services: list[str]) -> None:
        try:
            self.services.start_all(services)
            run.result.services = self.services.statuses(services)
        except ToolError as exc:
            run.result.warnings.append(f"Services could not be restarted: {exc}")


__all__ = ["LifecycleOrchestrator", "LifecycleResult"]
