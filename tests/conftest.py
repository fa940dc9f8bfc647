"""Pytest configuration helpers and shared fakes for the test suite."""

from __future__ import annotations

import gzip
import json
import os
import pwd
import shutil
import subprocess
import tarfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest
import yaml

from stackctl.backups import BackupManager
from stackctl.config import AppConfig, load_config
from stackctl.credentials import CredentialProvider
from stackctl.health import HealthChecker
from stackctl.installation import Installation
from stackctl.lifecycle import LifecycleOrchestrator
from stackctl.locking import LockManager
from stackctl.preflight import Preflight
from stackctl.providers.application import MigrationError
from stackctl.providers.database import DatabaseError
from stackctl.providers.packages import DependencyError, PackageProvider
from stackctl.restore import RestoreEngine
from stackctl.retention import RetentionPolicy
from stackctl.settings import DatabaseSettings
from stackctl.snapshots import SnapshotStore

DB_PASSWORD = "S3cure!Passw0rd"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class DummyDatabase:
    """File-backed stand-in for the PostgreSQL provider; one JSON document per database."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.roles: dict[str, str] = {}
        self.calls: list[tuple[str, ...]] = []
        self.fail_dump = False
        self.fail_load = False

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def tables(self, name: str) -> dict[str, list[object]]:
        return json.loads(self._path(name).read_text(encoding="utf-8"))

    def seed(self, name: str, tables: dict[str, list[object]]) -> None:
        self._path(name).write_text(json.dumps(tables), encoding="utf-8")

    def database_exists(self, name: str) -> bool:
        return self._path(name).exists()

    def create_role(self, user: str, password: str) -> None:
        self.calls.append(("create_role", user))
        self.roles[user] = password

    def drop_role(self, user: str) -> None:
        self.calls.append(("drop_role", user))
        self.roles.pop(user, None)

    def create_database(self, name: str, owner: str) -> None:
        self.calls.append(("create_database", name, owner))
        if self.database_exists(name):
            raise DatabaseError(f"create database {name} failed (exit 1)")
        self.seed(name, {})

    def drop_database(self, name: str) -> None:
        self.calls.append(("drop_database", name))
        self._path(name).unlink(missing_ok=True)

    def dump(self, settings: DatabaseSettings, destination: Path, *, run_as: str) -> Path:
        self.calls.append(("dump", settings.name, run_as))
        if self.fail_dump:
            raise DatabaseError("pg_dump failed (exit 1)")
        assert settings.password, "dump requires a password"
        with gzip.open(destination, "wt", encoding="utf-8") as handle:
            handle.write(self._path(settings.name).read_text(encoding="utf-8"))
        return destination

    def load(self, settings: DatabaseSettings, dump_path: Path, *, run_as: str) -> None:
        self.calls.append(("load", settings.name, run_as))
        if self.fail_load:
            raise DatabaseError("psql restore failed (exit 3)")
        with gzip.open(dump_path, "rt", encoding="utf-8") as handle:
            self._path(settings.name).write_text(handle.read(), encoding="utf-8")


class DummyServices:
    """In-memory service manager; services listed in ``broken`` fail to start."""

    def __init__(self, unit_dir: Path) -> None:
        self.unit_dir = unit_dir
        self.states: dict[str, str] = {}
        self.enabled: set[str] = set()
        self.broken: set[str] = set()
        self.calls: list[tuple[str, ...]] = []

    def stop_all(self, services: Sequence[str]) -> None:
        for service in reversed(list(services)):
            self.calls.append(("stop", service))
            self.states[service] = "inactive"

    def start_all(self, services: Sequence[str]) -> None:
        for service in services:
            self.calls.append(("start", service))
            self.states[service] = "failed" if service in self.broken else "active"

    def enable_all(self, services: Sequence[str]) -> None:
        for service in services:
            self.calls.append(("enable", service))
            self.enabled.add(service)

    def disable(self, service: str) -> None:
        self.calls.append(("disable", service))
        self.enabled.discard(service)

    def is_active(self, service: str) -> str:
        return self.states.get(service, "inactive")

    def statuses(self, services: Sequence[str]) -> dict[str, str]:
        return {service: self.is_active(service) for service in services}

    def install_unit(self, source: Path) -> Path:
        self.unit_dir.mkdir(parents=True, exist_ok=True)
        target = self.unit_dir / source.name
        shutil.copy2(source, target)
        return target

    def remove_unit(self, service: str) -> bool:
        path = self.unit_dir / f"{service}.service"
        if not path.exists():
            return False
        path.unlink()
        return True

    def daemon_reload(self) -> None:
        self.calls.append(("daemon-reload",))


class DummyApplication:
    """Records management commands instead of running ``manage.py``."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_migrate = False
        self.admin_password: str | None = None

    def migrate(self, installation: Installation) -> None:
        self.calls.append("migrate")
        if self.fail_migrate:
            raise MigrationError("manage.py migrate failed (exit 1)")

    def collect_static(self, installation: Installation) -> None:
        self.calls.append("collectstatic")
        installation.static_dir.mkdir(parents=True, exist_ok=True)
        (installation.static_dir / "site.css").write_text("body {}\n", encoding="utf-8")

    def remove_stale_content_types(self, installation: Installation) -> None:
        self.calls.append("remove_stale_contenttypes")

    def create_admin(self, installation: Installation, *, username: str, email: str, password: str) -> None:
        self.calls.append(f"createsuperuser:{username}")
        self.admin_password = password


class DummyHardener:
    """Hardening that only counts how often it ran."""

    def __init__(self) -> None:
        self.runs = 0

    def apply(self, installation: Installation) -> list[str]:
        self.runs += 1
        return []


class DummyPackages(PackageProvider):
    """Real package loading with the installer command seam replaced."""

    def __init__(self) -> None:
        super().__init__()
        self.commands: list[list[str]] = []
        self.fail_install = False

    def _run_install_command(
        self,
        cmd: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        self.commands.append(list(cmd))
        if error_prefix == "pip install" and self.fail_install:
            raise DependencyError("pip install failed (exit 1)")
        if error_prefix == "venv":
            python = Path(cmd[-1]) / "bin" / "python"
            python.parent.mkdir(parents=True, exist_ok=True)
            python.write_text("#!/bin/sh\n", encoding="utf-8")
        return subprocess.CompletedProcess(list(cmd), 0, "", "")


def build_package(
    parent: Path,
    version: str,
    *,
    files: dict[str, str] | None = None,
    os_major: str = "9",
) -> Path:
    """Write a release package directory for *version* below *parent*."""
    package = parent / f"package-{version}"
    if package.exists():
        return package
    source_tree = parent / f"src-{version}" / f"app-{version}"
    contents = {
        "release.yml": f"version: {version}\n",
        "requirements.txt": "Django\n",
        "manage.py": "print('manage')\n",
        "core/views.py": f"VERSION = '{version}'\n",
        "media/README": "shipped placeholder\n",
    }
    contents.update(files or {})
    for relative, text in contents.items():
        path = source_tree / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    (package / "source").mkdir(parents=True)
    with tarfile.open(package / "source" / f"app-{version}.tar.gz", "w:gz") as archive:
        archive.add(source_tree, arcname=source_tree.name)
    (package / "wheels").mkdir()
    (package / "wheels" / "Django-4.2-py3-none-any.whl").write_bytes(b"wheel")
    (package / "systemd").mkdir()
    for unit in ("app.service", "app-rq.service"):
        (package / "systemd" / unit).write_text("[Unit]\nDescription=app\n", encoding="utf-8")
    manifest = {"name": "app", "version": version, "os": {"id": "rocky", "major": os_major}}
    (package / "manifest.yml").write_text(yaml.safe_dump(manifest), encoding="utf-8")
    return package


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a config rooted entirely below *tmp_path*."""
    os_release = tmp_path / "os-release"
    if not os_release.exists():
        os_release.write_text('ID="rocky"\nVERSION_ID="9.3"\n', encoding="utf-8")
    user = pwd.getpwuid(os.getuid()).pw_name
    values: dict[str, object] = {
        "install_root": str(tmp_path / "opt" / "app"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "service_user": user,
        "service_group": user,
        "snapshots": {"root": str(tmp_path / "snapshots"), "keep_count": 3},
        "database": {"password": DB_PASSWORD},
        "health": {"retries": 2, "interval": 0.01, "probe_url": None},
        "preflight": {"require_root": False, "os_release": str(os_release), "min_free_gb": 0.001},
        "systemd": {"unit_dir": str(tmp_path / "units")},
        "hardening": {"enabled": False},
    }
    values.update(overrides)
    return load_config(tmp_path / "missing.yml", env={}, overrides=values)


@dataclass
class Stack:
    """An orchestrator wired to fakes, plus handles on each fake."""

    tmp_path: Path
    config: AppConfig
    installation: Installation
    store: SnapshotStore
    database: DummyDatabase
    services: DummyServices
    application: DummyApplication
    packages: DummyPackages
    hardener: DummyHardener
    orchestrator: LifecycleOrchestrator

    def package(self, version: str, **kwargs: object) -> Path:
        return build_package(self.tmp_path / "packages", version, **kwargs)  # type: ignore[arg-type]

    def install(self, version: str = "1.0.0") -> None:
        result = self.orchestrator.install(self.package(version))
        assert result.success, result.message


def build_stack(tmp_path: Path, **config_overrides: object) -> Stack:
    """Wire a :class:`LifecycleOrchestrator` to in-memory fakes below *tmp_path*."""
    (tmp_path / "packages").mkdir(parents=True, exist_ok=True)
    config = make_config(tmp_path, **config_overrides)
    installation = Installation.from_config(config)
    store = SnapshotStore(config.snapshots.root)
    database = DummyDatabase(tmp_path / "pgdata")
    services = DummyServices(config.systemd.unit_dir)
    application = DummyApplication()
    packages = DummyPackages()
    hardener = DummyHardener()
    credentials = CredentialProvider(prompter=None)
    health = HealthChecker(retries=2, interval=0, probe_url=None, sleep=lambda _: None)
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
    orchestrator = LifecycleOrchestrator(
        config=config,
        installation=installation,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        store=store,
        backups=backups,
        restorer=restorer,
        services=services,  # type: ignore[arg-type]
        database=database,  # type: ignore[arg-type]
        packages=packages,
        application=application,  # type: ignore[arg-type]
        hardener=hardener,  # type: ignore[arg-type]
        health=health,
        preflight=Preflight(config.preflight),
        credential_provider=credentials,
        manage_accounts=False,
    )
    return Stack(
        tmp_path=tmp_path,
        config=config,
        installation=installation,
        store=store,
        database=database,
        services=services,
        application=application,
        packages=packages,
        hardener=hardener,
        orchestrator=orchestrator,
    )


@pytest.fixture
def stack(tmp_path: Path) -> Stack:
    """Return a fake-backed stack with nothing installed yet."""
    return build_stack(tmp_path)


@pytest.fixture
def installed(stack: Stack) -> Stack:
    """Return a stack with version 1.0.0 installed and some data in place."""
    stack.install("1.0.0")
    stack.database.seed(stack.config.database.name, {"users": [1, 2, 3], "orders": [10]})
    media = stack.installation.tree_dir / "media"
    (media / "upload.png").write_bytes(b"png")
    return stack
