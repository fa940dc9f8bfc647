"""Configuration loader for stackctl.

Configuration values are read from multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/stackctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STACKCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STACKCTL_SNAPSHOTS__KEEP_COUNT=5
    export STACKCTL_DATABASE__HOST=db.internal

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import PreconditionError

ENV_PREFIX = "STACKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

GENERATE_TOKEN = "<generate>"
PROMPT_TOKEN = "<prompt>"


class ConfigError(PreconditionError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SnapshotConfig:
    """Where snapshots live and how many are kept."""

    root: Path = Path("/var/backup/stackctl")
    keep_count: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "keep_count": self.keep_count}


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection defaults and client binaries for the application database."""

    host: str = "localhost"
    port: int = 5432
    name: str = "app"
    user: str = "app"
    password: str = GENERATE_TOKEN
    admin_user: str = "postgres"
    psql_bin: str = "psql"
    pg_dump_bin: str = "pg_dump"
    sudo_bin: str = "sudo"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the password is masked)."""
        password = self.password
        if password not in (GENERATE_TOKEN, PROMPT_TOKEN):
            password = "********"
        return {
            "host": self.host,
            "port": self.port,
            "name": self.name,
            "user": self.user,
            "password": password,
            "admin_user": self.admin_user,
            "psql_bin": self.psql_bin,
            "pg_dump_bin": self.pg_dump_bin,
            "sudo_bin": self.sudo_bin,
        }


@dataclass(frozen=True)
class AdminConfig:
    """Initial administrator account created on install."""

    username: str = "admin"
    email: str = "admin@localhost"
    password: str = GENERATE_TOKEN

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the password is masked)."""
        password = self.password
        if password not in (GENERATE_TOKEN, PROMPT_TOKEN):
            password = "********"
        return {"username": self.username, "email": self.email, "password": password}


@dataclass(frozen=True)
class ApplicationConfig:
    """Settings written into the application's settings file on install."""

    secret_key: str = GENERATE_TOKEN
    allowed_hosts: tuple[str, ...] = ("*",)
    create_admin: bool = True
    admin: AdminConfig = AdminConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the secret key is masked)."""
        secret = self.secret_key
        if secret not in (GENERATE_TOKEN, PROMPT_TOKEN):
            secret = "********"
        return {
            "secret_key": secret,
            "allowed_hosts": list(self.allowed_hosts),
            "create_admin": self.create_admin,
            "admin": self.admin.to_dict(),
        }


@dataclass(frozen=True)
class HealthConfig:
    """Bounded polling parameters used after services are started."""

    retries: int = 10
    interval: float = 3.0
    probe_url: str | None = "http://127.0.0.1/"
    probe_timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "retries": self.retries,
            "interval": self.interval,
            "probe_url": self.probe_url,
            "probe_timeout": self.probe_timeout,
        }


@dataclass(frozen=True)
class PreflightConfig:
    """Host requirements checked before Install."""

    require_root: bool = True
    os_release: Path = Path("/etc/os-release")
    supported_os: tuple[str, ...] = ("rhel", "rocky", "almalinux", "centos")
    supported_majors: tuple[str, ...] = ("8", "9", "10")
    min_free_gb: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "require_root": self.require_root,
            "os_release": str(self.os_release),
            "supported_os": list(self.supported_os),
            "supported_majors": list(self.supported_majors),
            "min_free_gb": self.min_free_gb,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class HardeningConfig:
    """Ownership/permission hardening toggles."""

    enabled: bool = True
    restorecon_bin: str = "restorecon"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "restorecon_bin": self.restorecon_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackctl."""

    config_file: Path
    install_root: Path
    tree_dirname: str
    settings_file: str
    venv_dirname: str
    static_dirname: str
    release_file: str
    preserve_paths: tuple[str, ...]
    service_user: str
    service_group: str
    services: tuple[str, ...]
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    snapshots: SnapshotConfig
    database: DatabaseConfig
    application: ApplicationConfig
    health: HealthConfig
    preflight: PreflightConfig
    systemd: SystemdConfig
    hardening: HardeningConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "tree_dirname": self.tree_dirname,
            "settings_file": self.settings_file,
            "venv_dirname": self.venv_dirname,
            "static_dirname": self.static_dirname,
            "release_file": self.release_file,
            "preserve_paths": list(self.preserve_paths),
            "service_user": self.service_user,
            "service_group": self.service_group,
            "services": list(self.services),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "snapshots": self.snapshots.to_dict(),
            "database": self.database.to_dict(),
            "application": self.application.to_dict(),
            "health": self.health.to_dict(),
            "preflight": self.preflight.to_dict(),
            "systemd": self.systemd.to_dict(),
            "hardening": self.hardening.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackctl/config.yml",
    "install_root": "/opt/app",
    "tree_dirname": "app",
    "settings_file": "settings.yml",
    "venv_dirname": "venv",
    "static_dirname": "static",
    "release_file": "release.yml",
    "preserve_paths": ["media", "scripts"],
    "service_user": "app",
    "service_group": None,  # defaults to service_user
    "services": ["app", "app-rq"],
    "logs_dir": "/var/log/stackctl",
    "runtime_dir": "/run/stackctl",
    "lock_timeout": 0,
    "snapshots": {
        "root": "/var/backup/stackctl",
        "keep_count": 3,
    },
    "database": {
        "host": "localhost",
        "port": 5432,
        "name": "app",
        "user": "app",
        "password": GENERATE_TOKEN,
        "admin_user": "postgres",
        "psql_bin": "psql",
        "pg_dump_bin": "pg_dump",
        "sudo_bin": "sudo",
    },
    "application": {
        "secret_key": GENERATE_TOKEN,
        "allowed_hosts": ["*"],
        "create_admin": True,
        "admin": {
            "username": "admin",
            "email": "admin@localhost",
            "password": GENERATE_TOKEN,
        },
    },
    "health": {
        "retries": 10,
        "interval": 3.0,
        "probe_url": "http://127.0.0.1/",
        "probe_timeout": 5.0,
    },
    "preflight": {
        "require_root": True,
        "os_release": "/etc/os-release",
        "supported_os": ["rhel", "rocky", "almalinux", "centos"],
        "supported_majors": ["8", "9", "10"],
        "min_free_gb": 5,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
    },
    "hardening": {
        "enabled": True,
        "restorecon_bin": "restorecon",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    application = _as_dict(raw.get("application"), "application")
    admin = _as_dict(application.get("admin"), "application.admin")
    unknown_admin = set(admin.keys()) - {"username", "email", "password"}
    if unknown_admin:
        joined = ", ".join(sorted(unknown_admin))
        raise ConfigError(f"Unknown application.admin configuration keys: {joined}.")

    for name in ("tree_dirname", "settings_file", "venv_dirname", "static_dirname"):
        value = raw.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{name} must be a non-empty relative path.")
        if Path(value).is_absolute() or ".." in Path(value).parts:
            raise ConfigError(f"{name} must stay inside the installation root: {value!r}.")

    if not _as_str_tuple(raw.get("services"), "services"):
        raise ConfigError("services must list at least one service unit.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    service_user = str(raw.get("service_user", "app"))
    group_value = raw.get("service_group")
    service_group = str(group_value) if group_value else service_user

    snapshots_mapping = _as_dict(raw.get("snapshots"), "snapshots")
    keep_count = _expect_int(snapshots_mapping.get("keep_count"), "snapshots.keep_count", default=3)
    if keep_count < 0:
        raise ConfigError("snapshots.keep_count must be zero (unlimited) or positive.")
    snapshots = SnapshotConfig(
        root=_to_path(snapshots_mapping.get("root", "/var/backup/stackctl")),
        keep_count=keep_count,
    )

    db_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        host=str(db_mapping.get("host", "localhost")),
        port=_expect_int(db_mapping.get("port"), "database.port", default=5432),
        name=str(db_mapping.get("name", "app")),
        user=str(db_mapping.get("user", "app")),
        password=str(db_mapping.get("password", GENERATE_TOKEN)),
        admin_user=str(db_mapping.get("admin_user", "postgres")),
        psql_bin=str(db_mapping.get("psql_bin", "psql")),
        pg_dump_bin=str(db_mapping.get("pg_dump_bin", "pg_dump")),
        sudo_bin=str(db_mapping.get("sudo_bin", "sudo")),
    )

    app_mapping = _as_dict(raw.get("application"), "application")
    admin_mapping = _as_dict(app_mapping.get("admin"), "application.admin")
    application = ApplicationConfig(
        secret_key=str(app_mapping.get("secret_key", GENERATE_TOKEN)),
        allowed_hosts=_as_str_tuple(app_mapping.get("allowed_hosts"), "application.allowed_hosts"),
        create_admin=bool(app_mapping.get("create_admin", True)),
        admin=AdminConfig(
            username=str(admin_mapping.get("username", "admin")),
            email=str(admin_mapping.get("email", "admin@localhost")),
            password=str(admin_mapping.get("password", GENERATE_TOKEN)),
        ),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    retries = _expect_int(health_mapping.get("retries"), "health.retries", default=10)
    if retries <= 0:
        raise ConfigError("health.retries must be greater than zero.")
    probe_value = health_mapping.get("probe_url")
    health = HealthConfig(
        retries=retries,
        interval=_expect_positive_float(health_mapping.get("interval"), "health.interval", default=3.0),
        probe_url=str(probe_value) if probe_value else None,
        probe_timeout=_expect_positive_float(
            health_mapping.get("probe_timeout"), "health.probe_timeout", default=5.0
        ),
    )

    preflight_mapping = _as_dict(raw.get("preflight"), "preflight")
    preflight = PreflightConfig(
        require_root=bool(preflight_mapping.get("require_root", True)),
        os_release=_to_path(preflight_mapping.get("os_release", "/etc/os-release")),
        supported_os=_as_str_tuple(preflight_mapping.get("supported_os"), "preflight.supported_os"),
        supported_majors=_as_str_tuple(
            preflight_mapping.get("supported_majors"), "preflight.supported_majors"
        ),
        min_free_gb=_expect_positive_float(
            preflight_mapping.get("min_free_gb"), "preflight.min_free_gb", default=5.0
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    hardening_mapping = _as_dict(raw.get("hardening"), "hardening")
    hardening = HardeningConfig(
        enabled=bool(hardening_mapping.get("enabled", True)),
        restorecon_bin=str(hardening_mapping.get("restorecon_bin", "restorecon")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        install_root=_to_path(raw.get("install_root")),
        tree_dirname=str(raw.get("tree_dirname")),
        settings_file=str(raw.get("settings_file")),
        venv_dirname=str(raw.get("venv_dirname")),
        static_dirname=str(raw.get("static_dirname")),
        release_file=str(raw.get("release_file", "release.yml")),
        preserve_paths=_as_str_tuple(raw.get("preserve_paths"), "preserve_paths"),
        service_user=service_user,
        service_group=service_group,
        services=_as_str_tuple(raw.get("services"), "services"),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        lock_timeout=_expect_non_negative_float(raw.get("lock_timeout"), "lock_timeout"),
        snapshots=snapshots,
        database=database,
        application=application,
        health=health,
        preflight=preflight,
        systemd=systemd,
        hardening=hardening,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    # A single scalar from an environment override is treated as a one-item list.
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return (str(value),)
    return tuple(str(item) for item in _as_sequence(value, label))


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str) -> float:
    if value is None:
        return 0.0
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AdminConfig",
    "AppConfig",
    "ApplicationConfig",
    "ConfigError",
    "DatabaseConfig",
    "GENERATE_TOKEN",
    "HardeningConfig",
    "HealthConfig",
    "PROMPT_TOKEN",
    "PreflightConfig",
    "SnapshotConfig",
    "SystemdConfig",
    "load_config",
]
