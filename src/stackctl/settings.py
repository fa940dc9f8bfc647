"""Typed application settings file.

The application reads its database connection, signing key and allowed hosts
from a YAML document that stackctl writes on install. Backups and restores
read the same document back through :func:`load_settings`; nothing parses
generated text.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import PreconditionError

LOOPBACK_ALIASES = {"localhost", "localhost.localdomain", "ip6-localhost"}
LOOPBACK_ADDRESS = "127.0.0.1"


class SettingsError(PreconditionError):
    """Raised when the application settings file is missing or malformed."""


@dataclass(slots=True)
class DatabaseSettings:
    """Connection parameters for the application database."""

    name: str
    user: str
    password: str | None = field(default=None, repr=False)
    host: str = "localhost"
    port: int = 5432

    def loopback_host(self) -> str:
        """Return the host to connect to, pinning local names to IPv4 loopback."""
        if self.host.strip().lower() in LOOPBACK_ALIASES:
            return LOOPBACK_ADDRESS
        return self.host

    def to_dict(self) -> dict[str, object]:
        """Return the serialised form stored in the settings file."""
        return {
            "host": self.host,
            "port": self.port,
            "name": self.name,
            "user": self.user,
            "password": self.password,
        }


@dataclass(slots=True)
class ApplicationSettings:
    """Everything stackctl writes into the application's settings file."""

    database: DatabaseSettings
    secret_key: str | None = field(default=None, repr=False)
    allowed_hosts: list[str] = field(default_factory=lambda: ["*"])
    extra: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return the serialised document; unknown keys are kept as-is."""
        payload: dict[str, object] = dict(self.extra)
        payload["database"] = self.database.to_dict()
        payload["secret_key"] = self.secret_key
        payload["allowed_hosts"] = list(self.allowed_hosts)
        return payload


def parse_settings(data: object, *, source: str = "settings") -> ApplicationSettings:
    """Build :class:`ApplicationSettings` from a decoded YAML document."""
    if not isinstance(data, Mapping):
        raise SettingsError(f"{source} must contain a mapping at the top level.")
    database = data.get("database")
    if not isinstance(database, Mapping):
        raise SettingsError(f"{source} is missing the 'database' section.")

    missing = [key for key in ("name", "user") if not database.get(key)]
    if missing:
        raise SettingsError(f"{source} database section lacks: {', '.join(missing)}.")

    port_value = database.get("port", 5432)
    try:
        port = int(port_value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"{source} has an invalid database port: {port_value!r}.") from exc

    password = database.get("password")
    hosts = data.get("allowed_hosts", ["*"])
    if isinstance(hosts, str):
        hosts = [hosts]
    if not isinstance(hosts, list):
        raise SettingsError(f"{source} allowed_hosts must be a list.")

    secret = data.get("secret_key")
    extra = {
        str(key): value
        for key, value in data.items()
        if key not in {"database", "secret_key", "allowed_hosts"}
    }
    return ApplicationSettings(
        database=DatabaseSettings(
            name=str(database["name"]),
            user=str(database["user"]),
            password=str(password) if password else None,
            host=str(database.get("host") or "localhost"),
            port=port,
        ),
        secret_key=str(secret) if secret else None,
        allowed_hosts=[str(host) for host in hosts],
        extra=extra,
    )


def load_settings(path: Path) -> ApplicationSettings:
    """Read and validate the settings file at *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise SettingsError(f"Settings file not found: {path}") from exc
    except OSError as exc:
        raise SettingsError(f"Unable to read settings file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SettingsError(f"Failed to parse settings file {path}: {exc}") from exc
    return parse_settings(data, source=str(path))


def write_settings(path: Path, settings: ApplicationSettings, *, mode: int = 0o640) -> None:
    """Atomically write *settings* to *path* with restrictive permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(settings.to_dict(), handle, sort_keys=False, default_flow_style=False)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise SettingsError(f"Failed to write settings file {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "ApplicationSettings",
    "DatabaseSettings",
    "SettingsError",
    "load_settings",
    "parse_settings",
    "write_settings",
]
