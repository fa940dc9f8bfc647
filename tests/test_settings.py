"""Tests for the application settings file."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from stackctl.settings import (
    ApplicationSettings,
    DatabaseSettings,
    SettingsError,
    load_settings,
    parse_settings,
    write_settings,
)


def test_write_then_load_keeps_unknown_keys(tmp_path: Path) -> None:
    """Keys stackctl does not manage survive a rewrite."""
    path = tmp_path / "app" / "settings.yml"
    settings = ApplicationSettings(
        database=DatabaseSettings(name="app", user="app", password="S3cure!Passw0rd"),
        secret_key="k" * 20,
        allowed_hosts=["shop.example.com"],
        extra={"time_zone": "UTC"},
    )

    write_settings(path, settings)
    loaded = load_settings(path)

    assert oct(path.stat().st_mode & 0o777) == "0o640"
    assert loaded.database.password == "S3cure!Passw0rd"
    assert loaded.allowed_hosts == ["shop.example.com"]
    assert loaded.extra == {"time_zone": "UTC"}
    assert yaml.safe_load(path.read_text(encoding="utf-8"))["time_zone"] == "UTC"
    assert not list(path.parent.glob(".settings.yml.*"))


def test_repr_hides_secrets() -> None:
    """Passwords and keys never appear in the dataclass repr."""
    settings = ApplicationSettings(
        database=DatabaseSettings(name="app", user="app", password="S3cure!Passw0rd"),
        secret_key="topsecret",
    )

    assert "S3cure" not in repr(settings)
    assert "topsecret" not in repr(settings)


@pytest.mark.parametrize("host", ["localhost", "LOCALHOST", "localhost.localdomain"])
def test_loopback_host_pins_ipv4(host: str) -> None:
    """Local host names resolve to the IPv4 loopback address."""
    assert DatabaseSettings(name="app", user="app", host=host).loopback_host() == "127.0.0.1"
    assert DatabaseSettings(name="app", user="app", host="db.internal").loopback_host() == "db.internal"


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (["a"], "must contain a mapping"),
        ({"secret_key": "x"}, "missing the 'database' section"),
        ({"database": {"name": "app"}}, "lacks: user"),
        ({"database": {"name": "app", "user": "app", "port": "abc"}}, "invalid database port"),
        ({"database": {"name": "app", "user": "app"}, "allowed_hosts": 5}, "allowed_hosts must be a list"),
    ],
)
def test_parse_settings_rejects_malformed(data: object, message: str) -> None:
    """Malformed documents raise SettingsError."""
    with pytest.raises(SettingsError) as excinfo:
        parse_settings(data)

    assert message in str(excinfo.value)


def test_load_settings_missing_file(tmp_path: Path) -> None:
    """A missing settings file is reported clearly."""
    with pytest.raises(SettingsError) as excinfo:
        load_settings(tmp_path / "settings.yml")

    assert "Settings file not found" in str(excinfo.value)
