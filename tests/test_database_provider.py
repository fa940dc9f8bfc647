"""Tests for the PostgreSQL provider."""
from __future__ import annotations

import gzip
import os
import pwd
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from stackctl.providers.database import (
    DatabaseError,
    PostgresProvider,
    pgpass_file,
    quote_ident,
    quote_literal,
)
from stackctl.settings import DatabaseSettings

CURRENT_USER = pwd.getpwuid(os.getuid()).pw_name


def _settings(**overrides: object) -> DatabaseSettings:
    values: dict[str, object] = {"name": "app", "user": "app", "password": "S3cure!Passw0rd"}
    values.update(overrides)
    return DatabaseSettings(**values)  # type: ignore[arg-type]


def test_quote_helpers_escape() -> None:
    """Identifiers and literals are quoted with doubled delimiters."""
    assert quote_ident('we"ird') == '"we""ird"'
    assert quote_literal("it's") == "'it''s'"


def test_pgpass_file_is_private_and_removed() -> None:
    """The pgpass file is 0600, escapes separators and disappears afterwards."""
    with pgpass_file(_settings(password="a:b\\c", host="localhost")) as path:
        assert oct(path.stat().st_mode & 0o777) == "0o600"
        assert oct(path.parent.stat().st_mode & 0o777) == "0o700"
        assert path.read_text(encoding="utf-8") == "127.0.0.1:5432:app:app:a\\:b\\\\c\n"

    assert not path.exists()
    assert not path.parent.exists()


def test_pgpass_requires_password() -> None:
    """Connecting as the service account needs a password."""
    with pytest.raises(DatabaseError):
        with pgpass_file(_settings(password=None)):
            pass


def test_admin_sql_runs_as_superuser(monkeypatch: pytest.MonkeyPatch) -> None:
    """Administrative statements go through sudo and stdin, never argv."""
    calls: list[tuple[list[str], str | None]] = []

    def fake_run(
        self: PostgresProvider,
        args: Sequence[str],
        *,
        error_prefix: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        calls.append((list(args), input_text))
        return subprocess.CompletedProcess(list(args), 0, "1\n", "")

    monkeypatch.setattr(PostgresProvider, "_run", fake_run)
    provider = PostgresProvider()

    assert provider.database_exists("app") is True
    provider.create_role("app", "pa'ss")

    args, sql = calls[0]
    assert args[:6] == ["sudo", "-u", "postgres", "--", "psql", "--no-psqlrc"]
    assert "--tuples-only" in args
    assert sql == "SELECT 1 FROM pg_database WHERE datname = 'app';"
    role_args, role_sql = calls[1]
    assert "pa'ss" not in " ".join(role_args)
    assert role_sql is not None and "PASSWORD 'pa''ss'" in role_sql


def test_dump_writes_gzip_and_cleans_up(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """pg_dump runs as the service account and its output is compressed."""
    seen: dict[str, object] = {}

    def fake_run(
        self: PostgresProvider,
        args: Sequence[str],
        *,
        error_prefix: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        pgpass = Path(args[5].split("=", 1)[1])
        seen["args"] = list(args)
        seen["pgpass"] = pgpass
        seen["pgpass_existed"] = pgpass.exists()
        Path(args[args.index("--file") + 1]).write_text("CREATE TABLE users();\n", encoding="utf-8")
        return subprocess.CompletedProcess(list(args), 0, "", "")

    monkeypatch.setattr(PostgresProvider, "_run", fake_run)
    destination = tmp_path / "database.sql.gz"

    result = PostgresProvider().dump(_settings(), destination, run_as=CURRENT_USER)

    assert result == destination
    with gzip.open(destination, "rt", encoding="utf-8") as handle:
        assert handle.read() == "CREATE TABLE users();\n"
    assert not (tmp_path / "database.sql").exists()
    args = seen["args"]
    assert isinstance(args, list)
    assert args[:4] == ["sudo", "-u", CURRENT_USER, "--"]
    assert args[args.index("--host") + 1] == "127.0.0.1"
    assert "S3cure!Passw0rd" not in " ".join(args)
    assert seen["pgpass_existed"] is True
    assert not Path(str(seen["pgpass"])).exists()


def test_dump_failure_removes_partial_output(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """A failing pg_dump leaves no partial file behind."""

    def fake_run(
        self: PostgresProvider,
        args: Sequence[str],
        *,
        error_prefix: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        Path(args[args.index("--file") + 1]).write_text("partial", encoding="utf-8")
        raise DatabaseError("pg_dump failed (exit 1)")

    monkeypatch.setattr(PostgresProvider, "_run", fake_run)

    with pytest.raises(DatabaseError):
        PostgresProvider().dump(_settings(), tmp_path / "database.sql.gz", run_as=CURRENT_USER)

    assert list(tmp_path.iterdir()) == []


def test_load_failure_reports_exit_status(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """psql stopping on the first error surfaces as a DatabaseError."""
    streamed: list[list[str]] = []

    def fake_stream(
        self: PostgresProvider,
        args: Sequence[str],
        dump_path: Path,
    ) -> subprocess.CompletedProcess[str]:
        streamed.append(list(args))
        return subprocess.CompletedProcess(list(args), 3, "", "ERROR:  relation exists\n")

    monkeypatch.setattr(PostgresProvider, "_stream_into", fake_stream)

    with pytest.raises(DatabaseError) as excinfo:
        PostgresProvider().load(_settings(), tmp_path / "database.sql.gz", run_as=CURRENT_USER)

    assert "psql restore failed (exit 3): ERROR:  relation exists" in str(excinfo.value)
    assert "ON_ERROR_STOP=1" in streamed[0]
    assert streamed[0][streamed[0].index("--dbname") + 1] == "app"
