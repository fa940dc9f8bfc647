"""PostgreSQL provider.

Administrative statements run as the database superuser's OS account through
``sudo -u postgres psql``. Dumps and loads run as the application's service
account against the numeric loopback address, with credentials supplied
through a throwaway ``.pgpass`` file rather than the environment.
"""
from __future__ import annotations

import gzip
import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..archive import gzip_file
from ..errors import ToolError
from ..logging import ToolOutputLog
from ..settings import DatabaseSettings
from .commands import run_command

LOGGER = logging.getLogger(__name__)

# Working directory for commands run as another account; the caller's cwd may
# not be readable by that account.
NEUTRAL_CWD = Path(tempfile.gettempdir())


class DatabaseError(ToolError):
    """Raised when a database command fails."""


def quote_ident(name: str) -> str:
    """Quote *name* as a SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote *value* as a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def _pgpass_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace(":", "\\:")


@contextmanager
def pgpass_file(settings: DatabaseSettings, *, owner: str | None = None) -> Iterator[Path]:
    """Yield a private ``.pgpass`` for *settings*; it is removed on exit.

    The file lives in a fresh 0700 directory handed to *owner* when the
    caller is root, so only that account and root can read it.
    """
    if not settings.password:
        raise DatabaseError("Database password is required to connect as the service account.")
    directory = Path(tempfile.mkdtemp(prefix="stackctl-pgpass-"))
    try:
        os.chmod(directory, 0o700)
        path = directory / ".pgpass"
        line = ":".join(
            [
                _pgpass_escape(settings.loopback_host()),
                str(settings.port),
                _pgpass_escape(settings.name),
                _pgpass_escape(settings.user),
                _pgpass_escape(settings.password),
            ]
        )
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(line + "\n")
        if owner is not None and os.geteuid() == 0:
            shutil.chown(directory, user=owner)
            shutil.chown(path, user=owner)
        yield path
    finally:
        shutil.rmtree(directory, ignore_errors=True)


@dataclass(slots=True)
class PostgresProvider:
    """Run PostgreSQL client tools on behalf of the lifecycle operations."""

    tool_log: ToolOutputLog | None = None
    admin_user: str = "postgres"
    psql_bin: str = "psql"
    pg_dump_bin: str = "pg_dump"
    sudo_bin: str = "sudo"

    # -- administrative statements ------------------------------------
    def database_exists(self, name: str) -> bool:
        """Return True when database *name* exists."""
        result = self._admin_sql(
            f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(name)};",
            tuples_only=True,
            error_prefix="database lookup",
        )
        return (result.stdout or "").strip() == "1"

    def create_role(self, user: str, password: str) -> None:
        """Create (or re-password) the login role *user*."""
        statement = (
            "DO $$ BEGIN "
            f"IF NOT EXISTS (SELECT FROM pg_roles WHERE rolname = {quote_literal(user)}) THEN "
            f"CREATE ROLE {quote_ident(user)} LOGIN PASSWORD {quote_literal(password)}; "
            f"ELSE ALTER ROLE {quote_ident(user)} LOGIN PASSWORD {quote_literal(password)}; "
            "END IF; END $$;"
        )
        self._admin_sql(statement, error_prefix=f"create role {user}")

    def drop_role(self, user: str) -> None:
        """Drop the role *user* if present."""
        self._admin_sql(f"DROP ROLE IF EXISTS {quote_ident(user)};", error_prefix=f"drop role {user}")

    def create_database(self, name: str, owner: str) -> None:
        """Create an empty database *name* owned by *owner*."""
        self._admin_sql(
            f"CREATE DATABASE {quote_ident(name)} OWNER {quote_ident(owner)};",
            error_prefix=f"create database {name}",
        )

    def drop_database(self, name: str) -> None:
        """Terminate sessions on *name* and drop it if present."""
        self._admin_sql(
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE datname = {quote_literal(name)} AND pid <> pg_backend_pid();\n"
            f"DROP DATABASE IF EXISTS {quote_ident(name)};",
            error_prefix=f"drop database {name}",
        )

    # -- service account operations -----------------------------------
    def dump(self, settings: DatabaseSettings, destination: Path, *, run_as: str) -> Path:
        """Write a gzip-compressed plain SQL dump of the database to *destination*."""
        plain = destination.with_suffix("")  # database.sql.gz -> database.sql
        with pgpass_file(settings, owner=run_as) as pgpass:
            args = self._as_user(
                run_as,
                pgpass,
                [
                    self.pg_dump_bin,
                    "--host",
                    settings.loopback_host(),
                    "--port",
                    str(settings.port),
                    "--username",
                    settings.user,
                    "--no-password",
                    "--file",
                    str(plain),
                    settings.name,
                ],
            )
            try:
                self._run(args, error_prefix="pg_dump")
            except DatabaseError:
                plain.unlink(missing_ok=True)
                raise
        return gzip_file(plain, destination)

    def load(self, settings: DatabaseSettings, dump_path: Path, *, run_as: str) -> None:
        """Stream the gzip dump *dump_path* into the (empty) database."""
        with pgpass_file(settings, owner=run_as) as pgpass:
            args = self._as_user(
                run_as,
                pgpass,
                [
                    self.psql_bin,
                    "--host",
                    settings.loopback_host(),
                    "--port",
                    str(settings.port),
                    "--username",
                    settings.user,
                    "--no-password",
                    "--quiet",
                    "--set",
                    "ON_ERROR_STOP=1",
                    "--dbname",
                    settings.name,
                ],
            )
            result = self._stream_into(args, dump_path)
        if self.tool_log is not None:
            self.tool_log.record(args, result)
        if result.returncode != 0:
            log_path = self.tool_log.path if self.tool_log is not None else None
            detail = "" if log_path else f": {(result.stderr or '').strip() or 'no output'}"
            raise DatabaseError(f"psql restore failed (exit {result.returncode}){detail}", log_path=log_path)

    # ------------------------------------------------------------------
    def _as_user(self, user: str, pgpass: Path, command: Sequence[str]) -> list[str]:
        return [self.sudo_bin, "-u", user, "--", "env", f"PGPASSFILE={pgpass}", *command]

    def _admin_sql(
        self,
        sql: str,
        *,
        error_prefix: str,
        tuples_only: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.sudo_bin, "-u", self.admin_user, "--", self.psql_bin, "--no-psqlrc"]
        args.extend(["--set", "ON_ERROR_STOP=1", "--dbname", "postgres"])
        if tuples_only:
            args.extend(["--tuples-only", "--no-align"])
        return self._run(args, error_prefix=error_prefix, input_text=sql)

    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            args,
            error_cls=DatabaseError,
            error_prefix=error_prefix,
            tool_log=self.tool_log,
            cwd=NEUTRAL_CWD,
            input_text=input_text,
        )

    def _stream_into(self, args: Sequence[str], dump_path: Path) -> subprocess.CompletedProcess[str]:
        """Pipe the decompressed dump into *args* (isolated for testing)."""
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                process = subprocess.Popen(  # noqa: S603, S607
                    list(args),
                    stdin=subprocess.PIPE,
                    stdout=out,
                    stderr=err,
                    cwd=str(NEUTRAL_CWD),
                )
            except FileNotFoundError as exc:
                raise DatabaseError(f"{args[0]} not found: {exc}") from exc
            self._feed(process, dump_path)
            returncode = process.wait()
            out.seek(0)
            err.seek(0)
            stdout = out.read().decode("utf-8", "replace")
            stderr = err.read().decode("utf-8", "replace")
        return subprocess.CompletedProcess(list(args), returncode, stdout=stdout, stderr=stderr)

    @staticmethod
    def _feed(process: subprocess.Popen[bytes], dump_path: Path) -> None:
        assert process.stdin is not None
        try:
            with gzip.open(dump_path, "rb") as reader:
                shutil.copyfileobj(reader, process.stdin, length=1024 * 1024)
        except BrokenPipeError:
            LOGGER.debug("psql closed its input early; exit status decides the outcome")
        except OSError as exc:
            process.kill()
            process.wait()
            raise DatabaseError(f"Unable to read database dump {dump_path}: {exc}") from exc
        finally:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass


__all__ = ["DatabaseError", "PostgresProvider", "pgpass_file", "quote_ident", "quote_literal"]
