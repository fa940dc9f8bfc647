"""Tests for the structured operation log and the tool output log."""
from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from stackctl.logging import StructuredLogger, ToolOutputLog


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger.logs_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_one_record_with_steps(tmp_path: Path) -> None:
    """Each operation appends a single JSON line with its steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("backup create", args={"kind": "manual"}, target={"kind": "snapshot"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("snapshot.database", detail=Path("/tmp/db.sql.gz"))
        op.success("Snapshot created.", changed=1, backups=["backup-1"])

    (record,) = _records(logger)
    assert record["command"] == "backup create"
    assert record["args"] == {"kind": "manual"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"][0]["name"] == "snapshot.database"  # type: ignore[index]
    assert record["steps"][0]["detail"] == "/tmp/db.sql.gz"  # type: ignore[index]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["backups"] == ["backup-1"]  # type: ignore[index]
    assert record["actor"]["pid"]  # type: ignore[index]


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(KeyboardInterrupt):
        with logger.operation("update"):
            raise KeyboardInterrupt("stop")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert "KeyboardInterrupt" in record["result"]["message"]  # type: ignore[index]


def test_error_result_keeps_rc_and_context(tmp_path: Path) -> None:
    """Error results carry the exit code and a JSON-safe context."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("rollback") as op:
        op.error("Restore failed.", rc=5, context={"recovery": Path("/snap/x")})

    (record,) = _records(logger)
    assert record["result"]["rc"] == 5  # type: ignore[index]
    assert record["result"]["context"] == {"recovery": "/snap/x"}  # type: ignore[index]
    assert record["result"]["errors"] == ["Restore failed."]  # type: ignore[index]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("status", args={"json": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("status") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("status") as op:
        op.success("done", changed=0)


def test_tool_output_log_appends_command_and_streams(tmp_path: Path) -> None:
    """Tool output is appended with the command line and exit status."""
    log = ToolOutputLog(tmp_path / "logs" / "tools.log")

    log.record(["pg_dump", "app"], subprocess.CompletedProcess(["pg_dump"], 1, "", "permission denied\n"))
    log.record(["systemctl", "start", "app.service"], subprocess.CompletedProcess([], 0, "", ""))

    text = log.path.read_text(encoding="utf-8")
    assert "$ pg_dump app (exit 1)" in text
    assert "--- stderr ---\npermission denied" in text
    assert "$ systemctl start app.service (exit 0)" in text
    assert "--- stdout ---" not in text
