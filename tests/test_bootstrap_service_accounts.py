"""Unit tests for bootstrap service account helpers."""
from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from stackctl.bootstrap.service_accounts import (
    ServiceAccountError,
    ServiceAccountSpec,
    apply_service_account_plan,
    plan_service_account,
    plan_service_account_removal,
)


def _raise_key_error(*args: object, **kwargs: object) -> None:
    raise KeyError


def _account(monkeypatch: pytest.MonkeyPatch, *, members: list[str] | None = None) -> None:
    from stackctl.bootstrap import service_accounts

    pw_entry = SimpleNamespace(pw_uid=990, pw_gid=990, pw_dir="/opt/app", pw_shell="/sbin/nologin")
    group_entry = SimpleNamespace(gr_gid=990, gr_name="app", gr_mem=list(members or []))
    monkeypatch.setattr(service_accounts.pwd, "getpwnam", lambda name: pw_entry)
    monkeypatch.setattr(service_accounts.grp, "getgrnam", lambda name: group_entry)
    monkeypatch.setattr(service_accounts.grp, "getgrgid", lambda gid: group_entry)


def test_plan_creates_group_and_user(monkeypatch: pytest.MonkeyPatch) -> None:
    """Plan should request group and user creation when missing."""
    from stackctl.bootstrap import service_accounts

    monkeypatch.setattr(service_accounts.pwd, "getpwnam", _raise_key_error)
    monkeypatch.setattr(service_accounts.grp, "getgrnam", _raise_key_error)
    monkeypatch.setattr(service_accounts.grp, "getgrgid", _raise_key_error)

    spec = ServiceAccountSpec(name="app", group="app", home=Path("/opt/app"))
    plan = plan_service_account(spec)

    assert [action.kind for action in plan.actions] == ["ensure-group", "create-user"]
    assert plan.actions[0].command == ["groupadd", "--system", "app"]
    assert plan.actions[1].command == [
        "useradd",
        "--system",
        "--home-dir",
        "/opt/app",
        "--no-create-home",
        "--shell",
        "/sbin/nologin",
        "--gid",
        "app",
        "app",
    ]
    assert plan.warnings == []


def test_plan_no_actions_when_account_matches(monkeypatch: pytest.MonkeyPatch) -> None:
    """Plan should be empty when user and group already match expectations."""
    _account(monkeypatch)

    plan = plan_service_account(ServiceAccountSpec(name="app", group="app"))

    assert plan.actions == []
    assert plan.warnings == []


def test_removal_plan_relies_on_userdel_for_private_group(monkeypatch: pytest.MonkeyPatch) -> None:
    """Removing a user whose group has the same name only runs userdel."""
    _account(monkeypatch)

    plan = plan_service_account_removal(ServiceAccountSpec(name="app", group="app"))

    assert [action.command for action in plan.actions] == [["userdel", "app"]]


def test_removal_plan_keeps_shared_group(monkeypatch: pytest.MonkeyPatch) -> None:
    """A group with other members is kept and reported."""
    _account(monkeypatch, members=["app", "deploy"])

    plan = plan_service_account_removal(ServiceAccountSpec(name="app", group="app"))

    assert [action.kind for action in plan.actions] == ["remove-user"]
    assert plan.warnings == ["Group 'app' kept; still has members: deploy."]


def test_apply_runs_commands_through_runner(monkeypatch: pytest.MonkeyPatch) -> None:
    """Applying a plan runs each command and returns their descriptions."""
    from stackctl.bootstrap import service_accounts

    monkeypatch.setattr(service_accounts.pwd, "getpwnam", _raise_key_error)
    monkeypatch.setattr(service_accounts.grp, "getgrnam", _raise_key_error)
    commands: list[list[str]] = []

    def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        commands.append(command)
        return subprocess.CompletedProcess(command, 0, "", "")

    plan = plan_service_account(ServiceAccountSpec(name="app", group="app"))
    applied = apply_service_account_plan(plan, runner=runner)

    assert [command[0] for command in commands] == ["groupadd", "useradd"]
    assert applied == ["Create group 'app'.", "Create service user 'app'."]
    assert apply_service_account_plan(plan, runner=runner, dry_run=True) == []


def test_default_runner_raises_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing account command surfaces as a ServiceAccountError."""
    from stackctl.bootstrap import service_accounts

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(command, 9, "", "useradd: user 'app' already exists")

    monkeypatch.setattr(service_accounts.subprocess, "run", fake_run)

    with pytest.raises(ServiceAccountError) as excinfo:
        service_accounts._default_runner(["useradd", "app"])

    assert "exit 9" in str(excinfo.value)
