"""Inspect, create and remove the application's service account."""
from __future__ import annotations

import grp
import pwd
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..errors import ToolError


class ServiceAccountError(ToolError):
    """Raised when a useradd/groupadd/userdel command fails."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for the application's runtime service account."""

    name: str
    group: str | None = None
    system: bool = True
    create_group: bool = True
    home: Path | None = None
    shell: str | None = "/sbin/nologin"


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the service account on the host."""

    user_exists: bool
    group_exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    shell: str | None = None
    primary_group: str | None = None
    group_members: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ServiceAccountAction:
    """Single step required to reach the desired state."""

    kind: Literal["ensure-group", "create-user", "remove-user", "remove-group"]
    description: str
    command: list[str] | None = None


@dataclass(slots=True)
class ServiceAccountPlan:
    """Aggregated actions and warnings required to satisfy the spec."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Return the current status for *spec* from system passwd/group databases."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
    except KeyError:
        pw_entry = None

    primary_group = None
    if pw_entry is not None:
        try:
            primary_group = grp.getgrgid(pw_entry.pw_gid).gr_name
        except KeyError:
            primary_group = None

    group_exists = False
    members: list[str] = []
    if spec.group:
        try:
            group_entry = grp.getgrnam(spec.group)
        except KeyError:
            pass
        else:
            group_exists = True
            members = list(group_entry.gr_mem)

    return ServiceAccountStatus(
        user_exists=pw_entry is not None,
        group_exists=group_exists,
        uid=pw_entry.pw_uid if pw_entry else None,
        gid=pw_entry.pw_gid if pw_entry else None,
        home=Path(pw_entry.pw_dir) if pw_entry else None,
        shell=pw_entry.pw_shell if pw_entry else None,
        primary_group=primary_group,
        group_members=members,
    )


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return a plan describing how to create *spec* on the current host."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)

    if spec.group and not status.group_exists:
        if spec.create_group:
            command = ["groupadd"]
            if spec.system:
                command.append("--system")
            command.append(spec.group)
            plan.actions.append(
                ServiceAccountAction(
                    kind="ensure-group",
                    description=f"Create group '{spec.group}'.",
                    command=command,
                )
            )
        else:
            plan.warnings.append(f"Group '{spec.group}' is missing and create_group is False.")

    if not status.user_exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        if spec.home:
            command.extend(["--home-dir", str(spec.home), "--no-create-home"])
        else:
            command.append("--no-create-home")
        if spec.shell:
            command.extend(["--shell", str(spec.shell)])
        if spec.group:
            command.extend(["--gid", spec.group])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction(
                kind="create-user",
                description=f"Create service user '{spec.name}'.",
                command=command,
            )
        )
    elif spec.group and status.primary_group and status.primary_group != spec.group:
        plan.warnings.append(
            f"User '{spec.name}' primary group is '{status.primary_group}', expected '{spec.group}'."
        )

    return plan


def plan_service_account_removal(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return a plan that removes the user and, when unused, its group."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)
    if status.user_exists:
        plan.actions.append(
            ServiceAccountAction(
                kind="remove-user",
                description=f"Remove service user '{spec.name}'.",
                command=["userdel", spec.name],
            )
        )
    if spec.group and status.group_exists:
        others = [member for member in status.group_members if member != spec.name]
        if others:
            plan.warnings.append(
                f"Group '{spec.group}' kept; still has members: {', '.join(sorted(others))}."
            )
        elif spec.group != spec.name or not status.user_exists:
            # userdel removes a same-named private group itself.
            plan.actions.append(
                ServiceAccountAction(
                    kind="remove-group",
                    description=f"Remove group '{spec.group}'.",
                    command=["groupdel", spec.group],
                )
            )
    return plan


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def apply_service_account_plan(
    plan: ServiceAccountPlan,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Execute the commands described by *plan*; returns the descriptions applied."""
    if runner is None:
        runner = _default_runner

    applied: list[str] = []
    for action in plan.actions:
        if action.command is None or dry_run:
            continue
        runner(action.command)
        applied.append(action.description)
    return applied


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    result = subprocess.run(command, check=False, capture_output=True, text=True)  # noqa: S603,S607
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "no output").strip()
        raise ServiceAccountError(f"{command[0]} failed (exit {result.returncode}): {message}")
    return result


__all__ = [
    "ServiceAccountAction",
    "ServiceAccountError",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "inspect_service_account",
    "plan_service_account",
    "plan_service_account_removal",
]
