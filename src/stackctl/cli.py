"""Typer-powered command line interface for ``stackctl``.

Every command runs inside :meth:`StructuredLogger.operation` so the
operations log records what was asked, which steps ran and how it ended.
Lifecycle commands and snapshot mutations hold the installation lock.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError
from .config import AppConfig, load_config
from .errors import ConsistencyError, PreconditionError, ToolError
from .exit_codes import ExitCode
from .lifecycle import LifecycleOrchestrator, LifecycleResult
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .snapshots import SnapshotError, SnapshotSet
from .versioning import VersionRelation

console = Console()

_HANDLED_ERRORS = (PreconditionError, ToolError, ConsistencyError, SnapshotError)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stackctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Answer yes to confirmation prompts (non-interactive mode).",
)

PACKAGE_DIR_ARGUMENT = typer.Argument(
    ...,
    help="Release package directory (manifest.yml, source/, wheels/).",
    file_okay=False,
    dir_okay=True,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Install, update, back up and roll back the application stack.

        A release package is deployed into a single installation made of an
        application tree, a PostgreSQL database, a settings file and a set of
        systemd services. Every destructive operation is preceded by a
        snapshot that can be restored with ``stackctl rollback``.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    orchestrator: LifecycleOrchestrator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except PreconditionError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    logger = StructuredLogger(config.logs_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    orchestrator = LifecycleOrchestrator.from_config(config, logger=logger, locks=locks)
    runtime = RuntimeContext(config=config, logger=logger, locks=locks, orchestrator=orchestrator)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Seconds to wait for the installation lock (0 fails immediately).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stackctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _exception_error(op: OperationScope, exc: Exception) -> NoReturn:
    rc = int(getattr(exc, "exit_code", ExitCode.PROVIDER))
    context: dict[str, object] = {"error_type": type(exc).__name__}
    recovery = getattr(exc, "recovery_snapshot", None)
    if recovery:
        context["recovery_snapshot"] = recovery
    _command_error(op, str(exc), rc=rc, context=context)


def _render_services(services: Mapping[str, str]) -> None:
    if not services:
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("State")
    for name, state in services.items():
        colour = "green" if state == "active" else "red"
        table.add_row(name, f"[{colour}]{state}[/{colour}]")
    console.print(table)


def _finish_lifecycle(op: OperationScope, result: LifecycleResult, *, json_output: bool) -> None:
    """Render *result*, record it and exit non-zero when the operation failed."""
    payload = result.to_dict()
    if json_output:
        console.print_json(data=payload)
    else:
        colour = "green" if result.success else "red"
        console.print(f"[{colour}]{result.message}[/{colour}]")
        _render_services(result.services)
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        if result.snapshots_created:
            console.print(f"Snapshots created: {', '.join(result.snapshots_created)}")
        if result.snapshots_pruned:
            console.print(f"Snapshots pruned: {', '.join(result.snapshots_pruned)}")
    # Shown once on the terminal only; never part of the logged payload.
    for label, value in result.reveal.items():
        console.print(f"[bold]Generated {label}:[/bold] {value}")

    if not result.success:
        op.error(
            result.message,
            errors=[result.message],
            rc=int(result.exit_code),
            backups=result.snapshots_created,
            context=payload,
        )
        raise typer.Exit(code=int(result.exit_code))
    if result.warnings:
        op.warning(
            result.message,
            warnings=result.warnings,
            changed=1,
            backups=result.snapshots_created,
            context=payload,
        )
    else:
        op.success(result.message, changed=1, backups=result.snapshots_created, context=payload)


def _cancelled(op: OperationScope, message: str) -> None:
    console.print(f"[yellow]{message}[/yellow]")
    op.warning(message, warnings=["user-cancelled"])


@app.command()
def install(
    ctx: typer.Context,
    package_dir: Path = PACKAGE_DIR_ARGUMENT,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install the release in PACKAGE_DIR on a clean host."""
    runtime = _get_runtime(ctx)
    orchestrator = runtime.orchestrator
    with runtime.logger.operation(
        "install",
        args={"package_dir": str(package_dir), "yes": yes, "json": json_output},
        target={"kind": "installation", "root": str(runtime.config.install_root)},
    ) as op:
        if not yes and not typer.confirm(
            f"Install the release from {package_dir} into {runtime.config.install_root}?",
            default=True,
        ):
            _cancelled(op, "Install cancelled.")
            return
        try:
            result = orchestrator.install(package_dir, op=op)
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)
        _finish_lifecycle(op, result, json_output=json_output)


@app.command()
def update(
    ctx: typer.Context,
    package_dir: Path = PACKAGE_DIR_ARGUMENT,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Update the installation to the release in PACKAGE_DIR."""
    runtime = _get_runtime(ctx)

    def _confirm(relation: VersionRelation, current: str, candidate: str) -> bool:
        if yes:
            return True
        if relation is VersionRelation.SAME:
            prompt = f"Version {candidate} is already installed. Reinstall it?"
        else:
            prompt = f"Version {candidate} is older than the installed {current}. Downgrade?"
        return typer.confirm(prompt, default=False)

    with runtime.logger.operation(
        "update",
        args={"package_dir": str(package_dir), "yes": yes, "json": json_output},
        target={"kind": "installation", "root": str(runtime.config.install_root)},
    ) as op:
        try:
            result = runtime.orchestrator.update(package_dir, confirm=_confirm, op=op)
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)
        _finish_lifecycle(op, result, json_output=json_output)


@app.command()
def rollback(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot to restore."),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore the installation from SNAPSHOT_ID after taking a safety snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback",
        args={"snapshot": snapshot_id, "yes": yes, "json": json_output},
        target={"kind": "snapshot", "id": snapshot_id},
    ) as op:
        if not yes and not typer.confirm(
            f"Replace the live database, tree and settings with snapshot '{snapshot_id}'?",
            default=False,
        ):
            _cancelled(op, "Rollback cancelled.")
            return
        try:
            result = runtime.orchestrator.rollback(snapshot_id, op=op)
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)
        _finish_lifecycle(op, result, json_output=json_output)


@app.command()
def uninstall(
    ctx: typer.Context,
    final_snapshot: bool = typer.Option(
        True,
        "--final-snapshot/--no-final-snapshot",
        help="Take a final snapshot before removing anything.",
    ),
    delete_snapshots: bool = typer.Option(
        False,
        "--delete-snapshots",
        help="Also delete every snapshot (asks for confirmation).",
    ),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove the installation, its database, services and service account."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall",
        args={
            "final_snapshot": final_snapshot,
            "delete_snapshots": delete_snapshots,
            "yes": yes,
            "json": json_output,
        },
        target={"kind": "installation", "root": str(runtime.config.install_root)},
    ) as op:
        if not yes and not typer.confirm(
            f"Uninstall {runtime.config.install_root} and drop its database?",
            default=False,
        ):
            _cancelled(op, "Uninstall cancelled.")
            return
        if delete_snapshots and not yes:
            delete_snapshots = typer.confirm(
                f"Delete ALL snapshots under {runtime.config.snapshots.root}? This cannot be undone.",
                default=False,
            )
        try:
            result = runtime.orchestrator.uninstall(
                final_snapshot=final_snapshot,
                delete_snapshots=delete_snapshots,
                op=op,
            )
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)
        _finish_lifecycle(op, result, json_output=json_output)


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the installed version and the state of every service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "installation", "root": str(runtime.config.install_root)},
    ) as op:
        try:
            payload = runtime.orchestrator.status()
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_row("Installed", "yes" if payload["installed"] else "no")
            table.add_row("Root", str(payload["install_root"]))
            table.add_row("Version", str(payload["version"] or "-"))
            table.add_row("Snapshots", str(payload["snapshots"]))
            table.add_row("Latest Snapshot", str(payload["latest_snapshot"] or "-"))
            console.print(table)
            services = payload["services"]
            if isinstance(services, Mapping):
                _render_services(services)
            for warning in payload.get("warnings") or []:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
        op.success("Reported installation status.", changed=0, context=payload)


backups_app = typer.Typer(help="Create, inspect and prune snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


def _find_snapshot(runtime: RuntimeContext, op: OperationScope, snapshot_id: str) -> SnapshotSet:
    try:
        snapshot = runtime.orchestrator.store.get(snapshot_id)
    except SnapshotError as exc:
        _command_error(op, str(exc), rc=2)
    if snapshot is None:
        _command_error(op, f"Snapshot '{snapshot_id}' not found.", rc=2)
    return snapshot


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    kind: str = typer.Option(
        "manual",
        "--kind",
        help="Tag recorded in the snapshot id and metadata.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Snapshot the live configuration, database and application tree."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"kind": kind, "json": json_output},
        target={"kind": "snapshot", "root": str(runtime.config.snapshots.root)},
    ) as op:
        try:
            created = runtime.orchestrator.backup(kind, op=op)
        except BackupError as exc:
            context = {"step": exc.step, "partial": str(exc.workspace) if exc.workspace else None}
            _command_error(op, f"Failed to create snapshot: {exc}", rc=int(exc.exit_code), context=context)
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)

        payload: dict[str, object] = {
            "snapshot": created.snapshot.to_listing(),
            "checksums": dict(created.snapshot.checksums),
            "pruned": list(created.pruned),
            "warnings": list(created.warnings),
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]Created snapshot '{created.id}'.[/green]")
            console.print(f"Location: {created.snapshot.path}")
            console.print(f"Size: {created.snapshot.size_bytes} bytes")
            if created.pruned:
                console.print(f"Pruned by retention: {', '.join(created.pruned)}")
            for warning in created.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")

        if created.warnings:
            op.warning(
                "Snapshot created with warnings.",
                warnings=created.warnings,
                changed=1,
                backups=[created.id],
                context=payload,
            )
        else:
            op.success("Snapshot created.", changed=1, backups=[created.id], context=payload)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List complete snapshots, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "snapshot", "root": str(runtime.config.snapshots.root)},
    ) as op:
        try:
            snapshots = runtime.orchestrator.store.list_snapshots()
        except SnapshotError as exc:
            _command_error(op, f"Failed to read snapshots: {exc}", rc=2)
        entries = [snapshot.to_listing() for snapshot in snapshots]

        if json_output:
            console.print_json(data={"snapshots": entries})
            op.success("Reported snapshot list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Kind")
        table.add_column("Created At")
        table.add_column("Version")
        table.add_column("Size", justify="right")

        if not entries:
            table.add_row("(none)", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry.get("id", "")),
                    str(entry.get("kind", "")),
                    str(entry.get("created_at", "")),
                    str(entry.get("source_version") or "-"),
                    _format_size(entry.get("size_bytes")),
                )

        console.print(table)
        op.success("Reported snapshot list.", changed=0)


@backups_app.command("show")
def backup_show(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the metadata recorded for a snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup show",
        args={"id": snapshot_id, "json": json_output},
        target={"kind": "snapshot", "id": snapshot_id},
    ) as op:
        snapshot = _find_snapshot(runtime, op, snapshot_id)
        metadata = snapshot.to_metadata()

        if json_output:
            console.print_json(data={"snapshot": metadata})
            op.success("Reported snapshot details (JSON).", changed=0)
            return

        table = Table(show_header=False)
        for key in ["id", "kind", "created_at", "source_version", "hostname", "install_root", "size_bytes"]:
            value = metadata.get(key)
            if value is not None:
                table.add_row(key.replace("_", " ").title(), str(value))
        for name, digest in sorted(snapshot.checksums.items()):
            table.add_row(f"Checksum ({name})", digest)
        table.add_row("Path", str(snapshot.path))
        console.print(table)
        op.success("Reported snapshot details.", changed=0)


@backups_app.command("verify")
def backup_verify(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier to verify."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Recompute payload checksums for a snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup verify",
        args={"id": snapshot_id, "json": json_output},
        target={"kind": "snapshot", "id": snapshot_id},
    ) as op:
        snapshot = _find_snapshot(runtime, op, snapshot_id)
        try:
            report = runtime.orchestrator.store.verify(snapshot)
        except OSError as exc:
            _command_error(op, f"Failed to read snapshot payloads: {exc}", rc=int(ExitCode.ENVIRONMENT))
        problems = [f"{name}: {state}" for name, state in report.items() if state != "ok"]

        if json_output:
            console.print_json(data={"id": snapshot.id, "payloads": report, "ok": not problems})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Payload", style="bold")
            table.add_column("Status")
            for name, state in report.items():
                colour = "green" if state == "ok" else "yellow"
                table.add_row(name, f"[{colour}]{state}[/{colour}]")
            console.print(table)

        # Integrity problems are reported, never fatal.
        if problems:
            op.warning("Snapshot verification found problems.", warnings=problems, context={"payloads": report})
        else:
            op.success("Snapshot verified.", changed=0, context={"payloads": report})


@backups_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    keep: int | None = typer.Option(
        None,
        "--keep",
        "-k",
        help="Retain the most recent N snapshots (defaults to snapshots.keep_count; 0 keeps all).",
    ),
    partials: bool = typer.Option(
        False,
        "--partials",
        help="Also delete leftovers of failed snapshots.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply the retention policy to the snapshot store."""
    if keep is not None and keep < 0:
        console.print("[red]--keep must be zero or a positive integer.[/red]")
        raise typer.Exit(code=2)

    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup prune",
        args={"keep": keep, "partials": partials, "json": json_output},
        target={"kind": "snapshot", "root": str(runtime.config.snapshots.root)},
    ) as op:
        try:
            deleted, removed = runtime.orchestrator.prune(keep=keep, partials=partials, op=op)
        except OSError as exc:
            _command_error(op, f"Failed to prune snapshots: {exc}", rc=int(ExitCode.ENVIRONMENT))
        except _HANDLED_ERRORS as exc:
            _exception_error(op, exc)

        payload = {"deleted": deleted, "partials": [str(path) for path in removed]}
        if json_output:
            console.print_json(data=payload)
        elif not deleted and not removed:
            console.print("Nothing to prune.")
        else:
            for snapshot_id in deleted:
                console.print(f"Deleted snapshot {snapshot_id}")
            for path in removed:
                console.print(f"Removed partial snapshot {path}")
        op.success(
            f"Pruned {len(deleted)} snapshot(s).",
            changed=len(deleted) + len(removed),
            backups=deleted,
            context=payload,
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def _format_size(value: object) -> str:
    if not isinstance(value, int):
        return "-"
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{value} B"


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
