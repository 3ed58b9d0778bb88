"""Typer-powered command line interface for ``tenantctl``.

Every command runs inside a structured :class:`~tenantctl.logging.OperationScope`
and maps failures onto :class:`~tenantctl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import (
    ArchiveNotFoundError,
    ArchiveSubject,
    BackupError,
    BackupManager,
    CertStoreMissingError,
    ContainerNotRunningError,
    UnknownArchiveTypeError,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .lifecycle import BulkReport, LifecycleController, OperationResult, PRECONDITION_REASONS
from .logging import OperationScope, StructuredLogger
from .providers import DockerProvider, RuntimeAdapter, RuntimeAdapterError
from .reconcile import HealthReconciler, LiveHealth, TenantHealth
from .state import LedgerError, StatusLedger
from .tenants import (
    EnvMissingError,
    InvalidTenantNameError,
    Tenant,
    TenantNotFoundError,
    TenantRegistryError,
    discover,
    load_tenant,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to tenantctl's YAML config file.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Assume yes for confirmation prompts.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Multi-tenant application stack manager.

        Deploy, stop and restart tenant stacks, inspect their health against
        the status ledger, and back up or restore tenant databases and the
        edge proxy certificate store.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    ledger: StatusLedger
    adapter: RuntimeAdapter
    lifecycle: LifecycleController
    reconciler: HealthReconciler
    backups: BackupManager


def _build_runtime_adapter(config: AppConfig) -> RuntimeAdapter:
    return DockerProvider(
        docker_bin=config.runtime.docker_bin,
        timeout=config.runtime.timeout,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    ledger = StatusLedger(config.ledger_file)
    adapter = _build_runtime_adapter(config)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        ledger=ledger,
        adapter=adapter,
        lifecycle=LifecycleController(ledger, adapter, config.tenants_root),
        reconciler=HealthReconciler(ledger, adapter),
        backups=BackupManager(
            config.backups.root,
            adapter,
            tenants_root=config.tenants_root,
            cert_store=config.edge_proxy.cert_store,
            proxy_container=config.edge_proxy.container,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the tenantctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"tenantctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _require_tenant(runtime: RuntimeContext, name: str, op: OperationScope) -> Tenant:
    try:
        tenant = load_tenant(runtime.config.tenants_root, name)
    except (TenantNotFoundError, InvalidTenantNameError) as exc:
        _command_error(op, str(exc))
    op.add_step("registry.lookup", status="success", detail=str(tenant.root))
    return tenant


def _snapshot(runtime: RuntimeContext, op: OperationScope) -> list[Tenant]:
    try:
        tenants = discover(runtime.config.tenants_root)
    except TenantRegistryError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    op.add_step("registry.discover", status="success", detail=f"tenants={len(tenants)}")
    return tenants


def _result_exit_code(result: OperationResult) -> ExitCode:
    if result.reason in PRECONDITION_REASONS:
        return ExitCode.VALIDATION
    if "ledger write failed" in result.reason.lower():
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _finish_single(op: OperationScope, result: OperationResult, success_style: str) -> None:
    step = f"lifecycle.{result.action.value.lower()}"
    if not result.succeeded:
        op.add_step(step, status="failed", detail=result.reason)
        _command_error(op, result.message, rc=_result_exit_code(result))
    op.add_step(step, status="success", detail=result.reason)
    console.print(f"[{success_style}]{result.message}[/{success_style}]")
    op.success(result.message, changed=1)


def _finish_bulk(op: OperationScope, report: BulkReport, verb: str) -> None:
    for result in report.results:
        style = "green" if result.succeeded else "red"
        console.print(f"[{style}]{result.message}[/{style}]")
        op.add_step(
            f"{verb}.{result.tenant}",
            status="success" if result.succeeded else "failed",
            detail=result.reason,
        )
    summary = f"{verb}: {report.succeeded} succeeded, {report.failed} failed."
    context = {"succeeded": report.succeeded, "failed": report.failed}
    if report.failed:
        console.print(f"[yellow]{summary}[/yellow]")
        op.error(
            summary,
            errors=[result.message for result in report.failures],
            rc=int(ExitCode.ENVIRONMENT),
            changed=report.succeeded,
            context=context,
        )
        raise typer.Exit(code=ExitCode.ENVIRONMENT)
    console.print(f"[green]{summary}[/green]")
    op.success(summary, changed=report.succeeded, context=context)


def _check_target(op: OperationScope, name: str | None, all_tenants: bool) -> None:
    if all_tenants and name:
        _command_error(op, "Specify either a tenant name or --all, not both.")
    if not all_tenants and not name:
        _command_error(op, "Specify a tenant name or --all.")


@app.command()
def deploy(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Tenant to deploy."),
    all_tenants: bool = typer.Option(False, "--all", help="Deploy every discovered tenant."),
) -> None:
    """Bring tenant stacks up and record the outcome in the ledger."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "deploy",
        args={"name": name, "all": all_tenants},
        target={"kind": "tenant", "name": name or "*"},
    ) as op:
        _check_target(op, name, all_tenants)
        if name is None:
            report = runtime.lifecycle.deploy_all(_snapshot(runtime, op))
            _finish_bulk(op, report, "deploy")
            return
        tenant = _require_tenant(runtime, name, op)
        _finish_single(op, runtime.lifecycle.deploy_one(tenant), "green")


@app.command()
def stop(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Tenant to stop."),
    all_tenants: bool = typer.Option(False, "--all", help="Stop every discovered tenant."),
    yes: bool = YES_OPTION,
) -> None:
    """Tear tenant stacks down and record them as stopped."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name, "all": all_tenants, "yes": yes},
        target={"kind": "tenant", "name": name or "*"},
    ) as op:
        _check_target(op, name, all_tenants)
        if name is None:
            tenants = _snapshot(runtime, op)
            if tenants and not yes:
                confirmed = typer.confirm(f"Stop all {len(tenants)} tenant(s)?", default=False)
                if not confirmed:
                    console.print("[yellow]Aborted.[/yellow]")
                    op.add_step("confirm", status="skipped", detail="declined")
                    op.success("Stop cancelled by operator.", changed=0)
                    return
            _finish_bulk(op, runtime.lifecycle.stop_all(tenants), "stop")
            return
        tenant = _require_tenant(runtime, name, op)
        _finish_single(op, runtime.lifecycle.stop_one(tenant), "yellow")


@app.command()
def restart(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tenant to restart."),
) -> None:
    """Restart a tenant's services in place."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"name": name},
        target={"kind": "tenant", "name": name},
    ) as op:
        tenant = _require_tenant(runtime, name, op)
        _finish_single(op, runtime.lifecycle.restart(tenant), "green")


_HEALTH_STYLES = {
    LiveHealth.HEALTHY: "green",
    LiveHealth.RUNNING: "yellow",
    LiveHealth.STOPPED: "red",
}


def _render_health(value: LiveHealth) -> str:
    style = _HEALTH_STYLES[value]
    return f"[{style}]{value.value}[/{style}]"


def _health_table(rows: Sequence[TenantHealth]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Tenant", style="bold")
    table.add_column("Label")
    table.add_column("Ledger")
    table.add_column("Last action")
    table.add_column("Updated")
    table.add_column("Web")
    table.add_column("DB")
    table.add_column("Drift")
    if not rows:
        table.add_row("(none)", "", "", "", "", "", "", "")
    for row in rows:
        table.add_row(
            row.tenant,
            row.ledger.label,
            row.ledger.status.value,
            row.ledger.last_action,
            row.ledger.timestamp,
            _render_health(row.web),
            _render_health(row.db),
            "[red]yes[/red]" if row.drift else "",
        )
    return table


@app.command()
def status(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Limit the report to one tenant."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Compare ledger state with live container health."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"name": name, "json": json_output},
        target={"kind": "tenant", "name": name or "*"},
    ) as op:
        try:
            if name:
                tenant = _require_tenant(runtime, name, op)
                row = runtime.reconciler.status(tenant)
                if json_output:
                    console.print_json(data=row.to_dict())
                else:
                    console.print(_health_table([row]))
                op.success("Reported tenant status.", changed=0, context={"drift": row.drift})
                return

            fleet = runtime.reconciler.status_all(_snapshot(runtime, op))
        except LedgerError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data=fleet.to_dict())
        else:
            console.print(_health_table(fleet.tenants))
            for orphan in fleet.orphans:
                console.print(
                    f"[yellow]Ledger entry without tenant directory: {orphan.tenant} "
                    f"({orphan.status.value})[/yellow]"
                )
        op.success(
            "Reported fleet status.",
            changed=0,
            context={
                "tenants": len(fleet.tenants),
                "drifted": len(fleet.drifted),
                "orphans": len(fleet.orphans),
            },
        )


@app.command("list")
def list_tenants(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List discovered tenants and their recorded status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "tenant", "scope": "registry"},
    ) as op:
        tenants = _snapshot(runtime, op)
        try:
            entries = runtime.ledger.read()
        except LedgerError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        payload = [
            {
                "name": tenant.name,
                "label": tenant.label,
                "domain": tenant.domain,
                "port": tenant.app_port,
                "image": tenant.app_image,
                "status": entries[tenant.name].status.value if tenant.name in entries else "Unknown",
            }
            for tenant in tenants
        ]
        if json_output:
            console.print_json(data={"tenants": payload})
            op.success("Reported tenant list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Label")
        table.add_column("Domain")
        table.add_column("Port")
        table.add_column("Image")
        table.add_column("Status")
        if not payload:
            table.add_row("(none)", "", "", "", "", "")
        for item in payload:
            table.add_row(
                str(item["name"]),
                str(item["label"]),
                str(item["domain"] or ""),
                "" if item["port"] is None else str(item["port"]),
                str(item["image"] or ""),
                str(item["status"]),
            )
        console.print(table)
        op.success("Reported tenant list.", changed=0)


@app.command()
def logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tenant whose logs to show."),
    tail: int = typer.Option(100, "--tail", "-n", min=1, help="Number of lines to show."),
    service: str = typer.Option("web", "--service", help="Container to read: web or db."),
) -> None:
    """Show recent container logs for a tenant."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"name": name, "tail": tail, "service": service},
        target={"kind": "tenant", "name": name},
    ) as op:
        if service not in {"web", "db"}:
            _command_error(op, f"Unknown service '{service}' (expected web or db).")
        tenant = _require_tenant(runtime, name, op)
        count = 0
        try:
            for line in runtime.lifecycle.logs(tenant, tail, service=service):
                console.print(line, markup=False, highlight=False)
                count += 1
        except RuntimeAdapterError as exc:
            _provider_error(op, f"Reading logs failed: {exc}")
        op.add_step("runtime.logs", status="success", detail=f"lines={count}")
        op.success("Fetched tenant logs.", changed=0)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


_BACKUP_VALIDATION_ERRORS = (
    ArchiveNotFoundError,
    CertStoreMissingError,
    ContainerNotRunningError,
    EnvMissingError,
    TenantNotFoundError,
    UnknownArchiveTypeError,
)


def _backup_error(op: OperationScope, exc: Exception) -> NoReturn:
    if isinstance(exc, _BACKUP_VALIDATION_ERRORS):
        _command_error(op, str(exc))
    if isinstance(exc, RuntimeAdapterError):
        _provider_error(op, str(exc))
    _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


@app.command()
def backup(
    ctx: typer.Context,
    cert: bool = typer.Option(False, "--cert", help="Back up the edge proxy certificate store."),
    tenant_name: str | None = typer.Option(None, "--tenant", help="Back up one tenant database."),
    tenants: bool = typer.Option(False, "--tenants", help="Back up every tenant database."),
    everything: bool = typer.Option(False, "--all", help="Back up certificates and all tenants."),
    list_archives: bool = typer.Option(False, "--list", help="List existing archives."),
    restore_file: Path | None = typer.Option(
        None,
        "--restore",
        dir_okay=False,
        help="Restore from the given archive file.",
    ),
    cleanup: bool = typer.Option(False, "--cleanup", help="Delete archives past retention."),
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        min=0,
        help="Override the configured retention window for --cleanup.",
    ),
    json_output: bool = JSON_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Create, list, restore, or prune backup archives."""
    runtime = _get_runtime(ctx)
    modes = {
        "cert": cert,
        "tenant": tenant_name is not None,
        "tenants": tenants,
        "all": everything,
        "list": list_archives,
        "restore": restore_file is not None,
        "cleanup": cleanup,
    }
    selected = [mode for mode, enabled in modes.items() if enabled]
    with runtime.logger.operation(
        "backup",
        args={
            "modes": selected,
            "tenant": tenant_name,
            "restore": restore_file,
            "retention_days": retention_days,
            "yes": yes,
        },
        target={"kind": "backup", "root": runtime.config.backups.root},
    ) as op:
        if len(selected) != 1:
            _command_error(
                op,
                "Choose exactly one of --cert, --tenant, --tenants, --all, --list, "
                "--restore, --cleanup.",
            )
        manager = runtime.backups
        manager.confirm = lambda prompt: yes or typer.confirm(prompt, default=False)
        mode = selected[0]

        if mode == "list":
            _backup_list(op, manager, json_output)
            return
        if mode == "cleanup":
            days = retention_days if retention_days is not None else runtime.config.backups.retention_days
            try:
                removed = manager.cleanup(days)
            except BackupError as exc:
                _backup_error(op, exc)
            op.add_step("backup.cleanup", status="success", detail=f"removed={removed}")
            console.print(f"[green]Removed {removed} archive(s) older than {days} days.[/green]")
            op.success("Backup cleanup complete.", changed=removed)
            return
        if restore_file is not None:
            try:
                result = manager.restore(restore_file)
            except (BackupError, TenantRegistryError, RuntimeAdapterError) as exc:
                _backup_error(op, exc)
            for warning in result.warnings:
                console.print(f"[yellow]{warning}[/yellow]")
                op.add_step("backup.restore.warning", status="warning", detail=warning)
            if not result.performed:
                console.print("[yellow]Restore cancelled.[/yellow]")
                op.success("Restore cancelled by operator.", changed=0)
                return
            console.print(f"[green]Restored {result.subject.value} from {result.archive}.[/green]")
            op.success("Restore complete.", changed=1, backups=[str(result.archive)])
            return
        if mode == "cert":
            try:
                archive = manager.backup_edge_cert_store()
            except BackupError as exc:
                _backup_error(op, exc)
            console.print(f"[green]Certificate store archived to {archive.path}.[/green]")
            op.success("Certificate store backed up.", changed=1, backups=[str(archive.path)])
            return
        if tenant_name is not None:
            tenant = _require_tenant(runtime, tenant_name, op)
            try:
                archive = manager.backup_tenant_data(tenant)
            except (BackupError, TenantRegistryError) as exc:
                _backup_error(op, exc)
            console.print(f"[green]Database of {tenant.name} archived to {archive.path}.[/green]")
            op.success("Tenant database backed up.", changed=1, backups=[str(archive.path)])
            return

        snapshot = _snapshot(runtime, op)
        if mode == "all":
            cert_result, report = manager.backup_all(snapshot)
            if isinstance(cert_result, BackupError):
                console.print(f"[red]Certificate store backup failed: {cert_result}[/red]")
                op.add_step("backup.cert", status="failed", detail=str(cert_result))
                report.failed += 1
            else:
                console.print(f"[green]Certificate store archived to {cert_result.path}.[/green]")
                op.add_step("backup.cert", status="success", detail=str(cert_result.path))
                report.succeeded += 1
        else:
            report = manager.backup_all_tenants(snapshot)
        _finish_bulk(op, report, "backup")


def _backup_list(op: OperationScope, manager: BackupManager, json_output: bool) -> None:
    grouped = manager.list_archives()
    total = sum(archive.size_bytes for archives in grouped.values() for archive in archives)
    if json_output:
        payload = {subject.value: [item.to_dict() for item in items] for subject, items in grouped.items()}
        payload["total_size"] = total  # type: ignore[assignment]
        console.print_json(data=payload)
        op.success("Reported archives as JSON.", changed=0)
        return

    titles = {
        ArchiveSubject.EDGE_CERT_STORE: "Certificate store archives",
        ArchiveSubject.TENANT_DATA: "Tenant database archives",
    }
    for subject, archives in grouped.items():
        table = Table(title=titles[subject], show_header=True, header_style="bold magenta")
        table.add_column("File", style="bold")
        table.add_column("Tenant")
        table.add_column("Created")
        table.add_column("Size", justify="right")
        if not archives:
            table.add_row("(none)", "", "", "")
        for archive in archives:
            table.add_row(
                archive.path.name,
                archive.tenant or "",
                archive.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                _format_size(archive.size_bytes),
            )
        console.print(table)
    console.print(f"Total size: {_format_size(total)}")
    op.success("Reported archives.", changed=0, context={"total_size": total})


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


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
