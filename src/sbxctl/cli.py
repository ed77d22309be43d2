"""Typer command line for ``sbxctl``.

Every command builds (or reuses) a :class:`RuntimeContext` from the merged
configuration and records itself in the operations log. Mutating commands
hold the deployment lock for their whole run.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .assembler import load_config_document, self_check
from .backup_service import BackupService
from .backups import BackupError, BackupsRegistry
from .certificates import CertificateManager, CertificateStatus, check_expiry
from .client_info import ClientInfo, ClientInfoError, read_client_info
from .config import AppConfig, ConfigError, load_config
from .errors import ExitCode, PipelineError
from .export import (
    ExportError,
    all_uris,
    clash_yaml,
    render_qr,
    subscription,
    uri_for,
    v2rayn_json,
    write_qr_png,
)
from .inputs import Protocol, load_inputs
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import InstallOrchestrator, InstallResult
from .ports import PortAllocator, port_in_use
from .providers import CaddyProvider, SingBoxProvider, SystemdError, SystemdProvider
from .state import DEPLOYMENT_FILE, StateRegistry
from .strategy import CertificateStrategy
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sbxctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine readable JSON.")
PROTOCOL_OPTION = typer.Option(
    None,
    "--protocol",
    "-p",
    help="Protocol to export (reality, ws, hy2). Defaults to every configured protocol.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        sing-box provisioning CLI.

        Installs and reconfigures a sing-box server offering VLESS-Reality,
        VLESS over WebSocket+TLS and Hysteria2, with Caddy obtaining and
        renewing certificates for the TLS protocols.
        """
    ).strip(),
)
export_app = typer.Typer(help="Export client configuration from the Client-Info Record.")
backup_app = typer.Typer(help="Create, list and restore deployment backups.")
cert_app = typer.Typer(help="Inspect and synchronise TLS certificates.")
config_app = typer.Typer(help="Inspect sbxctl and sing-box configuration.")

app.add_typer(export_app, name="export")
app.add_typer(backup_app, name="backup")
app.add_typer(cert_app, name="cert")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd: SystemdProvider
    caddy: CaddyProvider
    singbox: SingBoxProvider
    backups: BackupsRegistry


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
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    systemd = SystemdProvider(
        templates=templates,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
    )
    caddy = CaddyProvider(
        templates=templates,
        systemd=systemd,
        config_dir=config.caddy.config_dir,
        data_dir=config.caddy.data_dir,
        caddy_bin=str(config.caddy.bin),
        http_port=config.caddy.http_port,
        https_port=config.caddy.https_port,
        fallback_port=config.caddy.fallback_port,
        email=config.caddy.email,
        sbxctl_bin=config.sbxctl_bin,
    )
    runtime = RuntimeContext(
        config=config,
        registry=StateRegistry(config.state_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        systemd=systemd,
        caddy=caddy,
        singbox=SingBoxProvider(bin=config.singbox.bin),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
    )
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
        help="Show the sbxctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
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
            console.print(f"sbxctl {__version__}")
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
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _emit(text: str) -> None:
    """Print *text* verbatim; URIs and YAML must not be reflowed or styled."""
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _warn(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {message}", soft_wrap=True)


def _build_orchestrator(runtime: RuntimeContext) -> InstallOrchestrator:
    config = runtime.config
    certificates = CertificateManager(
        runtime.caddy,
        config.cert_dir,
        timeout=config.caddy.cert_timeout,
        poll_interval=config.caddy.poll_interval,
        port_probe=port_in_use,
        on_warning=_warn,
    )
    ports = PortAllocator(
        {
            Protocol.REALITY: config.ports.reality,
            Protocol.WS_TLS: config.ports.ws,
            Protocol.HYSTERIA2: config.ports.hy2,
        },
        {
            Protocol.REALITY: config.ports.reality_fallback,
            Protocol.WS_TLS: config.ports.ws_fallback,
            Protocol.HYSTERIA2: config.ports.hy2_fallback,
        },
        retries=config.ports.retries,
        retry_delay=config.ports.retry_delay,
    )
    return InstallOrchestrator(
        config,
        singbox=runtime.singbox,
        systemd=runtime.systemd,
        caddy=runtime.caddy,
        certificates=certificates,
        ports=ports,
        registry=runtime.registry,
    )


def _build_backup_service(runtime: RuntimeContext) -> BackupService:
    config = runtime.config
    return BackupService(
        runtime.backups,
        {
            "singbox/config.json": config.singbox_config,
            "singbox/client-info.txt": config.client_info_file,
            "certs": config.cert_dir,
            "state/deployment.yml": runtime.registry.path_for(DEPLOYMENT_FILE),
            "caddy/Caddyfile": runtime.caddy.caddyfile,
        },
        algorithm=config.backups.compression,
        compression_level=config.backups.compression_level,
    )


def _require_client_info(runtime: RuntimeContext, op: OperationScope) -> ClientInfo:
    try:
        info = read_client_info(runtime.config.client_info_file)
    except ClientInfoError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    if info is None:
        _command_error(
            op,
            f"No Client-Info Record at {runtime.config.client_info_file}. "
            "Run 'sbxctl install' first.",
            rc=int(ExitCode.ENVIRONMENT),
        )
    return info


def _parse_protocol(op: OperationScope, value: str | None) -> Protocol | None:
    if value is None:
        return None
    try:
        return Protocol(value.strip().lower())
    except ValueError:
        _command_error(op, f"Unknown protocol '{value}' (use reality, ws, hy2).")


def _render_install_result(result: InstallResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Protocol", style="bold")
    table.add_column("Port")
    table.add_column("Note")
    for allocation in result.allocations:
        note = (allocation.reason or "") if allocation.fallback else ""
        table.add_row(allocation.protocol.value, str(allocation.port), note)
    console.print(table)
    console.print(f"State: {result.state.value}")
    console.print(f"Certificate strategy: {result.decision.strategy.value}")
    if result.artifact is not None:
        console.print(f"Certificate: {result.artifact.fullchain}")
    for warning in result.warnings:
        _warn(warning)


@app.command()
def install(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None, "--domain", "-d", help="Server domain name or public IP (env: DOMAIN)."
    ),
    cert_mode: str | None = typer.Option(
        None, "--cert-mode", help="ACME mode: http or dns (env: CERT_MODE)."
    ),
    cert_fullchain: Path | None = typer.Option(
        None, "--cert-fullchain", help="Pre-supplied certificate chain (env: CERT_FULLCHAIN)."
    ),
    cert_key: Path | None = typer.Option(
        None, "--cert-key", help="Pre-supplied private key (env: CERT_KEY)."
    ),
    cf_api_token: str | None = typer.Option(
        None, "--cf-api-token", help="Cloudflare API token for DNS-01 (env: CF_API_TOKEN)."
    ),
    reality_only: bool = typer.Option(
        False, "--reality-only", help="Configure Reality only and skip certificates."
    ),
    protocols: str | None = typer.Option(
        None, "--protocols", help="Comma separated protocols: reality,ws,hy2 (env: PROTOCOLS)."
    ),
    reality_port: int | None = typer.Option(None, "--reality-port", help="Reality port."),
    ws_port: int | None = typer.Option(None, "--ws-port", help="WS-TLS port."),
    hy2_port: int | None = typer.Option(None, "--hy2-port", help="Hysteria2 port."),
    sni: str | None = typer.Option(None, "--sni", help="Reality handshake server (env: SNI)."),
    upgrade: bool = typer.Option(
        False, "--upgrade", help="Reconfigure an existing deployment after a sing-box upgrade."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Plan the deployment without writing files or issuing certs."
    ),
    no_start: bool = typer.Option(
        False, "--no-start", help="Write configuration without (re)starting sing-box."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Install or reconfigure the sing-box deployment."""
    runtime = _get_runtime(ctx)
    overrides: dict[str, object | None] = {
        "domain": domain,
        "cert_mode": cert_mode,
        "cert_fullchain": cert_fullchain,
        "cert_key": cert_key,
        "api_token": cf_api_token,
        "reality_only": True if reality_only else None,
        "protocols": protocols,
        "reality_port": reality_port,
        "ws_port": ws_port,
        "hy2_port": hy2_port,
        "sni": sni,
    }
    with runtime.logger.operation(
        "install",
        args={"upgrade": upgrade, "dry_run": dry_run, "no_start": no_start},
        target={"kind": "deployment"},
    ) as op:
        try:
            inputs = load_inputs(os.environ, overrides)
        except PipelineError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        op.args["inputs"] = inputs.to_dict()

        orchestrator = _build_orchestrator(runtime)
        try:
            with runtime.locks.deployment_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = orchestrator.run(
                    inputs,
                    upgrade=upgrade,
                    start=not no_start,
                    dry_run=dry_run,
                    on_step=lambda name, status, detail: op.add_step(
                        name, status=status, detail=detail
                    ),
                )
        except PipelineError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_install_result(result)
        if dry_run:
            if not json_output:
                console.print("[yellow]Dry run[/yellow]: no files were written.")
            op.success("Install dry-run complete.", changed=0, context=payload)
            return
        if not json_output:
            verb = "updated" if result.changed else "unchanged"
            console.print(f"[green]Deployment {verb} ({result.state.value}).[/green]")
            console.print("Run 'sbxctl export uri' to print client links.")
        op.success(
            "Install completed.",
            changed=int(result.config_changed) + int(result.client_info_changed),
            warnings=list(result.warnings),
            context=payload,
        )


@app.command()
def uninstall(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", help="Confirm removal without prompting."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List what would be removed."),
) -> None:
    """Stop services and remove the deployment (Caddy's certificate data is kept)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall", args={"yes": yes, "dry_run": dry_run}, target={"kind": "deployment"}
    ) as op:
        orchestrator = _build_orchestrator(runtime)
        if dry_run:
            planned = orchestrator.uninstall(dry_run=True)
            for path in planned:
                console.print(f"would remove {path}")
            op.success("Uninstall dry-run complete.", changed=0, context={"paths": planned})
            return
        if not yes and not typer.confirm("Remove the sing-box deployment?", default=False):
            _command_error(op, "Uninstall aborted.", rc=1)
        try:
            with runtime.locks.deployment_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                removed = orchestrator.uninstall()
        except SystemdError as exc:
            _command_error(op, f"Failed to stop services: {exc}", rc=int(ExitCode.PROVIDER))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        for path in removed:
            console.print(f"removed {path}")
        console.print("[green]Deployment removed.[/green]")
        op.success("Uninstall completed.", changed=len(removed), context={"paths": removed})


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report service state, deployment details and certificate expiry."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("status", args={"json": json_output}) as op:
        deployment = runtime.registry.read_deployment()
        try:
            info = read_client_info(config.client_info_file)
        except ClientInfoError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        services = {
            config.singbox.service: runtime.systemd.is_active(config.singbox.service),
            "caddy.service": runtime.caddy.is_active(),
        }
        data: dict[str, object] = {
            "installed": info is not None,
            "services": services,
            "deployment": deployment,
            "certificate": None,
        }
        if info is not None and info.cert_fullchain:
            report = check_expiry(
                Path(info.cert_fullchain), warn_days=config.tls.warn_expiry_days
            )
            data["certificate"] = report.to_dict()

        if json_output:
            console.print_json(data=data)
            op.success("Reported status as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Item", style="bold")
        table.add_column("Value")
        for unit, active in services.items():
            table.add_row(unit, "active" if active else "inactive")
        table.add_row("domain", str(deployment.get("domain", "") or ""))
        table.add_row("strategy", str(deployment.get("strategy", "") or ""))
        ports = deployment.get("ports") or {}
        for name, port in dict(ports).items():
            table.add_row(f"port ({name})", str(port))
        certificate = data["certificate"]
        if isinstance(certificate, Mapping):
            table.add_row("certificate", str(certificate.get("message", "")))
        failure = deployment.get("last_failure")
        if isinstance(failure, Mapping):
            table.add_row("last failure", str(failure.get("message", "")))
        console.print(table)
        op.success("Reported status.", changed=0)


@app.command()
def logs(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", help="Number of journal lines."),
    caddy: bool = typer.Option(False, "--caddy", help="Show Caddy's journal instead."),
) -> None:
    """Print recent journal output for sing-box (or Caddy)."""
    runtime = _get_runtime(ctx)
    unit = "caddy.service" if caddy else runtime.config.singbox.service
    with runtime.logger.operation("logs", args={"lines": lines}, target={"unit": unit}) as op:
        try:
            result = runtime.systemd.logs(unit, lines=lines)
        except SystemdError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        _emit(result.stdout.rstrip("\n"))
        op.success("Reported journal output.", changed=0)


@app.command()
def info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Summarise the Client-Info Record and print client links."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("info", args={"json": json_output}) as op:
        record = _require_client_info(runtime, op)
        summary = record.to_dict()
        if json_output:
            summary["uris"] = all_uris(record)
            console.print_json(data=summary)
            op.success("Reported client info as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in summary.items():
            table.add_row(key, "" if value is None else str(value))
        console.print(table)
        for uri in all_uris(record):
            _emit(uri)
        op.success("Reported client info.", changed=0)


@export_app.command("uri")
def export_uri(ctx: typer.Context, protocol: str | None = PROTOCOL_OPTION) -> None:
    """Print share URIs for the configured protocols."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "export uri", args={"protocol": protocol}, target={"kind": "export"}
    ) as op:
        record = _require_client_info(runtime, op)
        selected = _parse_protocol(op, protocol)
        try:
            uris = [uri_for(record, selected)] if selected else all_uris(record)
        except ExportError as exc:
            _command_error(op, str(exc))
        for uri in uris:
            _emit(uri)
        op.success("Exported share URIs.", changed=0, context={"count": len(uris)})


@export_app.command("v2rayn")
def export_v2rayn(
    ctx: typer.Context,
    protocol: str = typer.Option("reality", "--protocol", "-p", help="reality or ws."),
) -> None:
    """Print a v2rayN client configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "export v2rayn", args={"protocol": protocol}, target={"kind": "export"}
    ) as op:
        record = _require_client_info(runtime, op)
        selected = _parse_protocol(op, protocol) or Protocol.REALITY
        try:
            _emit(v2rayn_json(record, selected))
        except ExportError as exc:
            _command_error(op, str(exc))
        op.success("Exported v2rayN configuration.", changed=0)


@export_app.command("clash")
def export_clash(
    ctx: typer.Context,
    output: Path | None = typer.Option(None, "--output", "-o", help="Write YAML to this file."),
) -> None:
    """Print (or write) a Clash Meta configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "export clash", args={"output": str(output) if output else None}
    ) as op:
        record = _require_client_info(runtime, op)
        try:
            rendered = clash_yaml(record)
        except ExportError as exc:
            _command_error(op, str(exc))
        if output is None:
            _emit(rendered.rstrip("\n"))
            op.success("Exported Clash configuration.", changed=0)
            return
        output.write_text(rendered, encoding="utf-8")
        os.chmod(output, 0o600)
        console.print(f"[green]Wrote {output}.[/green]")
        op.success("Wrote Clash configuration.", changed=1, context={"path": str(output)})


@export_app.command("subscription")
def export_subscription(ctx: typer.Context) -> None:
    """Print a base64 subscription containing every share URI."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("export subscription", target={"kind": "export"}) as op:
        record = _require_client_info(runtime, op)
        _emit(subscription(record))
        op.success("Exported subscription.", changed=0)


@app.command()
def qr(
    ctx: typer.Context,
    protocol: str | None = PROTOCOL_OPTION,
    png: Path | None = typer.Option(
        None, "--png", help="Write PNG files into this directory instead of the terminal."
    ),
) -> None:
    """Render share URIs as QR codes through ``qrencode``."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "qr", args={"protocol": protocol, "png": str(png) if png else None}
    ) as op:
        record = _require_client_info(runtime, op)
        selected = _parse_protocol(op, protocol)
        targets = (selected,) if selected else record.protocols
        written: list[str] = []
        try:
            for item in targets:
                uri = uri_for(record, item)
                if png is not None:
                    path = write_qr_png(
                        uri, png / f"{item.value}.png", qrencode_bin=runtime.config.qrencode_bin
                    )
                    written.append(str(path))
                    console.print(f"{item.value}: {path}")
                else:
                    console.print(f"[bold]{item.value}[/bold]")
                    _emit(render_qr(uri, qrencode_bin=runtime.config.qrencode_bin))
        except ExportError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        op.success("Rendered QR codes.", changed=len(written), context={"files": written})


@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    message: str | None = typer.Option(None, "--message", "-m", help="Annotate the backup."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be archived."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Archive the deployment's configuration, certificates and state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"message": message, "dry_run": dry_run},
        target={"kind": "backup"},
    ) as op:
        service = _build_backup_service(runtime)
        try:
            with runtime.locks.deployment_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = service.create(message=message, dry_run=dry_run)
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        if json_output:
            console.print_json(data=result.to_dict())
        elif dry_run:
            console.print(
                f"[yellow]Dry run[/yellow]: backup {result.backup_id} would include "
                f"{', '.join(result.contents)}"
            )
        else:
            console.print(f"[green]Backup {result.backup_id} written to {result.archive}.[/green]")
        op.success(
            "Backup dry-run complete." if dry_run else "Backup created.",
            changed=0 if dry_run else 1,
            backups=[] if dry_run else [result.backup_id],
            context=result.to_dict(),
        )


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backups recorded in the index."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup list", args={"json": json_output}) as op:
        try:
            entries = runtime.backups.list_entries()
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backups as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Created")
        table.add_column("Size")
        table.add_column("Status")
        table.add_column("Message")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("created_at", "")),
                str(entry.get("size_bytes", "")),
                str(entry.get("status", "")),
                str(entry.get("message", "") or ""),
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@backup_app.command("verify")
def backup_verify(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup identifier."),
) -> None:
    """Recompute and compare a backup's checksum."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup verify", args={"id": backup_id}, target={"kind": "backup", "id": backup_id}
    ) as op:
        try:
            report = _build_backup_service(runtime).verify(backup_id)
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        console.print_json(data=report)
        if report["status"] != "available":
            _command_error(
                op, f"Backup {backup_id} is {report['status']}.", rc=int(ExitCode.ENVIRONMENT)
            )
        op.success("Backup verified.", changed=0, context=report)


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup identifier."),
    yes: bool = typer.Option(False, "--yes", help="Confirm without prompting."),
    no_restart: bool = typer.Option(
        False, "--no-restart", help="Do not restart sing-box after restoring."
    ),
) -> None:
    """Restore a backup over the live deployment files."""
    runtime = _get_runtime(ctx)
    unit = runtime.config.singbox.service
    with runtime.logger.operation(
        "backup restore",
        args={"id": backup_id, "no_restart": no_restart},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        if not yes and not typer.confirm(f"Restore backup {backup_id}?", default=False):
            _command_error(op, "Restore aborted.", rc=1)
        service = _build_backup_service(runtime)
        try:
            with runtime.locks.deployment_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = service.restore(backup_id, checker=runtime.singbox.check_config)
                if not no_restart and runtime.systemd.unit_path(unit).exists():
                    runtime.systemd.restart(unit)
                    op.add_step("service.restart", status="success", detail=unit)
        except PipelineError as exc:
            _command_error(op, f"Backup rejected: {exc}", rc=int(exc.exit_code))
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except SystemdError as exc:
            _command_error(
                op, f"Restored, but restarting {unit} failed: {exc}", rc=int(ExitCode.PROVIDER)
            )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        for path in result.restored:
            console.print(f"restored {path}")
        console.print(f"[green]Backup {backup_id} restored.[/green]")
        op.success(
            "Backup restored.",
            changed=len(result.restored),
            backups=[backup_id],
            context=result.to_dict(),
        )


@cert_app.command("check")
def cert_check(
    ctx: typer.Context,
    path: Path | None = typer.Option(
        None, "--path", help="Certificate to inspect (defaults to the deployed one)."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check the certificate expiry against the warning threshold."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert check", args={"path": str(path) if path else None}, target={"kind": "certificate"}
    ) as op:
        if path is None:
            record = _require_client_info(runtime, op)
            if not record.cert_fullchain:
                _command_error(
                    op,
                    "The deployment uses no certificate (Reality only).",
                    rc=int(ExitCode.VALIDATION),
                )
            path = Path(record.cert_fullchain)
        report = check_expiry(path, warn_days=runtime.config.tls.warn_expiry_days)
        if json_output:
            console.print_json(data=report.to_dict())
        if report.status is CertificateStatus.OK:
            if not json_output:
                console.print(f"[green]{report.message}[/green]")
            op.success(report.message, changed=0, context=report.to_dict())
        elif report.status is CertificateStatus.EXPIRING:
            if not json_output:
                _warn(report.message)
            op.warning(report.message, warnings=[report.message], context=report.to_dict())
        else:
            _command_error(op, report.message, rc=int(ExitCode.ENVIRONMENT))


@cert_app.command("sync")
def cert_sync(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None, "--domain", help="Domain whose certificate is synced (defaults to deployment)."
    ),
    no_restart: bool = typer.Option(
        False, "--no-restart", help="Do not restart sing-box when the certificate changed."
    ),
) -> None:
    """Copy Caddy's renewed certificate to sing-box and restart it when it changed."""
    runtime = _get_runtime(ctx)
    unit = runtime.config.singbox.service
    with runtime.logger.operation(
        "cert sync", args={"domain": domain}, target={"kind": "certificate"}
    ) as op:
        deployment = runtime.registry.read_deployment()
        domain = domain or deployment.get("domain")
        if not domain:
            _command_error(op, "No domain given and no deployment recorded.")
        try:
            strategy = CertificateStrategy(
                deployment.get("strategy") or CertificateStrategy.HTTP_CHALLENGE.value
            )
        except ValueError:
            strategy = CertificateStrategy.HTTP_CHALLENGE
        manager = CertificateManager(runtime.caddy, runtime.config.cert_dir, on_warning=_warn)
        try:
            with runtime.locks.deployment_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                artifact, changed = manager.sync(str(domain), strategy)
                if changed and not no_restart and runtime.systemd.unit_path(unit).exists():
                    runtime.systemd.restart(unit)
                    op.add_step("service.restart", status="success", detail=unit)
        except PipelineError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        except SystemdError as exc:
            _command_error(op, f"Restarting {unit} failed: {exc}", rc=int(ExitCode.PROVIDER))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        if changed:
            console.print(f"[green]Certificate for {domain} updated.[/green]")
        else:
            console.print(f"Certificate for {domain} unchanged.")
        op.success(
            "Certificate synced.", changed=int(changed), context=artifact.to_dict()
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
    """Display the effective sbxctl configuration after merges."""
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


@config_app.command("check")
def config_check(
    ctx: typer.Context,
    engine: bool = typer.Option(
        True, "--engine/--no-engine", help="Also run 'sing-box check' on the file."
    ),
) -> None:
    """Validate the deployed sing-box configuration."""
    runtime = _get_runtime(ctx)
    path = runtime.config.singbox_config
    with runtime.logger.operation(
        "config check", args={"engine": engine}, target={"kind": "config", "path": str(path)}
    ) as op:
        if not path.exists():
            _command_error(op, f"{path} does not exist.", rc=int(ExitCode.ENVIRONMENT))
        try:
            document = load_config_document(path)
        except PipelineError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        problems = self_check(document)
        if problems:
            _command_error(op, "Configuration has structural problems.", errors=problems)
        op.add_step("config.self_check", status="success")
        if engine:
            try:
                runtime.singbox.check_config(path)
            except PipelineError as exc:
                _command_error(op, str(exc), rc=int(exc.exit_code))
            op.add_step("config.engine_check", status="success")
        console.print(f"[green]{path} is valid.[/green]")
        op.success("Configuration valid.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
