"""Typer-powered command line interface for ``upgradectl``.

Every command runs inside a structured log operation and maps the workflow
outcome onto the shared exit codes: ``0`` success, ``1`` error and ``4``
warning (partial success, inspect the logs).
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import UpgradeError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .manifest import build_manifest
from .providers.distribution import DistributionFetcher
from .rollback import RollbackOrchestrator
from .transitions import ResourceState, probe_installation
from .upgrade import UpgradeOrchestrator, UpgradeParameters
from .versions import read_installed_version
from .workflow import Installation, Workflow

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to upgradectl's YAML config file.",
)
INSTALL_ROOT_OPTION = typer.Option(
    None,
    "--install-root",
    file_okay=False,
    help="Path to the server's glassfish directory.",
)
DOMAINDIR_OPTION = typer.Option(
    None,
    "--domaindir",
    help="Domain directory passed through to backup-domain/restore-domain.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Payara Server upgrade and rollback tool.

        Upgrades an installation in place (keeping the previous version as
        .old resources) or stages the new version as .new resources, and
        rolls an in-place upgrade back.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    installation: Installation


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    install_root: Path | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if install_root is not None:
        overrides["install_root"] = str(install_root)
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ERROR)) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        installation=Installation.from_config(config),
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
        help="Show the upgradectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    install_root: Path | None = INSTALL_ROOT_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug diagnostics."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file, install_root)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"upgradectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, install_root)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.ERROR),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _finish(
    op: OperationScope,
    workflow: Workflow,
    code: ExitCode,
    summary: str,
    *,
    context: dict[str, object] | None = None,
) -> None:
    """Report a workflow outcome and exit with its code."""
    payload = dict(context or {})
    payload["state"] = workflow.state.value
    if code is ExitCode.ERROR:
        message = workflow.errors[0] if workflow.errors else f"{summary} failed."
        _command_error(op, message, rc=int(code), errors=workflow.errors or [message])
    if code is ExitCode.WARNING:
        for warning in workflow.warnings:
            console.print(f"[yellow]Warning[/yellow]: {warning}")
        op.warning(
            f"{summary} completed with warnings.",
            warnings=workflow.warnings,
            context=payload,
            rc=int(code),
        )
        raise typer.Exit(code=int(code))
    console.print(f"[green]{summary} completed.[/green]")
    op.success(f"{summary} completed.", context=payload)


def _prompt_missing(
    value: str | None,
    label: str,
    *,
    interactive: bool,
    hide_input: bool = False,
) -> str | None:
    if value or not interactive:
        return value
    answer = typer.prompt(f"Enter the value for the {label} option", hide_input=hide_input)
    return answer.strip() or None


def _build_upgrade_orchestrator(
    runtime: RuntimeContext,
    op: OperationScope,
    domain_dir_param: str | None,
) -> UpgradeOrchestrator:
    fetcher = DistributionFetcher(
        repository_url=runtime.config.repository.url,
        timeout=runtime.config.repository.timeout,
        temp_dir=runtime.config.temp_dir,
    )
    return UpgradeOrchestrator(
        runtime.installation,
        op=op,
        fetcher=fetcher,
        domain_dir_param=domain_dir_param,
    )


def _build_rollback_orchestrator(
    runtime: RuntimeContext,
    op: OperationScope,
    domain_dir_param: str | None,
) -> RollbackOrchestrator:
    return RollbackOrchestrator(runtime.installation, op=op, domain_dir_param=domain_dir_param)


@app.command("upgrade-server")
def upgrade_server(
    ctx: typer.Context,
    distribution: str | None = typer.Option(
        None,
        "--distribution",
        help="Distribution to upgrade to (payara, payara-ml, payara-web, payara-web-ml).",
    ),
    version: str | None = typer.Option(None, "--version", help="Enterprise version, e.g. 6.9.0."),
    username: str | None = typer.Option(None, "--username", help="Repository user name."),
    password: str | None = typer.Option(
        None,
        "--nexus-password",
        help="Repository password (prompted for when omitted).",
    ),
    use_downloaded: Path | None = typer.Option(
        None,
        "--use-downloaded",
        dir_okay=False,
        help="Upgrade from an already downloaded distribution archive.",
    ),
    stage: bool | None = typer.Option(
        None,
        "--stage/--no-stage",
        help="Write the new version as .new resources instead of replacing current ones.",
    ),
    domaindir: str | None = DOMAINDIR_OPTION,
    interactive: bool = typer.Option(
        True,
        "--interactive/--no-interactive",
        help="Prompt for missing download options.",
    ),
) -> None:
    """Upgrade the server to a newer enterprise version."""
    runtime = _get_runtime(ctx)
    staged = (os.name == "nt") if stage is None else stage
    chosen_distribution = (distribution or runtime.config.distribution).lower()
    args = {
        "distribution": chosen_distribution,
        "version": version,
        "stage": staged,
        "use_downloaded": use_downloaded,
        "domaindir": domaindir,
    }
    with runtime.logger.operation(
        "upgrade-server",
        args=args,
        target={"kind": "install", "path": runtime.installation.install_root},
    ) as op:
        if use_downloaded is None:
            username = _prompt_missing(username, "username", interactive=interactive)
            version = _prompt_missing(version, "version", interactive=interactive)
            password = _prompt_missing(
                password, "nexus password", interactive=interactive, hide_input=True
            )
        params = UpgradeParameters(
            distribution=chosen_distribution,
            version=version,
            stage=staged,
            archive=use_downloaded,
            username=username,
            password=password,
        )
        orchestrator = _build_upgrade_orchestrator(runtime, op, domaindir)
        code = orchestrator.upgrade(params)
        adopted = orchestrator.params or params
        _finish(
            op,
            orchestrator,
            code,
            "Staged upgrade" if staged else "Upgrade",
            context={"version": adopted.version, "stage": staged},
        )


@app.command("rollback-server")
def rollback_server(
    ctx: typer.Context,
    domaindir: str | None = DOMAINDIR_OPTION,
) -> None:
    """Roll back an in-place upgrade to the .old backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback-server",
        args={"domaindir": domaindir},
        target={"kind": "install", "path": runtime.installation.install_root},
    ) as op:
        orchestrator = _build_rollback_orchestrator(runtime, op, domaindir)
        code = orchestrator.rollback()
        _finish(op, orchestrator, code, "Rollback")


@app.command("reinstall-nodes")
def reinstall_nodes(ctx: typer.Context) -> None:
    """Reinstall every SSH node from the current installation."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reinstall-nodes",
        target={"kind": "nodes", "domains": runtime.installation.domains_dir},
    ) as op:
        workflow = Workflow(runtime.installation, op=op)
        code = workflow.reinstall_nodes()
        _finish(op, workflow, code, "Node reinstall")


@app.command("apply-staged")
def apply_staged(ctx: typer.Context) -> None:
    """Promote a staged upgrade to current."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply-staged",
        target={"kind": "install", "path": runtime.installation.install_root},
    ) as op:
        orchestrator = _build_upgrade_orchestrator(runtime, op, None)
        code = orchestrator.apply_staged()
        _finish(op, orchestrator, code, "Apply staged upgrade")


@app.command("cleanup-upgrade")
def cleanup_upgrade(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete .old backups and .new staged resources."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cleanup-upgrade",
        args={"yes": yes},
        target={"kind": "install", "path": runtime.installation.install_root},
    ) as op:
        if not yes and not typer.confirm(
            "Removing .old resources makes rollback impossible. Continue?", default=False
        ):
            console.print("Cleanup cancelled.")
            op.success("Cleanup cancelled.", changed=0)
            return
        orchestrator = _build_upgrade_orchestrator(runtime, op, None)
        code = orchestrator.cleanup()
        _finish(op, orchestrator, code, "Cleanup")


@app.command("status")
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show where each managed resource currently lives."""
    runtime = _get_runtime(ctx)
    installation = runtime.installation
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "install", "path": installation.install_root},
    ) as op:
        try:
            manifest = build_manifest(installation.install_root, installation.domains_dir)
            snapshot = probe_installation(installation.install_root, manifest)
        except UpgradeError as exc:
            _command_error(op, str(exc))
        try:
            installed: str | None = str(read_installed_version(installation.install_root).version)
        except UpgradeError:
            installed = None

        if json_output:
            console.print_json(
                data={
                    "install_root": str(installation.install_root),
                    "version": installed,
                    "resources": snapshot.to_dict(),
                }
            )
            op.success("Rendered status as JSON.", changed=0)
            return

        console.print(f"Install root: {installation.install_root}")
        console.print(f"Installed version: {installed or 'unknown'}")
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Resource", style="bold")
        table.add_column("current")
        table.add_column(".old")
        table.add_column(".new")
        for entry in manifest:
            state = snapshot[entry]
            table.add_row(
                entry,
                *(
                    "[green]yes[/green]" if flag in state else "-"
                    for flag in (ResourceState.CURRENT, ResourceState.OLD, ResourceState.NEW)
                ),
            )
        console.print(table)
        op.success(
            "Rendered status table.",
            changed=0,
            context={"staged": snapshot.has_staged, "backup": snapshot.has_backup},
        )


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
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


__all__ = ["app", "main"]
