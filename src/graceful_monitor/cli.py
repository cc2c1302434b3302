"""Typer-powered command line for ``graceful-monitor``.

``rollout`` performs one reconciliation pass over the API server static pod
manifests and the NAT chain; an external scheduler is expected to re-invoke
it. ``status`` reports what a pass would do without changing anything.
"""
from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manifests import ManifestError, ManifestScanner
from .portmap import PortMapError
from .probes import ProbeError, ReadinessProbe, TcpReadinessProbe
from .providers import IptablesError, IptablesProvider
from .rollout import (
    RollbackError,
    RolloutAction,
    RolloutError,
    RolloutOrchestrator,
    RolloutResult,
    RolloutState,
)
from .rules import NatRuleReconciler, RuleTable

console = Console()
err_console = Console(stderr=True)

PACKAGE_LOGGER = "graceful_monitor"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to graceful-monitor's YAML config file.",
)

POD_MANIFEST_DIR_OPTION = typer.Option(
    None,
    "--pod-manifest-dir",
    file_okay=False,
    dir_okay=True,
    help="Directory holding the static pod manifests (defaults to manifest_dir from config).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the report as JSON.",
)

_STATE_MESSAGES = {
    RolloutState.NO_INSTANCE: "No API server manifests found; nothing to coordinate.",
    RolloutState.SINGLE_ACTIVE: "Forwarding rules ensured for the active instance.",
    RolloutState.FINALIZED: "Graceful transition completed.",
    RolloutState.AMBIGUOUS: "More than two API server manifests found; no rules changed.",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Graceful API server rollout coordinator.

        Moves traffic between two API server instances on one host by
        rewriting a dedicated iptables NAT chain and retiring the old
        instance's static pod manifest once it has drained.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else logging.WARNING)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _build_rule_table(config: AppConfig) -> RuleTable:
    return IptablesProvider(iptables_bin=config.iptables.bin, wait_seconds=config.iptables.wait)


def _build_probe(config: AppConfig) -> ReadinessProbe:
    return TcpReadinessProbe(
        host=config.probe.host,
        interval=config.probe.interval,
        timeout=config.probe.timeout,
        connect_timeout=config.probe.connect_timeout,
        mark=config.iptables.bypass_mark,
    )


def _build_orchestrator(runtime: RuntimeContext, manifest_dir: Path) -> RolloutOrchestrator:
    config = runtime.config
    scanner = ManifestScanner(
        directory=manifest_dir,
        prefix=config.manifest_prefix,
        container_name=config.container_name,
    )
    reconciler = NatRuleReconciler(
        table=_build_rule_table(config),
        chain=config.iptables.chain,
        bypass_mark=config.iptables.bypass_mark,
    )
    return RolloutOrchestrator(scanner=scanner, reconciler=reconciler, probe=_build_probe(config))


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _record_steps(op: OperationScope, result: RolloutResult) -> None:
    for action, outcome in result.reconciliations:
        # The old manifest is removed between transition and finalize.
        if action is RolloutAction.FINALIZE and result.retired is not None:
            op.add_step("manifest.remove", status="success", detail=str(result.retired))
        detail = "unchanged"
        if outcome.changed:
            detail = (
                f"appended={len(outcome.appended)} deleted={len(outcome.deleted)} "
                f"jumps={len(outcome.jumps_added)} jumps_removed={len(outcome.jumps_removed)}"
            )
        op.add_step(f"rules.{action.value}", status="success", detail=detail)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the graceful-monitor version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log progress of each step to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"graceful-monitor {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command()
def rollout(
    ctx: typer.Context,
    pod_manifest_dir: Path | None = POD_MANIFEST_DIR_OPTION,
) -> None:
    """Run one graceful rollout pass over the API server manifests."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    manifest_dir = pod_manifest_dir or config.manifest_dir

    with runtime.logger.operation(
        "rollout",
        args={"pod_manifest_dir": manifest_dir},
        target={"kind": "chain", "chain": config.iptables.chain},
    ) as op:
        try:
            with runtime.locks.rollout_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = _build_orchestrator(runtime, manifest_dir).run()
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (ManifestError, PortMapError) as exc:
            _command_error(op, f"Manifest scan failed: {exc}", rc=ExitCode.VALIDATION)
        except RollbackError as exc:
            _command_error(
                op,
                f"Rollout failed: {exc}",
                rc=ExitCode.PROVIDER,
                errors=[str(exc.primary), str(exc.rollback)],
            )
        except (IptablesError, ProbeError, RolloutError) as exc:
            _command_error(op, f"Rollout failed: {exc}", rc=ExitCode.PROVIDER)
        except OSError as exc:
            _command_error(op, f"Rollout failed: {exc}", rc=ExitCode.ENVIRONMENT)

        _record_steps(op, result)
        message = _STATE_MESSAGES.get(result.state, f"Rollout ended in {result.state.value}.")
        context = result.to_dict()
        if result.warnings:
            for warning in result.warnings:
                console.print(f"[yellow]{warning}[/yellow]")
            console.print(f"[yellow]{message}[/yellow]")
            op.warning(
                message,
                warnings=list(result.warnings),
                changed=result.changed,
                context=context,
            )
            return

        console.print(f"[green]{message}[/green]")
        op.success(message, changed=result.changed, context=context)


@app.command()
def status(
    ctx: typer.Context,
    pod_manifest_dir: Path | None = POD_MANIFEST_DIR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report manifests, port mappings and chain rules without changing them."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    manifest_dir = pod_manifest_dir or config.manifest_dir
    orchestrator = _build_orchestrator(runtime, manifest_dir)

    with runtime.logger.operation(
        "status",
        args={"pod_manifest_dir": manifest_dir, "json": json_output},
        target={"kind": "chain", "chain": config.iptables.chain},
    ) as op:
        try:
            plan = orchestrator.plan()
            chain_rules = orchestrator.reconciler.current_rules()
        except (ManifestError, PortMapError) as exc:
            _command_error(op, f"Manifest scan failed: {exc}", rc=ExitCode.VALIDATION)
        except IptablesError as exc:
            _command_error(op, f"Unable to read chain: {exc}", rc=ExitCode.PROVIDER)

        rendered_rules = [str(rule) if rule else "(foreign rule)" for rule in chain_rules]
        if json_output:
            payload = plan.to_dict()
            payload["chain"] = {"name": config.iptables.chain, "rules": rendered_rules}
            console.print_json(data=payload)
            op.success("Reported rollout status as JSON.", changed=0)
            return

        console.print(f"State: [bold]{plan.state.value}[/bold]")
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Revision", style="bold")
        table.add_column("Port")
        table.add_column("Role")
        table.add_column("Manifest")
        if len(plan.manifests) == 0:
            table.add_row("(none)", "", "", "")
        for manifest in plan.manifests:
            role = ""
            if plan.active is not None and manifest == plan.active:
                role = "active"
            elif plan.incoming is not None and manifest == plan.incoming:
                role = "next"
            table.add_row(str(manifest.revision), str(manifest.port), role, str(manifest.filename))
        console.print(table)

        for label, port_map in (("Active ports", plan.active_map), ("Next ports", plan.next_map)):
            if port_map is None:
                continue
            pairs = ", ".join(f"{canonical}->{actual}" for canonical, actual in port_map.items())
            console.print(f"{label}: {pairs}")

        console.print(f"Chain {config.iptables.chain}:")
        for rendered in rendered_rules or ["(empty)"]:
            console.print(f"  {rendered}")
        for warning in plan.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        op.success("Reported rollout status.", changed=0)


__all__ = ["app"]
