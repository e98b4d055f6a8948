"""Command-line interface for mcpctl.

The CLI is a thin layer over :class:`mcpctl.panel.ControlPanel` and the
lifecycle orchestrator. Read-only commands are wrapped in their own structured
log scope; mutating commands are logged by the orchestrator itself.
"""
from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .catalog import CatalogEntry, CatalogError
from .config import AppConfig, ConfigError, load_config
from .executor import CommandRunner
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .orchestrator import Operation
from .panel import ControlPanel
from .providers.docker import InvalidIdentifierError, validate_identifier
from .refresh import RefreshScheduler
from .settings import SettingsError, SettingsValidationError, validate_server_type

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
    envvar="MCPCTL_CONFIG_FILE",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)
NO_WAIT_OPTION = typer.Option(
    False,
    "--no-wait",
    help="Return immediately instead of waiting for the runtime to settle.",
)
SET_OPTION = typer.Option(
    None,
    "--set",
    help="Setting to store before deploying, as KEY=VALUE. Repeatable.",
)

app = typer.Typer(
    add_completion=False,
    help="Deploy and manage MCP server containers from a catalog of provisioning scripts.",
)
catalog_app = typer.Typer(help="Inspect the provisioning script catalog.")
server_app = typer.Typer(help="Inspect and drive MCP server containers.")
settings_app = typer.Typer(help="Read and write per-server settings.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(catalog_app, name="catalog")
app.add_typer(server_app, name="server")
app.add_typer(settings_app, name="settings")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    panel: ControlPanel


def build_runtime(config: AppConfig, *, runner: CommandRunner | None = None) -> RuntimeContext:
    """Wire every runtime object for *config*."""
    locks = LockManager(config.runtime_dir / "locks", config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    panel = ControlPanel.from_config(config, runner=runner, logger=logger, locks=locks)
    return RuntimeContext(config=config, locks=locks, logger=logger, panel=panel)


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
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = build_runtime(config)
    ctx.obj = runtime
    ctx.call_on_close(runtime.panel.close)
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
        help="Show the mcpctl version and exit.",
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
            console.print(f"mcpctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
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


def _fail(message: str, rc: int = ExitCode.VALIDATION) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=int(rc))


def _parse_assignments(pairs: Sequence[str] | None) -> dict[str, str]:
    values: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            _fail(f"Expected KEY=VALUE, got '{pair}'.")
        values[key.strip()] = value
    return values


def _validated_identifier(value: str, label: str) -> str:
    try:
        return validate_identifier(value, label=label)
    except InvalidIdentifierError as exc:
        _fail(str(exc))


def _resolve_entry(runtime: RuntimeContext, script: str) -> CatalogEntry:
    try:
        return runtime.panel.catalog.resolve(script)
    except CatalogError as exc:
        _fail(str(exc))


def _merged_settings(
    runtime: RuntimeContext,
    server_type: str,
    assignments: Mapping[str, str],
) -> dict[str, object] | None:
    if not assignments:
        return None
    try:
        values: dict[str, object] = dict(runtime.panel.settings.load_values(server_type))
    except (SettingsError, SettingsValidationError) as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)
    values.update(assignments)
    return values


def _without_refresh(runtime: RuntimeContext, no_wait: bool) -> None:
    if no_wait:
        runtime.panel.orchestrator.refresher = RefreshScheduler.disabled()


def _report_operation(operation: Operation, *, json_output: bool = False) -> None:
    refresh = operation.refresh.result() if operation.refresh is not None else None

    if json_output:
        payload = operation.to_payload()
        if refresh is not None:
            payload["refresh"] = {
                "satisfied": refresh.satisfied,
                "attempts": refresh.attempts,
                "error": refresh.error,
            }
        console.print_json(data=payload)
    elif operation.succeeded:
        console.print(f"[green]{operation.message}[/green]")
        for warning in operation.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        if operation.stdout.strip():
            console.print(operation.stdout.rstrip(), markup=False, highlight=False)
        if refresh is not None and not refresh.satisfied:
            detail = f" ({refresh.error})" if refresh.error else ""
            console.print(
                f"[yellow]Runtime did not report the expected state after "
                f"{refresh.attempts} check(s){detail}.[/yellow]"
            )
    else:
        console.print(f"[red]{operation.message}[/red]")
        if operation.stdout.strip():
            console.print(operation.stdout.rstrip(), markup=False, highlight=False)
        if operation.stderr.strip():
            console.print(operation.stderr.rstrip(), style="red", markup=False, highlight=False)

    if not operation.succeeded:
        raise typer.Exit(code=ExitCode.PROVIDER)


# ----------------------------------------------------------------------
# catalog
# ----------------------------------------------------------------------
@catalog_app.command("list")
def catalog_list(
    ctx: typer.Context,
    include_all: bool = typer.Option(
        False,
        "--all",
        help="Also show MCP containers that match no catalog entry.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List catalog entries with their deployment state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "catalog list",
        args={"all": include_all, "json": json_output},
        target={"kind": "catalog", "path": str(runtime.config.catalog_dir)},
    ) as op:
        data = runtime.panel.list_catalog(include_unmanaged=include_all)
        if "error" in data:
            _command_error(op, str(data["error"]), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data=data)
            op.success("Reported catalog as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Script")
        table.add_column("Container")
        table.add_column("State")
        table.add_column("Description")

        servers = list(data.get("servers", [])) + list(data.get("unmanaged", []))
        if not servers:
            table.add_row("(none)", "", "", "", "")
        for server in servers:
            if server["isRunning"]:
                state = "[green]running[/green]"
            elif server["isDeployed"]:
                state = "[yellow]stopped[/yellow]"
            else:
                state = "not deployed"
            if not server["managed"]:
                state += " (unmanaged)"
            table.add_row(
                str(server["name"]),
                str(server.get("scriptName", "")),
                str(server["containerName"]),
                state,
                str(server.get("description", "")),
            )

        console.print(table)
        op.success("Reported catalog.", changed=0)


# ----------------------------------------------------------------------
# server
# ----------------------------------------------------------------------
@server_app.command("list")
def server_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List MCP containers known to the runtime."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server list",
        args={"json": json_output},
        target={"kind": "server", "scope": "runtime"},
    ) as op:
        data = runtime.panel.list_instances()
        if "error" in data:
            _command_error(op, str(data["error"]), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data=data)
            op.success("Reported servers as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Image")
        table.add_column("Status")

        servers = list(data.get("servers", []))
        if not servers:
            table.add_row("(none)", "", "", "")
        for server in servers:
            style = "green" if server["isRunning"] else "yellow"
            table.add_row(
                str(server["id"]),
                str(server["name"]),
                str(server["image"]),
                f"[{style}]{server['status']}[/{style}]",
            )

        console.print(table)
        op.success("Reported servers.", changed=0)


@server_app.command("logs")
def server_logs(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Container id or name."),
    tail: int | None = typer.Option(
        None,
        "--tail",
        "-n",
        min=1,
        help="Number of log lines to show (default from configuration).",
    ),
) -> None:
    """Show the recent log output of a container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server logs",
        args={"id": identifier, "tail": tail},
        target={"kind": "server", "name": identifier},
    ) as op:
        _validated_identifier(identifier, "id")
        data = runtime.panel.get_logs(identifier, tail=tail)
        if "error" in data:
            _command_error(op, str(data["error"]), rc=ExitCode.PROVIDER)
        op.add_step("docker.logs", status="success", detail=identifier)
        console.print(str(data["logs"]).rstrip(), markup=False, highlight=False)
        op.success("Fetched server logs.", changed=0)


@server_app.command("start")
def server_start(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Container id or name."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Start a container."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, no_wait)
    identifier = _validated_identifier(identifier, "id")
    _report_operation(runtime.panel.orchestrator.start(identifier), json_output=json_output)


@server_app.command("stop")
def server_stop(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Container id or name."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop a container."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, no_wait)
    identifier = _validated_identifier(identifier, "id")
    _report_operation(runtime.panel.orchestrator.stop(identifier), json_output=json_output)


@server_app.command("restart")
def server_restart(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Container id or name."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restart a container."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, no_wait)
    identifier = _validated_identifier(identifier, "id")
    _report_operation(runtime.panel.orchestrator.restart(identifier), json_output=json_output)


@server_app.command("remove")
def server_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Container name."),
    remove_image: bool = typer.Option(
        False,
        "--image",
        help="Also remove the container's image.",
    ),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop and remove a container."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, no_wait)
    name = _validated_identifier(name, "name")
    operation = runtime.panel.orchestrator.remove(name, remove_image=remove_image)
    _report_operation(operation, json_output=json_output)


@server_app.command("deploy")
def server_deploy(
    ctx: typer.Context,
    script: str = typer.Argument(..., help="Catalog script file name, e.g. loadBraveMCP.ps1."),
    assignments: list[str] | None = SET_OPTION,
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Deploy a catalog entry by running its provisioning script."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, no_wait)
    entry = _resolve_entry(runtime, script)
    settings = _merged_settings(runtime, entry.server_type, _parse_assignments(assignments))
    operation = runtime.panel.orchestrator.deploy(entry, settings)
    _report_operation(operation, json_output=json_output)


@server_app.command("redeploy")
def server_redeploy(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the container to replace."),
    script: str = typer.Argument(..., help="Catalog script file name."),
    assignments: list[str] | None = SET_OPTION,
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove a container and deploy it again from its script."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, no_wait)
    name = _validated_identifier(name, "name")
    entry = _resolve_entry(runtime, script)
    settings = _merged_settings(runtime, entry.server_type, _parse_assignments(assignments))
    operation = runtime.panel.orchestrator.redeploy(name, entry, settings)
    _report_operation(operation, json_output=json_output)


# ----------------------------------------------------------------------
# settings
# ----------------------------------------------------------------------
@settings_app.command("show")
def settings_show(
    ctx: typer.Context,
    server_type: str = typer.Argument(..., help="Server type, e.g. Brave."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the settings and template declarations for a server type."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "settings show",
        args={"server_type": server_type, "json": json_output},
        target={"kind": "settings", "name": server_type},
    ) as op:
        try:
            document = runtime.panel.settings.load(server_type)
        except SettingsValidationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except SettingsError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data=document.to_dict())
            op.success("Reported settings as JSON.", changed=0)
            return

        values = dict(document.values)
        required = list(document.required_names)
        optional = list(document.optional_names)
        descriptions = dict(document.descriptions)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Setting", style="bold")
        table.add_column("Kind")
        table.add_column("Value")
        table.add_column("Description")

        names = required + [name for name in optional if name not in required]
        names += [name for name in values if name not in names]
        if not names:
            table.add_row("(none)", "", "", "")
        for name in names:
            if name in required:
                kind = "required" if values.get(name) else "[red]required (missing)[/red]"
            elif name in optional:
                kind = "optional"
            else:
                kind = "extra"
            table.add_row(name, kind, str(values.get(name, "")), str(descriptions.get(name, "")))

        console.print(table)
        op.success("Reported settings.", changed=0)


@settings_app.command("set")
def settings_set(
    ctx: typer.Context,
    server_type: str = typer.Argument(..., help="Server type, e.g. Brave."),
    assignments: list[str] = typer.Argument(..., help="One or more KEY=VALUE pairs."),
    replace: bool = typer.Option(
        False,
        "--replace",
        help="Replace the stored settings instead of merging into them.",
    ),
) -> None:
    """Store settings for a server type. An empty VALUE removes the key."""
    runtime = _get_runtime(ctx)
    try:
        server_type = validate_server_type(server_type)
    except SettingsValidationError as exc:
        _fail(str(exc))
    updates = _parse_assignments(assignments)
    values: dict[str, object] = {}
    if not replace:
        values.update(_merged_settings(runtime, server_type, updates) or {})
    else:
        values.update(updates)
    _report_operation(runtime.panel.orchestrator.save_settings(server_type, values))


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
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


# ----------------------------------------------------------------------
# request bridge
# ----------------------------------------------------------------------
@app.command("request")
def request(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Request name, e.g. list-catalog or deploy."),
    payload: str | None = typer.Option(
        None,
        "--payload",
        "-p",
        help="Request payload as a JSON object.",
    ),
) -> None:
    """Send a raw request to the control panel and print the response event."""
    runtime = _get_runtime(ctx)
    _without_refresh(runtime, True)

    body: object = {}
    if payload:
        try:
            body = json.loads(payload)
        except json.JSONDecodeError as exc:
            _fail(f"Invalid JSON payload: {exc}")
    if not isinstance(body, dict):
        _fail("Request payload must be a JSON object.")

    event, response = runtime.panel.handle(name, body)
    console.print_json(data={"event": event, "payload": response})
    if event == "error":
        raise typer.Exit(code=ExitCode.VALIDATION)
    if "error" in response:
        raise typer.Exit(code=ExitCode.PROVIDER)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
