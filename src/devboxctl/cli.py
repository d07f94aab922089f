"""Typer-powered command line interface for ``devboxctl``.

Commands are thin: each one validates its arguments, takes the relevant locks,
delegates to :class:`~devboxctl.lifecycle.InstanceController` or
:class:`~devboxctl.forwarding.ForwardReconciler` and renders the outcome with
Rich. Every invocation is recorded in the structured operations log.
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
from .assets import TemplateAssetError, TemplateAssets
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .forwarding import ForwardError, ForwardReconciler
from .lifecycle import (
    InstanceController,
    InstanceNotFoundError,
    InstanceStateError,
    InstanceStatus,
    StartResult,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError, PortAllocator
from .providers import (
    DockerError,
    DockerProvider,
    DockerUnavailableError,
    HookError,
    HookExecutor,
    diagnose_docker_runtime,
)
from .state import (
    DEFAULT_BIND,
    ForwardMapping,
    MetadataStore,
    MetadataStoreError,
    validate_instance_name,
)
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to devboxctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine readable JSON instead of a table.",
)

VALIDATION_ERRORS: tuple[type[Exception], ...] = (
    ValueError,
    InstanceNotFoundError,
    InstanceStateError,
    TemplateAssetError,
    MetadataStoreError,
)
PROVIDER_ERRORS: tuple[type[Exception], ...] = (DockerError, HookError, ForwardError)
HANDLED_ERRORS: tuple[type[Exception], ...] = (
    *VALIDATION_ERRORS,
    *PROVIDER_ERRORS,
    ConfigError,
    LockTimeoutError,
    PortAllocationError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Single-host control layer for SSH-accessible development containers.

        Instances are docker containers described by small metadata records.
        devboxctl builds their images, allocates host ports, rotates login
        credentials, applies template hardening hooks and maintains a relay
        proxy for extra forwarded ports.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: MetadataStore
    docker: DockerProvider
    ports: PortAllocator
    hooks: HookExecutor
    assets: TemplateAssets
    templates: TemplateEngine
    forwards: ForwardReconciler
    controller: InstanceController
    locks: LockManager
    logger: StructuredLogger
    assume_yes: bool = False


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None,
    assume_yes: bool = False,
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
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    store = MetadataStore(config.state_dir, locks=locks)
    docker = DockerProvider(docker_bin=config.docker.docker_bin, socket=config.docker.socket)
    ports = PortAllocator(
        store=store,
        docker=docker,
        reserved=config.ports.reserved,
        step=config.ports.step,
    )
    hooks = HookExecutor(docker=docker)
    assets = TemplateAssets(config.templates_dir)
    forwards = ForwardReconciler(
        config=config,
        store=store,
        docker=docker,
        ports=ports,
        templates=templates,
    )
    controller = InstanceController(
        config=config,
        store=store,
        docker=docker,
        ports=ports,
        hooks=hooks,
        assets=assets,
        forwards=forwards,
    )
    runtime = RuntimeContext(
        config=config,
        store=store,
        docker=docker,
        ports=ports,
        hooks=hooks,
        assets=assets,
        templates=templates,
        forwards=forwards,
        controller=controller,
        locks=locks,
        logger=logger,
        assume_yes=assume_yes or config.assume_yes,
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
        help="Show the devboxctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Answer yes to confirmation prompts (also DEVBOX_ASSUME_YES=1).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout, yes)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"devboxctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout, yes)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
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


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, (DockerUnavailableError, ConfigError, LockTimeoutError)):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, PortAllocationError):
        return ExitCode.ALLOCATION
    if isinstance(exc, PROVIDER_ERRORS):
        return ExitCode.PROVIDER
    return ExitCode.VALIDATION


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Map a domain exception onto the exit-code taxonomy and terminate."""
    message = str(exc)
    errors = [message]
    if isinstance(exc, DockerUnavailableError):
        for hint in exc.hints:
            console.print(f"[yellow]hint:[/yellow] {hint}")
        errors.extend(exc.hints)
    _command_error(op, message, rc=int(_exit_code_for(exc)), errors=errors)


def _require_name(op: OperationScope, name: str) -> str:
    try:
        return validate_instance_name(name)
    except ValueError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


def _finish(
    op: OperationScope,
    message: str,
    *,
    changed: int,
    warnings: Sequence[str] = (),
    context: dict[str, object] | None = None,
) -> None:
    if warnings:
        op.warning(message, warnings=list(warnings), changed=changed, context=context)
    else:
        op.success(message, changed=changed, context=context)


def _status_table(statuses: Sequence[InstanceStatus]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("SSH port")
    table.add_column("Image")
    table.add_column("IP")
    table.add_column("Security")
    table.add_column("Forwards")
    if not statuses:
        table.add_row("(none)", "", "", "", "", "", "")
        return table
    for status in statuses:
        table.add_row(
            status.name,
            status.state if status.recorded else f"{status.state} (unrecorded)",
            "" if status.host_port is None else str(status.host_port),
            status.image,
            status.ip_address or "-",
            status.security,
            str(len(status.forwards)),
        )
    return table


def _render_status(status: InstanceStatus) -> None:
    table = Table(show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in status.to_dict().items():
        if key == "forwards":
            rendered = "\n".join(
                f"{item['bind']}:{item['host_port']} -> {item['container_port']} ({item['status']})"
                for item in status.forwards
            ) or "(none)"
        else:
            rendered = "" if value is None else str(value)
        table.add_row(key, rendered)
    console.print(table)


def _render_start(runtime: RuntimeContext, result: StartResult) -> None:
    status = result.status
    if result.action == "already-running":
        console.print(f"[yellow]Instance '{result.name}' is already running.[/yellow]")
    else:
        console.print(f"[green]Instance '{result.name}' {result.action}.[/green]")
    _render_status(status)
    if status.host_port is not None:
        console.print(
            f"SSH: ssh {runtime.config.login_user}@<host> -p {status.host_port}"
        )
    if result.credential is not None:
        console.print(f"Password ({result.credential.user}): [bold]{result.credential.password}[/bold]")


# ----------------------------------------------------------------------
# Sub-applications
# ----------------------------------------------------------------------
image_app = typer.Typer(help="Build template images.")
instances_app = typer.Typer(help="Create, start, stop and remove instances.")
security_app = typer.Typer(help="Apply or roll back the template hardening hook.")
forward_app = typer.Typer(help="Manage extra TCP port forwards through the relay proxy.")
ports_app = typer.Typer(help="Inspect host port claims.")
config_app = typer.Typer(help="Inspect the effective configuration.")
runtime_app = typer.Typer(help="Check the docker runtime.")

app.add_typer(image_app, name="image")
app.add_typer(instances_app, name="instance")
app.add_typer(security_app, name="security")
app.add_typer(forward_app, name="forward")
app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")
app.add_typer(runtime_app, name="runtime")


def _build_image_command(
    ctx: typer.Context,
    template: str | None,
    *,
    no_cache: bool,
    json_output: bool,
) -> None:
    runtime = _get_runtime(ctx)
    command = "image rebuild" if no_cache else "image build"
    template_name = template or runtime.config.default_template
    with runtime.logger.operation(
        command,
        args={"template": template_name, "no_cache": no_cache, "json": json_output},
        target={"kind": "image", "template": template_name},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                image, warnings = runtime.controller.build_image(
                    template_name,
                    no_cache=no_cache,
                    op=op,
                )
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"image": image, "template": template_name, "warnings": warnings})
        else:
            _print_warnings(warnings)
            console.print(f"[green]Built image {image}.[/green]")
        _finish(op, f"Built image {image}.", changed=1, warnings=warnings, context={"image": image})


@image_app.command("build")
def image_build(
    ctx: typer.Context,
    template: str | None = typer.Option(None, "--template", "-t", help="Template to build."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Build the image for a template (uses the docker layer cache)."""
    _build_image_command(ctx, template, no_cache=False, json_output=json_output)


@image_app.command("rebuild")
def image_rebuild(
    ctx: typer.Context,
    template: str | None = typer.Option(None, "--template", "-t", help="Template to rebuild."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Rebuild the image for a template without the layer cache."""
    _build_image_command(ctx, template, no_cache=True, json_output=json_output)


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------
@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start or create."),
    template: str | None = typer.Option(None, "--template", "-t", help="Template for new instances."),
    image: str | None = typer.Option(None, "--image", help="Explicit image reference."),
    port_base: int | None = typer.Option(
        None,
        "--port-base",
        help="First SSH host port candidate (later candidates add 100).",
    ),
    memory: str | None = typer.Option(None, "--memory", help="Memory limit, e.g. 1g."),
    cpus: str | None = typer.Option(None, "--cpus", help="CPU quota, e.g. 1.5."),
    pids: int | None = typer.Option(None, "--pids", help="Maximum number of processes."),
    enable_security: bool = typer.Option(
        False,
        "--enable-security",
        help="Run the template hardening hook (also on an already running instance)."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create or start an instance and print fresh login credentials."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance start",
        args={
            "name": name,
            "template": template,
            "image": image,
            "port_base": port_base,
            "memory": memory,
            "cpus": cpus,
            "pids": pids,
            "enable_security": enable_security,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.controller.start(
                    name,
                    template=template,
                    image=image,
                    port_base=port_base,
                    memory=memory,
                    cpus=cpus,
                    pids=pids,
                    enable_security=enable_security,
                    op=op,
                )
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            payload: dict[str, object] = {
                "name": result.name,
                "action": result.action,
                "status": result.status.to_dict(),
                "warnings": result.warnings,
            }
            if result.credential is not None:
                payload["credential"] = {
                    "user": result.credential.user,
                    "password": result.credential.password,
                }
            console.print_json(data=payload)
        else:
            _print_warnings(result.warnings)
            _render_start(runtime, result)
        changed = 0 if result.action == "already-running" else 1
        _finish(
            op,
            f"Instance '{name}' {result.action}.",
            changed=changed,
            warnings=result.warnings if changed else (),
            context={"action": result.action, "host_port": result.status.host_port},
        )


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
) -> None:
    """Stop an instance container; metadata is left untouched."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance stop",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = runtime.controller.stop(name, op=op)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if outcome == "stopped":
            console.print(f"[green]Instance '{name}' stopped.[/green]")
            op.success("Instance stopped.", changed=1)
        else:
            console.print(f"Instance '{name}' is already stopped.")
            op.success("Instance already stopped.", changed=0)


@instances_app.command("remove")
def instance_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove an instance container, its proxy and every record it owns."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance remove",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        confirmed = yes or runtime.assume_yes
        if not confirmed:
            confirmed = typer.confirm(
                f"Remove instance '{name}'? This cannot be undone.",
                default=False,
            )
            op.add_step("confirm", status="success" if confirmed else "skipped")
        if not confirmed:
            console.print("Cancelled.")
            op.success("Instance removal cancelled.", changed=0)
            return
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.controller.remove(name, confirmed=True, op=op)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        console.print(f"[green]Instance '{name}' removed.[/green]")
        op.success(
            "Instance removed.",
            changed=len(result.removed) + int(result.container_removed),
            context={"removed": result.removed},
        )


@instances_app.command("status")
def instance_status_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show state, image, SSH port, IP, hardening and forwards of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            runtime.controller.ensure_runtime(op)
            status = runtime.controller.status(name)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data=status.to_dict())
        else:
            _render_status(status)
        op.success("Reported instance status.", changed=0, context={"state": status.state})


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded and managed instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        try:
            runtime.controller.ensure_runtime(op)
            statuses = runtime.controller.list_instances()
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"instances": [status.to_dict() for status in statuses]})
        else:
            console.print(_status_table(statuses))
        op.success("Reported instance list.", changed=0)


@instances_app.command("password")
def instance_password(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the running instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Generate and apply a fresh login password."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance password",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                credential = runtime.controller.rotate_password(name, op=op)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(
                data={"name": name, "user": credential.user, "password": credential.password}
            )
        else:
            console.print(f"New password for {credential.user}@{name}: [bold]{credential.password}[/bold]")
        op.success("Rotated instance credential.", changed=1)


@instances_app.command("resources")
def instance_resources(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    memory: str | None = typer.Option(None, "--memory", help="Memory limit, e.g. 2g."),
    cpus: str | None = typer.Option(None, "--cpus", help="CPU quota, e.g. 2.0."),
    pids: int | None = typer.Option(None, "--pids", help="Maximum number of processes."),
) -> None:
    """Change the resource limits of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance resources",
        args={"name": name, "memory": memory, "cpus": cpus, "pids": pids},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                record = runtime.controller.update_resources(
                    name,
                    memory=memory,
                    cpus=cpus,
                    pids=pids,
                    op=op,
                )
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        console.print(
            f"[green]Instance '{name}' limits: memory={record.memory} "
            f"cpus={record.cpus} pids={record.pids}.[/green]"
        )
        op.success("Updated instance resources.", changed=1)


# ----------------------------------------------------------------------
# Security hardening
# ----------------------------------------------------------------------
@security_app.command("enable")
def security_enable(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the running instance."),
) -> None:
    """Run the hardening hook; roll it back if it fails."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "security enable",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.controller.enable_security(name, op=op)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if not result.ok:
            _print_warnings(result.warnings[1:])
            _command_error(
                op,
                f"Hardening of '{name}' failed and was rolled back: {result.detail}",
                rc=int(ExitCode.PROVIDER),
                errors=result.warnings,
            )
        console.print(f"[green]Hardening enabled for '{name}'.[/green]")
        op.success("Hardening enabled.", changed=1)


@security_app.command("disable")
def security_disable(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the running instance."),
) -> None:
    """Roll back the hardening hook and clear the marker."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "security disable",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.controller.disable_security(name, op=op)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        _print_warnings(result.warnings)
        console.print(f"[green]Hardening disabled for '{name}'.[/green]")
        _finish(op, "Hardening disabled.", changed=1, warnings=result.warnings)


@security_app.command("status")
def security_status(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the hardening marker and the hook's own status report."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "security status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            payload = runtime.controller.security_status(name, op=op)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data=payload)
        else:
            state = "enabled" if payload["marker"] else "disabled"
            console.print(f"Hardening for '{name}': [bold]{state}[/bold]")
            if payload.get("applied_at"):
                console.print(f"Applied at: {payload['applied_at']}")
            hook = payload.get("hook")
            if isinstance(hook, dict) and hook.get("output"):
                console.print(str(hook["output"]))
        op.success("Reported hardening status.", changed=0)


# ----------------------------------------------------------------------
# Forwards
# ----------------------------------------------------------------------
def _forward_mapping(op: OperationScope, host_port: str, container_port: str, bind: str) -> ForwardMapping:
    try:
        return ForwardMapping.create(host_port, container_port, bind)
    except ValueError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))


@forward_app.command("add")
def forward_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to forward into."),
    host_port: str = typer.Argument(..., help="Host port to listen on."),
    container_port: str = typer.Argument(..., help="Port inside the instance."),
    bind: str = typer.Argument(DEFAULT_BIND, help="Host address to bind (0.0.0.0 for public)."),
) -> None:
    """Forward BIND:HOST_PORT to CONTAINER_PORT inside the instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "forward add",
        args={"name": name, "host_port": host_port, "container_port": container_port, "bind": bind},
        target={"kind": "forward", "name": name},
    ) as op:
        name = _require_name(op, name)
        mapping = _forward_mapping(op, host_port, container_port, bind)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.controller.ensure_runtime(op)
                added = runtime.forwards.add(name, mapping)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        description = f"{mapping.bind}:{mapping.host_port} -> {name}:{mapping.container_port}"
        if not added:
            op.add_step("forward.add", status="skipped", detail="already declared")
            console.print(f"Forward {description} already exists.")
            op.success("Forward already declared.", changed=0)
            return
        op.add_step("forward.add", detail=mapping.to_line())
        console.print(f"[green]Forward {description} added.[/green]")
        op.success("Forward added.", changed=1)


@forward_app.command("remove")
def forward_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance owning the forward."),
    host_port: str = typer.Argument(..., help="Host port of the forward."),
    container_port: str = typer.Argument(..., help="Container port of the forward."),
    bind: str = typer.Argument(DEFAULT_BIND, help="Bind address of the forward."),
) -> None:
    """Remove a forward and rebuild the relay proxy."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "forward remove",
        args={"name": name, "host_port": host_port, "container_port": container_port, "bind": bind},
        target={"kind": "forward", "name": name},
    ) as op:
        name = _require_name(op, name)
        mapping = _forward_mapping(op, host_port, container_port, bind)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.controller.ensure_runtime(op)
                index = runtime.forwards.remove(name, mapping)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        op.add_step("forward.remove", detail=mapping.to_line())
        op.add_step(
            "proxy.sync",
            status="success" if index is not None else "skipped",
            detail=index.container if index is not None else "no forwards left",
        )
        console.print(f"[green]Forward {mapping.bind}:{mapping.host_port} removed.[/green]")
        op.success("Forward removed.", changed=1)


@forward_app.command("list")
def forward_list(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance whose forwards to list."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the forwards declared for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "forward list",
        args={"name": name, "json": json_output},
        target={"kind": "forward", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            runtime.controller.ensure_runtime(op)
            entries = runtime.forwards.list_forwards(name)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"name": name, "forwards": [item.to_dict() for item in entries]})
            op.success("Reported forwards as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Bind", style="bold")
        table.add_column("Host port")
        table.add_column("Container port")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "", "")
        else:
            for item in entries:
                table.add_row(
                    item.mapping.bind,
                    str(item.mapping.host_port),
                    str(item.mapping.container_port),
                    item.status,
                )
        console.print(table)
        op.success("Reported forwards.", changed=0)


@forward_app.command("sync")
def forward_sync(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance whose proxy to rebuild."),
) -> None:
    """Rebuild the relay proxy from the declared forwards."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "forward sync",
        args={"name": name},
        target={"kind": "forward", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.controller.ensure_runtime(op)
                index = runtime.forwards.sync(name)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if index is None:
            op.add_step("proxy.sync", status="skipped", detail="no forwards declared")
            console.print(f"No forwards declared for '{name}'; proxy removed.")
        else:
            op.add_step("proxy.sync", detail=index.container)
            listeners = ", ".join(str(port) for port in index.listeners)
            console.print(f"[green]Proxy {index.container} listening on {listeners}.[/green]")
        op.success("Forward proxy reconciled.", changed=1)


# ----------------------------------------------------------------------
# Ports, status, config, runtime
# ----------------------------------------------------------------------
@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port claims as JSON instead of a table.",
    ),
) -> None:
    """List host ports claimed by instances, forwards and operator policy."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            entries = runtime.ports.list_claims()
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port claims as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Port", style="bold")
        table.add_column("Owner")
        table.add_column("Kind")

        if not entries:
            table.add_row("(none)", "", "")
        else:
            for entry in entries:
                table.add_row(str(entry["port"]), entry["name"], entry["kind"])

        console.print(table)
        op.success("Reported port claims.", changed=0)


@app.command("status")
def status_command(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Summarise the docker runtime and every instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        try:
            runtime.controller.ensure_runtime(op)
            statuses = runtime.controller.list_instances()
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(
                data={
                    "docker": "available",
                    "network": runtime.config.network,
                    "instances": [status.to_dict() for status in statuses],
                }
            )
        else:
            console.print(f"Docker: [green]available[/green]  network: {runtime.config.network}")
            console.print(_status_table(statuses))
        running = sum(1 for status in statuses if status.running)
        op.success(
            "Reported overall status.",
            changed=0,
            context={"instances": len(statuses), "running": running},
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


@runtime_app.command("check")
def runtime_check(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that docker is reachable and list available templates."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "runtime check",
        args={"json": json_output},
        target={"kind": "runtime"},
    ) as op:
        available = runtime.docker.available()
        hints = [] if available else diagnose_docker_runtime(runtime.config.docker.socket)
        templates = runtime.assets.list_templates()
        op.add_step("docker.info", status="success" if available else "error")

        if json_output:
            console.print_json(
                data={"docker": available, "hints": hints, "templates": templates}
            )
        else:
            state = "[green]available[/green]" if available else "[red]unavailable[/red]"
            console.print(f"Docker: {state}")
            for hint in hints:
                console.print(f"[yellow]hint:[/yellow] {hint}")
            console.print(f"Templates: {', '.join(templates) or '(none)'}")

        if not available:
            _command_error(
                op,
                "Docker daemon is not reachable.",
                rc=int(ExitCode.ENVIRONMENT),
                errors=["Docker daemon is not reachable.", *hints],
            )
        op.success("Docker runtime available.", changed=0, context={"templates": templates})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
