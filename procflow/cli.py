"""Command line interface for procflow definitions and instances."""

from __future__ import annotations

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any, Coroutine, Dict, List, Optional, TypeVar

import typer
import yaml
from pydantic import ValidationError

from procflow import DefinitionCatalog, ProcessEngine, get_repository
from procflow.catalog import read_definitions
from procflow.config import ProcflowConfig, configure_logging, load_config
from procflow.definitions import find_problems
from procflow.errors import ProcflowError
from procflow.instances import InstanceStatus, Priority, ProcessInstance
from procflow.persistence import InstanceFilter, ProcessRepository
from procflow.security import Actor, ActorTokenDecoder, policy_from_config

T = TypeVar("T")

app = typer.Typer(help="CLI for procflow process definitions and instances")

# Command groups
definition_app = typer.Typer(help="Commands for managing process definitions")
instance_app = typer.Typer(help="Commands for running process instances")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")


@app.callback()
def main(
    ctx: typer.Context,
    actor: str = typer.Option(
        "cli", envvar="PROCFLOW_ACTOR", help="Identity recorded in the audit trail"
    ),
    tenant: Optional[str] = typer.Option(None, help="Tenant the actor works within"),
    token: Optional[str] = typer.Option(
        None, envvar="PROCFLOW_TOKEN", help="JWT identifying the actor"
    ),
    config: Optional[Path] = typer.Option(None, help="Path to a procflow YAML config"),
) -> None:
    """procflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    configure_logging(settings)
    if token:
        try:
            resolved = ActorTokenDecoder.from_config(settings.security).decode(token)
        except (ProcflowError, ValueError) as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1)
    else:
        resolved = Actor(id=actor, tenant_id=tenant)
    ctx.obj = {"config": settings, "config_path": config, "actor": resolved}


# ----------------------------------------------------------------------
# Helpers


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except ProcflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _actor(ctx: typer.Context) -> Actor:
    return ctx.obj["actor"]


def _repository(ctx: typer.Context) -> ProcessRepository:
    if ctx.obj["config_path"]:
        return get_repository(config=ctx.obj["config"])
    return get_repository()


def _engine(ctx: typer.Context) -> ProcessEngine:
    settings: ProcflowConfig = ctx.obj["config"]
    return ProcessEngine(
        _repository(ctx),
        policy=policy_from_config(settings.security),
        business_key_prefix=settings.engine.business_key_prefix,
        default_priority=settings.engine.default_priority,
    )


def _catalog(ctx: typer.Context) -> DefinitionCatalog:
    settings: ProcflowConfig = ctx.obj["config"]
    return DefinitionCatalog(_repository(ctx), policy=policy_from_config(settings.security))


def _parse_assignments(values: Optional[List[str]]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into a mapping with YAML-typed values."""
    parsed: Dict[str, Any] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {item!r}")
        value = yaml.safe_load(raw) if raw else ""
        # YAML dates stay text so variables remain JSON compatible.
        parsed[key] = raw if isinstance(value, date) else value
    return parsed


def _echo_instance(instance: ProcessInstance) -> None:
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    typer.echo(f"Business key: {instance.business_key}")
    typer.echo(
        f"Definition: {instance.definition_id} (version {instance.definition_version})"
    )
    typer.echo(f"Current step: {instance.current_step}")
    typer.echo(f"Priority: {instance.priority.value}")
    typer.echo(f"Started: {instance.start_time.isoformat()} by {instance.initiated_by}")
    if instance.end_time is not None:
        typer.echo(f"Ended: {instance.end_time.isoformat()} (duration {instance.duration})")
    if instance.assigned_to:
        typer.echo(f"Assigned to: {', '.join(instance.assigned_to)}")
    if instance.variables:
        typer.echo(f"Variables: {json.dumps(instance.variables, default=str)}")


# ----------------------------------------------------------------------
# Definitions


@definition_app.command("import")
def definition_import(ctx: typer.Context, path: Path) -> None:
    """
    Store the process definitions found in a YAML or JSON file.

    Example:
        procflow definition import ./definitions/invoice_approval.yaml
        # Output: 5f0c...    Invoice Approval Process    1.2
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        definitions = read_definitions(path)
    except ValidationError as exc:
        typer.secho(f"Invalid process definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    catalog = _catalog(ctx)
    actor = _actor(ctx)

    async def _import() -> list:
        return [await catalog.create(d, actor) for d in definitions]

    for definition in _run(_import()):
        typer.echo(f"{definition.id}\t{definition.name}\t{definition.version}")


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """Report structural problems in the definitions of a file without storing them."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        definitions = read_definitions(path)
    except ValidationError as exc:
        typer.secho(f"Invalid process definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    failed = False
    for definition in definitions:
        problems = find_problems(definition)
        if not problems:
            typer.echo(f"{definition.name} {definition.version}: OK")
            continue
        failed = True
        typer.secho(f"{definition.name} {definition.version}:", fg=typer.colors.RED)
        for problem in problems:
            typer.echo(f"  - {problem}")
    if failed:
        raise typer.Exit(code=1)


@definition_app.command("list")
def definition_list(
    ctx: typer.Context,
    category: Optional[str] = None,
    active: Optional[bool] = typer.Option(None, "--active/--inactive"),
    search: Optional[str] = None,
) -> None:
    """List process definitions, most recently updated first."""
    definitions = _run(
        _catalog(ctx).list(_actor(ctx), category=category, active=active, search=search)
    )
    if not definitions:
        typer.echo("No process definitions found")
        return
    for d in definitions:
        state = "active" if d.is_active else "inactive"
        typer.echo(f"{d.id}\t{d.name}\t{d.version}\t{d.category.value}\t{state}")


@definition_app.command("show")
def definition_show(ctx: typer.Context, definition_id: str) -> None:
    """Show a process definition and its nodes."""
    d = _run(_catalog(ctx).get(definition_id, _actor(ctx)))
    state = "active" if d.is_active else "inactive"
    typer.echo(f"Definition {d.id}: {d.name} {d.version} ({d.category.value}, {state})")
    if d.description:
        typer.echo(d.description)
    for node in d.nodes:
        targets = ", ".join(node.connections) or "(end)"
        typer.echo(f"- {node.id} [{node.type.value}] {node.name} -> {targets}")


@definition_app.command("activate")
def definition_activate(ctx: typer.Context, definition_id: str) -> None:
    """Validate and activate a process definition."""
    d = _run(_catalog(ctx).activate(definition_id, _actor(ctx)))
    typer.echo(f"Definition {d.id} activated")


@definition_app.command("deactivate")
def definition_deactivate(ctx: typer.Context, definition_id: str) -> None:
    """Deactivate a process definition so no new instances can start."""
    d = _run(_catalog(ctx).deactivate(definition_id, _actor(ctx)))
    typer.echo(f"Definition {d.id} deactivated")


@definition_app.command("delete")
def definition_delete(ctx: typer.Context, definition_id: str) -> None:
    """Delete a process definition without running or suspended instances."""
    _run(_catalog(ctx).delete(definition_id, _actor(ctx)))
    typer.echo(f"Definition {definition_id} deleted")


# ----------------------------------------------------------------------
# Instances


@instance_app.command("start")
def instance_start(
    ctx: typer.Context,
    definition_id: str,
    business_key: Optional[str] = None,
    var: Optional[List[str]] = typer.Option(None, help="Initial variable as key=value"),
    assign: Optional[List[str]] = typer.Option(None, help="Assigned participant"),
    priority: Optional[Priority] = None,
    department: Optional[str] = None,
) -> None:
    """
    Start a new instance of an active process definition.

    Example:
        procflow instance start 5f0c... --var amount=1200 --priority high
        # Output: Started instance 9a1e... (PROC_1718000000000_ab12cd) at start_1
    """
    instance = _run(
        _engine(ctx).start(
            definition_id,
            _actor(ctx),
            business_key=business_key,
            variables=_parse_assignments(var),
            assigned_to=assign,
            priority=priority,
            department_id=department,
        )
    )
    typer.echo(
        f"Started instance {instance.id} ({instance.business_key}) at {instance.current_step}"
    )


@instance_app.command("complete")
def instance_complete(
    ctx: typer.Context,
    instance_id: str,
    var: Optional[List[str]] = typer.Option(None, help="Task output as key=value"),
) -> None:
    """Complete the current step of an instance and advance it."""
    instance = _run(
        _engine(ctx).complete_task(instance_id, _actor(ctx), _parse_assignments(var))
    )
    typer.echo(
        f"Instance {instance.id}: {instance.status.value} at {instance.current_step}"
    )


@instance_app.command("suspend")
def instance_suspend(ctx: typer.Context, instance_id: str) -> None:
    """Suspend a running instance."""
    instance = _run(_engine(ctx).suspend(instance_id, _actor(ctx)))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("resume")
def instance_resume(ctx: typer.Context, instance_id: str) -> None:
    """Resume a suspended instance."""
    instance = _run(_engine(ctx).resume(instance_id, _actor(ctx)))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("cancel")
def instance_cancel(
    ctx: typer.Context, instance_id: str, reason: Optional[str] = None
) -> None:
    """Cancel a running or suspended instance."""
    instance = _run(_engine(ctx).cancel(instance_id, _actor(ctx), reason))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("fail")
def instance_fail(
    ctx: typer.Context, instance_id: str, reason: Optional[str] = None
) -> None:
    """Mark a running instance as failed."""
    instance = _run(_engine(ctx).fail(instance_id, _actor(ctx), reason))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("retry")
def instance_retry(ctx: typer.Context, instance_id: str) -> None:
    """Return a failed instance to running."""
    instance = _run(_engine(ctx).retry(instance_id, _actor(ctx)))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("list")
def instance_list(
    ctx: typer.Context,
    status: Optional[List[InstanceStatus]] = typer.Option(None),
    definition: Optional[str] = None,
    business_key: Optional[str] = None,
    priority: Optional[Priority] = None,
    page: int = 1,
    limit: int = 50,
) -> None:
    """
    List process instances with their current status.

    Example:
        procflow instance list --status running --status suspended
        # Output: 9a1e...    PROC_1718000000000_ab12cd    running    finance_review
    """
    criteria = InstanceFilter(
        statuses=status or [],
        definition_id=definition,
        business_key=business_key,
        priority=priority,
        page=page,
        limit=limit,
    )
    instances = _run(_engine(ctx).list_instances(_actor(ctx), criteria))
    if not instances:
        typer.echo("No instances found")
        return
    for i in instances:
        typer.echo(f"{i.id}\t{i.business_key}\t{i.status.value}\t{i.current_step}")


@instance_app.command("show")
def instance_show(ctx: typer.Context, instance_id: str) -> None:
    """Show the current state of an instance."""
    _echo_instance(_run(_engine(ctx).get_instance(instance_id, _actor(ctx))))


@instance_app.command("history")
def instance_history(ctx: typer.Context, instance_id: str) -> None:
    """Print the audit trail of an instance, oldest entry first."""
    for entry in _run(_engine(ctx).get_history(instance_id, _actor(ctx))):
        typer.echo(
            f"#{entry.sequence} {entry.timestamp.isoformat()} {entry.action.value} "
            f"by {entry.actor} {json.dumps(entry.details, default=str)}"
        )


@instance_app.command("variables")
def instance_variables(
    ctx: typer.Context,
    instance_id: str,
    set_: Optional[List[str]] = typer.Option(None, "--set", help="Update as key=value"),
) -> None:
    """Show, or with --set update, the variables of an instance."""
    engine = _engine(ctx)
    updates = _parse_assignments(set_)
    if updates:
        variables = _run(engine.update_variables(instance_id, updates, _actor(ctx)))
    else:
        variables = _run(engine.get_variables(instance_id, _actor(ctx)))
    for key, value in variables.items():
        typer.echo(f"{key} = {json.dumps(value, default=str)}")


@instance_app.command("steps")
def instance_steps(ctx: typer.Context, instance_id: str) -> None:
    """Show per-node progress of an instance."""
    for step in _run(_engine(ctx).get_steps(instance_id, _actor(ctx))):
        suffix = f" ({step.completed_at} by {step.completed_by})" if step.completed_at else ""
        typer.echo(f"- {step.node_id} [{step.type}] {step.name}: {step.state.value}{suffix}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
