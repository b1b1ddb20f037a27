"""Command line interface for driving process instances."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer

from .config import ProcessCoreConfig, load_config
from .errors import ProcessCoreError
from .facade import ExecutionService

T = TypeVar("T")

app = typer.Typer(help="CLI for ProcessCore process instances")

# Command groups
instance_app = typer.Typer(
    help="Commands for process instances (set PROCESSCORE_DATABASE_URL to persist state)"
)

app.add_typer(instance_app, name="instance")

_state: Dict[str, Any] = {"config": None}


@app.callback()
def main(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to a YAML config file"
    ),
) -> None:
    """ProcessCore CLI entry point."""
    config = load_config(config_path)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config


def _config() -> ProcessCoreConfig:
    return _state["config"] or load_config()


def _run(operation: Callable[[ExecutionService], Awaitable[T]]) -> T:
    """Run one operation against a fresh service, letting triggers finish."""

    async def runner() -> T:
        service = ExecutionService.from_config(_config())
        try:
            result = await operation(service)
            await service.drain()
            return result
        finally:
            await service.aclose()

    try:
        return asyncio.run(runner())
    except ProcessCoreError as exc:
        typer.secho(f"Error ({exc.code}): {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_vars(values: List[str]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {item!r}")
        try:
            parsed[key] = json.loads(raw)
        except ValueError:
            parsed[key] = raw
    return parsed


def _parse_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid JSON: {exc}")
    if not isinstance(value, dict):
        raise typer.BadParameter("Expected a JSON object")
    return value


@instance_app.command("start")
def instance_start(
    process_id: str,
    var: List[str] = typer.Option([], "--var", help="Instance variable as KEY=VALUE"),
    started_by: str = typer.Option("cli", help="Actor starting the instance"),
    notes: Optional[str] = None,
    fallback: bool = typer.Option(
        False, help="Use the default process when PROCESS_ID is not registered"
    ),
) -> None:
    """
    Start a new instance of a process definition.

    Example:
        processcore instance start MKT-FLOW-001 --var client=Acme --var budget=5000
    """
    variables = _parse_vars(var)
    result = _run(
        lambda service: service.start_instance(
            process_id,
            variables=variables,
            started_by=started_by,
            notes=notes,
            resolution="default_fallback" if fallback else "registered",
        )
    )
    instance = result.instance
    typer.echo(f"{instance.id}\t{instance.status}\t{instance.current_step_id}")


@instance_app.command("complete")
def instance_complete(
    instance_id: str,
    step_id: str,
    completed_by: str = typer.Option("cli", "--by", help="Actor completing the step"),
    output: Optional[str] = typer.Option(None, help="Step output as a JSON object"),
    notes: Optional[str] = None,
) -> None:
    """Complete the in-progress step of an instance."""
    payload = _parse_json(output)
    result = _run(
        lambda service: service.complete_step(
            instance_id, step_id, completed_by=completed_by, output=payload, notes=notes
        )
    )
    if result.next_step is not None:
        typer.echo(f"Completed {step_id}, next step: {result.next_step.step_id}")
    else:
        typer.echo(f"Completed {step_id}, instance {result.instance.status}")


@instance_app.command("assign")
def instance_assign(
    instance_id: str,
    step_id: str,
    assigned_to: str,
    assigned_by: str = typer.Option("cli", "--by", help="Actor making the assignment"),
    notes: Optional[str] = None,
) -> None:
    """Assign a step to a person, replacing any current owner."""
    result = _run(
        lambda service: service.assign_step(
            instance_id, step_id, assigned_to, assigned_by=assigned_by, notes=notes
        )
    )
    typer.echo(f"{step_id} assigned to {result.assignment.assigned_to}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its steps and active assignments.

    Example:
        processcore instance show 3f0c...
        # Output: Instance 3f0c...: in_progress (Marketing Flow)
        #         - MKT-FLOW-001-A: completed [alice]
        #         - MKT-FLOW-001-B: in_progress
    """
    details = _run(lambda service: service.get_instance(instance_id))
    typer.echo(f"Instance {details.id}: {details.status} ({details.snapshot.name})")
    if details.variables:
        typer.echo(f"Variables: {json.dumps(details.variables)}")
    owners = {a.step_id: a.assigned_to for a in details.assignments}
    for step in details.steps:
        owner = f" [{owners[step.step_id]}]" if step.step_id in owners else ""
        typer.echo(f"- {step.step_id}: {step.status}{owner}")


@instance_app.command("timeline")
def instance_timeline(
    instance_id: str,
    limit: int = typer.Option(50, min=1),
    offset: int = typer.Option(0, min=0),
) -> None:
    """Print timeline events, newest first."""
    page = _run(lambda service: service.get_timeline(instance_id, limit, offset))
    for entry in page.timeline:
        typer.echo(
            f"{entry.created_at.isoformat()}\t{entry.type}\t{entry.step_name or '-'}\t"
            f"{entry.message or ''}"
        )
    pagination = page.pagination
    typer.echo(
        f"Showing {len(page.timeline)} of {pagination.total}"
        + (" (more available)" if pagination.has_more else "")
    )


@instance_app.command("list")
def instance_list(status: Optional[str] = None) -> None:
    """List instances with their status and current step."""
    instances = _run(lambda service: service.list_instances(status))
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.id}\t{instance.status}\t{instance.current_step_id or '-'}"
        )


@instance_app.command("fail")
def instance_fail(
    instance_id: str,
    error: Optional[str] = typer.Option(None, help="Failure reason"),
) -> None:
    """Mark an in-progress instance as failed."""
    instance = _run(
        lambda service: service.fail_instance(instance_id, error=error, actor="cli")
    )
    typer.echo(f"{instance.id}\t{instance.status}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config=_config()), host=host, port=port)
