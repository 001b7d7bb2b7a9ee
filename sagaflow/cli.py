"""Command line interface for inspecting and driving persisted workflows."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from typing import Optional

import typer

from sagaflow import get_repository, load_config
from sagaflow.persistence.models import WorkflowStatus
from sagaflow.persistent import PersistentWorkflowEngine
from sagaflow.registry import DefinitionRegistry
from sagaflow.timeouts import WorkflowTimeoutService

app = typer.Typer(help="CLI for sagaflow workflows")

workflow_app = typer.Typer(help="Commands for managing workflow instances")

app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for sagaflow output"),
) -> None:
    """sagaflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_registry(spec: Optional[str]) -> DefinitionRegistry:
    """Import ``module:attr`` and return the registry it names.

    ``attr`` may be a :class:`DefinitionRegistry` or a zero-argument callable
    returning one.
    """
    if not spec:
        return DefinitionRegistry()
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        typer.secho("Registry must be given as module:attribute", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        typer.secho(f"Cannot load registry {spec}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    registry = target() if callable(target) and not isinstance(target, DefinitionRegistry) else target
    if not isinstance(registry, DefinitionRegistry):
        typer.secho(f"{spec} is not a DefinitionRegistry", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return registry


def _build_engine(registry_spec: Optional[str]) -> PersistentWorkflowEngine:
    config = load_config()
    return PersistentWorkflowEngine(
        get_repository(),
        _load_registry(registry_spec),
        config=config.persistence,
    )


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List persisted workflow instances with their current status.

    Example:
        sagaflow workflow list
        # Output: 3f2a...    orders    waiting_for_signal
        sagaflow workflow list --status completed
    """
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if status is not None:
        workflows = [wf for wf in workflows if wf.status == status]
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_instance_id}\t{wf.workflow_id}\t{wf.status.value}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """
    Show status, pending signal, metadata and execution history of an instance.

    Example:
        sagaflow workflow show 3f2a...
        # Output: Workflow 3f2a... (orders): waiting_for_signal
        #         Waiting for signal: payment (until 2024-01-02T10:00:00+00:00)
        #         - reserve_stock [step] attempt 1: success
    """
    repo = get_repository()
    state = asyncio.run(repo.get_workflow_state(instance_id))
    if state is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {state.workflow_instance_id} ({state.workflow_id}): {state.status.value}")
    if state.waiting_for_signal:
        deadline = state.signal_timeout_at.isoformat() if state.signal_timeout_at else "no deadline"
        typer.echo(f"Waiting for signal: {state.waiting_for_signal} (until {deadline})")
    if state.error_message:
        typer.echo(f"Error: {state.error_message}")
    if state.metadata:
        typer.echo(f"Metadata: {json.dumps(state.metadata, default=str)}")
    for entry in state.execution_history:
        typer.echo(
            f"- {entry.step_name} [{entry.kind}] attempt {entry.attempt}: {entry.result.kind}"
            + (f" ({entry.result.error_message})" if entry.result.is_failure else "")
        )


@workflow_app.command("cancel")
def workflow_cancel(
    instance_id: str,
    reason: str = typer.Option("Cancelled from CLI", help="Reason recorded on the instance"),
) -> None:
    """Cancel a running or waiting instance."""
    engine = _build_engine(None)
    if not asyncio.run(engine.cancel_workflow(instance_id, reason)):
        typer.secho(f"Workflow {instance_id} could not be cancelled", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {instance_id} cancelled")


@workflow_app.command("signal")
def workflow_signal(
    instance_id: str,
    signal_name: str,
    data: Optional[str] = typer.Option(None, help="JSON payload for the signal"),
    registry: Optional[str] = typer.Option(
        None, help="module:attr of the DefinitionRegistry used to resume the workflow"
    ),
) -> None:
    """
    Deliver a signal and wait for the resumed execution to settle.

    Example:
        sagaflow workflow signal 3f2a... payment --data '{"paid": true}' --registry app.flows:registry
    """
    try:
        payload = json.loads(data) if data is not None else None
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    engine = _build_engine(registry)

    async def deliver() -> Optional[WorkflowStatus]:
        if not await engine.signal_workflow(instance_id, signal_name, payload):
            return None
        await engine.wait_for_background()
        info = await engine.coordinator.repository.get_workflow_state_info(instance_id)
        return info.status if info else None

    status = asyncio.run(deliver())
    if status is None:
        typer.secho(f"Signal '{signal_name}' was rejected", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Signal '{signal_name}' delivered; workflow is {status.value}")


@workflow_app.command("sweep-timeouts")
def workflow_sweep_timeouts(
    registry: Optional[str] = typer.Option(None, help="module:attr of the DefinitionRegistry"),
) -> None:
    """Cancel waiting instances whose signal deadline has passed."""
    engine = _build_engine(registry)
    count = asyncio.run(WorkflowTimeoutService(engine).process_expired_workflows())
    typer.echo(f"Cancelled {count} timed-out workflow(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
