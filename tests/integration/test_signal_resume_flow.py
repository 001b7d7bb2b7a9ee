"""Signal-driven resume over the in-memory store.

Resuming re-walks the graph from its root. These tests pin down what that
means for steps before a wait: guarded steps are skipped, unguarded ones
run again.
"""

from datetime import timedelta
from typing import List

import pytest
from pydantic import BaseModel

from sagaflow import (
    DefinitionRegistry,
    FunctionStep,
    PersistentWorkflowEngine,
    WorkflowBuilder,
    WorkflowStatus,
    WorkflowTimeoutService,
)
from sagaflow.persistence import InMemoryWorkflowStateRepository

sent_emails: List[str] = []


class Onboarding(BaseModel):
    employee: str
    account_created: bool = False
    welcome_emails: int = 0
    laptop_shipped: bool = False


def create_account(ctx: Onboarding) -> None:
    ctx.account_created = True


def send_welcome_email(ctx: Onboarding) -> None:
    ctx.welcome_emails += 1
    sent_emails.append(ctx.employee)


def ship_laptop(ctx: Onboarding) -> None:
    ctx.laptop_shipped = True


guarded = (
    WorkflowBuilder("onboarding_guarded")
    .start_with(
        FunctionStep(
            create_account, already_applied=lambda ctx: ctx.account_created
        )
    )
    .wait_for_signal("ok")
    .then(ship_laptop)
    .build()
)

unguarded = (
    WorkflowBuilder("onboarding_unguarded")
    .start_with(send_welcome_email)
    .wait_for_signal("ok")
    .then(ship_laptop)
    .build()
)


def _engine() -> PersistentWorkflowEngine:
    registry = DefinitionRegistry()
    registry.register(guarded, Onboarding)
    registry.register(unguarded, Onboarding)
    return PersistentWorkflowEngine(InMemoryWorkflowStateRepository(), registry)


@pytest.mark.asyncio
async def test_guarded_step_runs_once_across_resume():
    engine = _engine()
    started = await engine.start_persistent_workflow(guarded, Onboarding(employee="ana"))
    assert started.status == WorkflowStatus.WAITING_FOR_SIGNAL

    assert await engine.signal_workflow(started.workflow_instance_id, "ok", {"desk": "4B"})
    await engine.wait_for_background()

    state = await engine.get_workflow_state(started.workflow_instance_id)
    assert state.status == WorkflowStatus.COMPLETED
    assert state.context.laptop_shipped is True
    step_entries = [t for t in state.execution_history if t.kind == "step"]
    assert [t.step_name for t in step_entries] == ["create_account", "ship_laptop"]
    assert state.metadata["signal_ok"] == {"desk": "4B"}


@pytest.mark.asyncio
async def test_unguarded_step_runs_again_on_resume():
    sent_emails.clear()
    engine = _engine()
    started = await engine.start_persistent_workflow(unguarded, Onboarding(employee="ben"))

    assert await engine.signal_workflow(started.workflow_instance_id, "ok")
    await engine.wait_for_background()

    state = await engine.get_workflow_state(started.workflow_instance_id)
    assert state.status == WorkflowStatus.COMPLETED
    # no per-node checkpoints: the step before the wait executed on both passes
    assert state.context.welcome_emails == 2
    assert sent_emails == ["ben", "ben"]


@pytest.mark.asyncio
async def test_expired_wait_cannot_be_signalled():
    engine = _engine()
    started = await engine.start_persistent_workflow(guarded, Onboarding(employee="cy"))
    later = started.signal_timeout_at + timedelta(minutes=1)

    swept = await WorkflowTimeoutService(engine).process_expired_workflows(now=later)
    assert swept == 1

    assert not await engine.signal_workflow(started.workflow_instance_id, "ok")
    state = await engine.get_workflow_state(started.workflow_instance_id)
    assert state.status == WorkflowStatus.CANCELLED
    assert state.error_message == "Timed out waiting for signal: ok"
    assert state.context.laptop_shipped is False
