import uuid
from datetime import timedelta

import pytest
from pydantic import BaseModel

from sagaflow.coordinator import WorkflowStateCoordinator
from sagaflow.persistence import InMemoryWorkflowStateRepository, WorkflowInstanceState, WorkflowStatus
from sagaflow.persistence.models import utcnow
from sagaflow.signals import ApprovalResponse, SignalHandler, approval_handler


class ExpenseContext(BaseModel):
    amount: int = 0
    approved_by: str = ""


async def _waiting(repo, signal_name="receipt", deadline=None, status=WorkflowStatus.WAITING_FOR_SIGNAL):
    state = WorkflowInstanceState(
        workflow_instance_id=uuid.uuid4().hex,
        workflow_id="expenses",
        context=ExpenseContext(amount=120),
        status=status,
        waiting_for_signal=signal_name,
        signal_timeout_at=deadline or utcnow() + timedelta(hours=1),
    )
    await repo.save_workflow_state(state)
    return state


def _handler(repo, resumed=None):
    async def resume(instance_id):
        resumed.append(instance_id)

    return SignalHandler(
        WorkflowStateCoordinator(repo), resume if resumed is not None else None
    )


def test_validate_state_for_signaling():
    state = WorkflowInstanceState(
        workflow_instance_id="wf-1",
        workflow_id="expenses",
        context={},
        status=WorkflowStatus.WAITING_FOR_APPROVAL,
        waiting_for_signal="approval_finance",
        signal_timeout_at=utcnow() + timedelta(minutes=5),
    )
    info = state.info()
    assert SignalHandler.validate_state_for_signaling(info, "approval_finance")
    assert not SignalHandler.validate_state_for_signaling(info, "receipt")
    assert not SignalHandler.validate_state_for_signaling(
        info, "approval_finance", now=utcnow() + timedelta(minutes=10)
    )
    running = info.model_copy(update={"status": WorkflowStatus.RUNNING})
    assert not SignalHandler.validate_state_for_signaling(running, "approval_finance")


@pytest.mark.asyncio
async def test_deliver_signal_stores_payload_and_resumes():
    repo = InMemoryWorkflowStateRepository()
    resumed = []
    handler = _handler(repo, resumed)
    state = await _waiting(repo)

    assert await handler.is_waiting_for_signal(state.workflow_instance_id, "receipt")
    assert await handler.deliver_signal(state.workflow_instance_id, "receipt", {"url": "s3://r.pdf"})
    await handler.wait_for_background()

    stored = await repo.get_workflow_state(state.workflow_instance_id)
    assert stored.status == WorkflowStatus.RUNNING
    assert stored.waiting_for_signal is None
    assert stored.signal_timeout_at is None
    assert stored.metadata["signal_receipt"] == {"url": "s3://r.pdf"}
    assert stored.version == 1
    assert resumed == [state.workflow_instance_id]
    assert not await handler.is_waiting_for_signal(state.workflow_instance_id, "receipt")


@pytest.mark.asyncio
async def test_mismatched_signal_leaves_record_untouched():
    repo = InMemoryWorkflowStateRepository()
    resumed = []
    handler = _handler(repo, resumed)
    state = await _waiting(repo)
    before = repo.raw_record(state.workflow_instance_id)

    assert not await handler.deliver_signal(state.workflow_instance_id, "invoice", {"x": 1})

    assert repo.raw_record(state.workflow_instance_id) == before
    assert resumed == []


@pytest.mark.asyncio
async def test_second_delivery_is_rejected():
    repo = InMemoryWorkflowStateRepository()
    handler = _handler(repo)
    state = await _waiting(repo)

    assert await handler.deliver_signal(state.workflow_instance_id, "receipt", 1)
    after_first = repo.raw_record(state.workflow_instance_id)
    assert not await handler.deliver_signal(state.workflow_instance_id, "receipt", 2)
    assert repo.raw_record(state.workflow_instance_id) == after_first


@pytest.mark.asyncio
async def test_expired_wait_rejects_signal():
    repo = InMemoryWorkflowStateRepository()
    handler = _handler(repo)
    state = await _waiting(repo, deadline=utcnow() - timedelta(seconds=1))
    before = repo.raw_record(state.workflow_instance_id)

    assert not await handler.deliver_signal(state.workflow_instance_id, "receipt")
    assert repo.raw_record(state.workflow_instance_id) == before


@pytest.mark.asyncio
async def test_unknown_instance_and_terminal_instances():
    repo = InMemoryWorkflowStateRepository()
    handler = _handler(repo)
    assert not await handler.deliver_signal("missing", "receipt")

    state = await _waiting(repo, status=WorkflowStatus.CANCELLED)
    before = repo.raw_record(state.workflow_instance_id)
    assert not await handler.deliver_signal(state.workflow_instance_id, "receipt")
    assert repo.raw_record(state.workflow_instance_id) == before


@pytest.mark.asyncio
async def test_failing_resume_does_not_undo_delivery():
    repo = InMemoryWorkflowStateRepository()

    async def broken_resume(instance_id):
        raise RuntimeError("engine down")

    handler = SignalHandler(WorkflowStateCoordinator(repo), broken_resume)
    state = await _waiting(repo)

    assert await handler.deliver_signal(state.workflow_instance_id, "receipt")
    await handler.wait_for_background()
    stored = await repo.get_workflow_state_info(state.workflow_instance_id)
    assert stored.status == WorkflowStatus.RUNNING


@pytest.mark.asyncio
async def test_approval_handler_outcomes():
    decisions = []
    handle = approval_handler(lambda ctx, response: decisions.append(response.approved_by))
    ctx = ExpenseContext()

    approved = await handle(ctx, {"is_approved": True, "approved_by": "dana"})
    assert approved.is_success
    assert approved.metadata["approved_by"] == "dana"
    assert approved.metadata["approval_decision"] is True

    denied = await handle(
        ctx,
        ApprovalResponse(is_approved=False, approved_by="lee", comments="over budget").model_dump(),
    )
    assert denied.is_failure
    assert denied.error_message == "Approval denied by lee: over budget"
    assert denied.should_retry is False
    assert decisions == ["dana", "lee"]

    missing = await handle(ctx, None)
    assert missing.is_failure
    assert missing.error_message == "No approval response received"

    invalid = await handle(ctx, {"approved_by": "nobody"})
    assert invalid.is_failure
    assert invalid.error_message.startswith("Invalid approval response")
