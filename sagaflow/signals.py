"""Validation and routing of external signals to waiting workflow instances."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from .constants import signal_metadata_key
from .coordinator import WorkflowStateCoordinator
from .errors import StateConflictError
from .persistence.models import (
    WAITING_STATUSES,
    WorkflowInstanceState,
    WorkflowStateInfo,
    WorkflowStatus,
    utcnow,
)
from .results import StepResult
from .steps import call_maybe_async

logger = logging.getLogger(__name__)

ResumeCallback = Callable[[str], Awaitable[Any]]


class SignalHandler:
    """Deliver signals and approvals, then resume the instance in the background.

    Delivery and resumption are reported separately: ``deliver_signal``
    returns once the payload is persisted, and a failing resume surfaces
    through the engine's error notification instead.
    """

    def __init__(
        self,
        coordinator: WorkflowStateCoordinator,
        resume_callback: Optional[ResumeCallback] = None,
    ) -> None:
        self.coordinator = coordinator
        self.resume_callback = resume_callback
        self._tasks: Set[asyncio.Task] = set()

    @staticmethod
    def validate_state_for_signaling(
        info: WorkflowStateInfo, signal_name: str, now: Optional[datetime] = None
    ) -> bool:
        if info.status not in WAITING_STATUSES:
            logger.warning(
                f"Workflow {info.workflow_instance_id} is not waiting for signals "
                f"(status {info.status.value})"
            )
            return False
        if info.waiting_for_signal != signal_name:
            logger.warning(
                f"Workflow {info.workflow_instance_id} is waiting for signal "
                f"'{info.waiting_for_signal}', not '{signal_name}'"
            )
            return False
        if info.signal_timeout_at is not None and (now or utcnow()) > info.signal_timeout_at:
            logger.warning(
                f"Signal '{signal_name}' for workflow {info.workflow_instance_id} "
                f"arrived after its deadline {info.signal_timeout_at.isoformat()}"
            )
            return False
        return True

    async def is_waiting_for_signal(self, workflow_instance_id: str, signal_name: str) -> bool:
        info, _ = await self.coordinator.get_workflow_state_info(workflow_instance_id)
        return (
            info is not None
            and info.status in WAITING_STATUSES
            and info.waiting_for_signal == signal_name
        )

    async def deliver_signal(
        self, workflow_instance_id: str, signal_name: str, payload: Any = None
    ) -> bool:
        info, context_type = await self.coordinator.get_workflow_state_info(workflow_instance_id)
        if info is None:
            logger.warning(f"Signal '{signal_name}' for unknown workflow {workflow_instance_id}")
            return False
        if not self.validate_state_for_signaling(info, signal_name):
            return False

        def accept(state: WorkflowInstanceState) -> None:
            # the record may have moved on since the info read above
            if not self.validate_state_for_signaling(state.info(), signal_name):
                raise StateConflictError(
                    workflow_instance_id,
                    message=f"Workflow {workflow_instance_id} no longer waits for '{signal_name}'",
                )
            state.metadata[signal_metadata_key(signal_name)] = payload
            state.status = WorkflowStatus.RUNNING
            state.waiting_for_signal = None
            state.signal_timeout_at = None

        result = await self.coordinator.transition(
            workflow_instance_id, WAITING_STATUSES, accept, context_type
        )
        if not result.ok:
            logger.warning(
                f"Signal '{signal_name}' rejected for workflow {workflow_instance_id}: "
                f"{result.error}"
            )
            return False

        logger.info(f"Signal '{signal_name}' accepted for workflow {workflow_instance_id}")
        if self.resume_callback is not None:
            self._spawn(workflow_instance_id)
        return True

    def _spawn(self, workflow_instance_id: str) -> None:
        task = asyncio.create_task(self._resume(workflow_instance_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resume(self, workflow_instance_id: str) -> None:
        try:
            await self.resume_callback(workflow_instance_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Background resume of workflow {workflow_instance_id} failed")

    async def wait_for_background(self) -> None:
        """Block until every scheduled resume has finished."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)


class ApprovalResponse(BaseModel):
    """Payload expected by approval waits."""

    is_approved: bool
    approved_by: str
    approved_at: datetime = Field(default_factory=utcnow)
    comments: Optional[str] = None


def approval_handler(
    on_decision: Optional[Callable[[Any, ApprovalResponse], Any]] = None,
) -> Callable[[Any, Any], Awaitable[StepResult]]:
    """Build an ``on_signal`` callback that turns an approval payload into a step result.

    A missing or malformed payload and a denial both fail the wait without
    retry; ``on_decision`` sees every valid response before that happens.
    """

    async def handle(context: Any, payload: Any) -> StepResult:
        if payload is None:
            return StepResult.failure("No approval response received")
        try:
            response = ApprovalResponse.model_validate(payload)
        except ValidationError as exc:
            return StepResult.failure(f"Invalid approval response: {exc}")
        if on_decision is not None:
            await call_maybe_async(on_decision, context, response)
        metadata = {
            "approval_decision": response.is_approved,
            "approved_by": response.approved_by,
            "approved_at": response.approved_at.isoformat(),
            "approval_comments": response.comments or "",
        }
        if response.is_approved:
            return StepResult.success(metadata)
        message = f"Approval denied by {response.approved_by}"
        if response.comments:
            message += f": {response.comments}"
        return StepResult.failure(
            message,
            should_retry=False,
            metadata=metadata,
        )

    return handle


__all__ = ["ApprovalResponse", "ResumeCallback", "SignalHandler", "approval_handler"]
