"""Error taxonomy for sagaflow workflows."""

from __future__ import annotations

from typing import Optional

from .constants import ErrorCodes


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    code: str = ErrorCodes.STEP_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class StepExecutionFailure(WorkflowError):
    """A step returned failure or raised, and retries are exhausted."""

    code = ErrorCodes.STEP_FAILED

    def __init__(self, message: str, step_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.step_name = step_name


class WorkflowConfigurationError(WorkflowError):
    """Malformed graph, unknown signal or missing definition."""

    code = ErrorCodes.INVALID_CONFIGURATION


class WorkflowStepTimeoutError(WorkflowError):
    """A step or the whole workflow exceeded its deadline."""

    code = ErrorCodes.EXECUTION_TIMEOUT

    def __init__(
        self,
        message: str,
        step_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.step_name = step_name
        self.timeout = timeout

    @classmethod
    def for_step(
        cls, step_name: str, timeout: Optional[float] = None
    ) -> "WorkflowStepTimeoutError":
        after = f" after {timeout:g}s" if timeout is not None else ""
        return cls(
            f"Step '{step_name}' timed out{after}",
            step_name=step_name,
            timeout=timeout,
        )

    @classmethod
    def for_workflow(cls, workflow_id: str, timeout: float) -> "WorkflowStepTimeoutError":
        return cls(
            f"Workflow '{workflow_id}' exceeded its timeout of {timeout:g}s",
            timeout=timeout,
        )


class StateConflictError(WorkflowError):
    """The optimistic status guard rejected an update."""

    code = ErrorCodes.STATE_CONFLICT

    def __init__(
        self,
        workflow_instance_id: str,
        expected_status: Optional[str] = None,
        actual_status: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message
            or f"State conflict for workflow {workflow_instance_id}: "
            f"expected {expected_status}, found {actual_status}"
        )
        self.workflow_instance_id = workflow_instance_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class InstanceNotFoundError(WorkflowError):
    """No persisted state exists for the workflow instance."""

    code = ErrorCodes.NOT_FOUND

    def __init__(self, workflow_instance_id: str) -> None:
        super().__init__(f"Workflow state not found for instance {workflow_instance_id}")
        self.workflow_instance_id = workflow_instance_id


class WorkflowCancelledError(WorkflowError):
    """The workflow instance was cancelled while a pass was executing."""

    code = ErrorCodes.CANCELLED

    def __init__(self, workflow_instance_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Workflow {workflow_instance_id} was cancelled")
        self.workflow_instance_id = workflow_instance_id


__all__ = [
    "InstanceNotFoundError",
    "StateConflictError",
    "StepExecutionFailure",
    "WorkflowCancelledError",
    "WorkflowConfigurationError",
    "WorkflowError",
    "WorkflowStepTimeoutError",
]
