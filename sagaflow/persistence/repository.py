"""Repository abstraction for workflow instance persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import WorkflowInstanceState, WorkflowStateInfo


class WorkflowStateRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Implementations must be safe for concurrent calls on distinct instance
    ids. Per-instance consistency is enforced by the coordinator through
    :meth:`update_workflow_state`'s version check.
    """

    async def save_workflow_state(self, state: WorkflowInstanceState) -> None:
        """Insert a new instance record."""

    async def get_workflow_state(
        self, workflow_instance_id: str, context_type: Optional[type] = None
    ) -> WorkflowInstanceState | None:
        """Load an instance, validating its context as ``context_type``.

        When ``context_type`` is None the context is returned as a plain dict.
        """

    async def update_workflow_state(
        self, state: WorkflowInstanceState, expected_version: int
    ) -> bool:
        """Overwrite the record only if its stored version is ``expected_version``."""

    async def delete_workflow_state(self, workflow_instance_id: str) -> bool:
        """Remove an instance record. Returns False when it did not exist."""

    async def get_workflow_state_info(
        self, workflow_instance_id: str
    ) -> WorkflowStateInfo | None:
        """Return the lightweight status view of an instance."""

    async def get_waiting_workflows(
        self, signal_name: Optional[str] = None
    ) -> list[WorkflowStateInfo]:
        """Return instances waiting for a signal or approval."""

    async def list_workflows(self) -> list[WorkflowStateInfo]:
        """Return every persisted instance."""


def load_state_json(
    raw: str | bytes, context_type: Optional[type] = None
) -> WorkflowInstanceState[Any]:
    """Deserialize a stored record, typing its context as ``context_type``."""
    model = WorkflowInstanceState[context_type or dict]  # type: ignore[index]
    return model.model_validate_json(raw)


def dump_state_json(state: WorkflowInstanceState) -> str:
    return state.model_dump_json()
