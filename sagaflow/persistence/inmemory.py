"""In-memory implementation of the workflow state repository."""

from __future__ import annotations

from typing import Dict, Optional

from .models import WAITING_STATUSES, WorkflowInstanceState, WorkflowStateInfo
from .repository import WorkflowStateRepository, dump_state_json, load_state_json


class InMemoryWorkflowStateRepository(WorkflowStateRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Records are kept as
    serialized JSON so callers never share mutable objects with the store.
    Data is not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}
        self._infos: Dict[str, WorkflowStateInfo] = {}

    # ------------------------------------------------------------------
    def _put(self, state: WorkflowInstanceState) -> None:
        self._records[state.workflow_instance_id] = dump_state_json(state)
        self._infos[state.workflow_instance_id] = state.info()

    async def save_workflow_state(self, state: WorkflowInstanceState) -> None:
        if state.workflow_instance_id in self._records:
            raise ValueError(f"Workflow instance {state.workflow_instance_id} already exists")
        self._put(state)

    async def get_workflow_state(
        self, workflow_instance_id: str, context_type: Optional[type] = None
    ) -> WorkflowInstanceState | None:
        raw = self._records.get(workflow_instance_id)
        if raw is None:
            return None
        return load_state_json(raw, context_type)

    async def update_workflow_state(
        self, state: WorkflowInstanceState, expected_version: int
    ) -> bool:
        current = self._infos.get(state.workflow_instance_id)
        if current is None or current.version != expected_version:
            return False
        self._put(state)
        return True

    async def delete_workflow_state(self, workflow_instance_id: str) -> bool:
        self._infos.pop(workflow_instance_id, None)
        return self._records.pop(workflow_instance_id, None) is not None

    async def get_workflow_state_info(
        self, workflow_instance_id: str
    ) -> WorkflowStateInfo | None:
        info = self._infos.get(workflow_instance_id)
        return info.model_copy() if info else None

    async def get_waiting_workflows(
        self, signal_name: Optional[str] = None
    ) -> list[WorkflowStateInfo]:
        return [
            info.model_copy()
            for info in self._infos.values()
            if info.status in WAITING_STATUSES
            and (signal_name is None or info.waiting_for_signal == signal_name)
        ]

    async def list_workflows(self) -> list[WorkflowStateInfo]:
        return [info.model_copy() for info in self._infos.values()]

    def raw_record(self, workflow_instance_id: str) -> Optional[str]:
        """Return the stored JSON document for an instance."""
        return self._records.get(workflow_instance_id)
