"""Guarded access to persisted workflow instance state."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Optional, Tuple

from .errors import InstanceNotFoundError, StateConflictError, WorkflowError
from .persistence.models import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    WorkflowInstanceState,
    WorkflowStateInfo,
    WorkflowStatus,
    can_transition,
    utcnow,
)
from .persistence.repository import WorkflowStateRepository
from .registry import DefinitionRegistry
from .results import Result

logger = logging.getLogger(__name__)

StateMutator = Callable[[WorkflowInstanceState], Any]


class WorkflowStateCoordinator:
    """Serializes writes per instance and enforces the status state machine.

    Every write re-reads the stored record under a per-instance lock,
    checks that the stored status is still the live status the caller
    observed, bumps ``version`` and relies on the repository's conditional
    update to reject writers from other processes.
    """

    def __init__(
        self,
        repository: WorkflowStateRepository,
        registry: Optional[DefinitionRegistry] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _lock_for(self, workflow_instance_id: str) -> AsyncIterator[None]:
        """Hold the instance lock; it is dropped once no task holds or awaits it."""
        lock = self._locks.setdefault(workflow_instance_id, asyncio.Lock())
        self._lock_users[workflow_instance_id] = self._lock_users.get(workflow_instance_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[workflow_instance_id] - 1
            if users:
                self._lock_users[workflow_instance_id] = users
            else:
                del self._lock_users[workflow_instance_id]
                del self._locks[workflow_instance_id]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    def _resolve_context_type(self, info: WorkflowStateInfo) -> type:
        if self.registry is not None:
            found = self.registry.find_context_type(info.context_type)
            if found is not None:
                return found
        return dict

    # ------------------------------------------------------------------
    # Reads
    async def get_workflow_state_info(
        self, workflow_instance_id: str
    ) -> Tuple[Optional[WorkflowStateInfo], Optional[type]]:
        """Return the status view and the concrete context type of an instance.

        Lets callers that only hold an instance id (inbound signals, cancel
        requests) find the record without knowing its context type. The type
        falls back to ``dict`` when it is not registered.
        """
        info = await self.repository.get_workflow_state_info(workflow_instance_id)
        if info is None:
            return None, None
        return info, self._resolve_context_type(info)

    async def load_workflow_state(
        self, workflow_instance_id: str, context_type: Optional[type] = None
    ) -> Optional[WorkflowInstanceState]:
        if context_type is None:
            info, context_type = await self.get_workflow_state_info(workflow_instance_id)
            if info is None:
                return None
        return await self.repository.get_workflow_state(workflow_instance_id, context_type)

    # ------------------------------------------------------------------
    # Writes
    async def save_workflow_state(
        self, state: WorkflowInstanceState
    ) -> Result[WorkflowInstanceState]:
        async with self._lock_for(state.workflow_instance_id):
            try:
                await self.repository.save_workflow_state(state)
            except Exception as exc:
                logger.exception(
                    f"Failed to save workflow state {state.workflow_instance_id}"
                )
                return Result.failure(WorkflowError(f"Failed to save workflow state: {exc}"))
        logger.debug(f"Saved workflow state {state.workflow_instance_id}")
        return Result.success(state)

    async def update_workflow_state(
        self,
        state: WorkflowInstanceState,
        expected_status: WorkflowStatus,
        expected_version: Optional[int] = None,
    ) -> Result[WorkflowInstanceState]:
        """Write ``state`` if the stored status is still ``expected_status``.

        With ``expected_version`` the write is also rejected when anyone
        else has written the record since the caller read it.
        """
        instance_id = state.workflow_instance_id
        async with self._lock_for(instance_id):
            info = await self.repository.get_workflow_state_info(instance_id)
            if info is None:
                return Result.failure(InstanceNotFoundError(instance_id))
            if info.status != expected_status or expected_status not in LIVE_STATUSES:
                logger.warning(
                    f"Rejected update of {instance_id}: expected {expected_status.value}, "
                    f"found {info.status.value}"
                )
                return Result.failure(
                    StateConflictError(instance_id, expected_status.value, info.status.value)
                )
            if expected_version is not None and info.version != expected_version:
                logger.warning(
                    f"Rejected update of {instance_id}: version {info.version} is newer "
                    f"than {expected_version}"
                )
                return Result.failure(
                    StateConflictError(
                        instance_id,
                        message=f"Workflow {instance_id} was modified concurrently",
                    )
                )
            return await self._write(state, info)

    async def transition(
        self,
        workflow_instance_id: str,
        allowed_from: Iterable[WorkflowStatus],
        mutate: StateMutator,
        context_type: Optional[type] = None,
    ) -> Result[WorkflowInstanceState]:
        """Load, check, mutate and write an instance in one locked step.

        ``mutate`` receives a private copy of the stored state and edits it
        in place; it may raise :class:`StateConflictError` to veto the
        change after inspecting the record.
        """
        allowed = frozenset(allowed_from)
        async with self._lock_for(workflow_instance_id):
            current = await self.load_workflow_state(workflow_instance_id, context_type)
            if current is None:
                return Result.failure(InstanceNotFoundError(workflow_instance_id))
            if current.status not in allowed:
                return Result.failure(
                    StateConflictError(
                        workflow_instance_id,
                        "|".join(sorted(s.value for s in allowed)),
                        current.status.value,
                    )
                )
            updated = current.model_copy(deep=True)
            try:
                mutate(updated)
            except StateConflictError as exc:
                return Result.failure(exc)
            return await self._write(updated, current.info())

    async def _write(
        self, state: WorkflowInstanceState, stored: WorkflowStateInfo
    ) -> Result[WorkflowInstanceState]:
        instance_id = state.workflow_instance_id
        if state.status != stored.status and not can_transition(stored.status, state.status):
            return Result.failure(
                StateConflictError(
                    instance_id,
                    stored.status.value,
                    state.status.value,
                    message=(
                        f"Illegal transition for workflow {instance_id}: "
                        f"{stored.status.value} -> {state.status.value}"
                    ),
                )
            )

        state.version = stored.version + 1
        state.last_updated_at = utcnow()
        if state.status in TERMINAL_STATUSES and state.completed_at is None:
            state.completed_at = state.last_updated_at

        try:
            written = await self.repository.update_workflow_state(state, stored.version)
        except Exception as exc:
            logger.exception(f"Failed to update workflow state {instance_id}")
            return Result.failure(WorkflowError(f"Failed to update workflow state: {exc}"))
        if not written:
            logger.warning(f"Concurrent update detected for workflow {instance_id}")
            return Result.failure(
                StateConflictError(
                    instance_id,
                    message=f"Workflow {instance_id} was modified concurrently",
                )
            )
        logger.debug(
            f"Workflow {instance_id} is now {state.status.value} (version {state.version})"
        )
        return Result.success(state)


__all__ = ["WorkflowStateCoordinator"]
