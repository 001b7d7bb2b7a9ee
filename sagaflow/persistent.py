"""Durable workflow execution: start, suspend, signal, resume and cancel."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from .config import PersistenceConfig
from .constants import SIGNAL_METADATA_PREFIX, MetadataKeys
from .coordinator import WorkflowStateCoordinator
from .definition import WorkflowDefinition
from .engine import ExecutionOptions, WorkflowEngine
from .errors import (
    InstanceNotFoundError,
    WorkflowCancelledError,
    WorkflowConfigurationError,
    WorkflowError,
)
from .notifications import LoggingNotificationService, WorkflowNotificationService, notify_safely
from .persistence.models import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    WAITING_STATUSES,
    PersistentWorkflowResult,
    WorkflowInstanceState,
    WorkflowStateInfo,
    WorkflowStatus,
    utcnow,
)
from .persistence.repository import WorkflowStateRepository
from .registry import DefinitionRegistry
from .results import WorkflowResult
from .signals import SignalHandler

logger = logging.getLogger(__name__)

APPROVAL_SIGNAL_PREFIX = "approval_"


def delivered_signals(state: WorkflowInstanceState) -> Dict[str, Any]:
    """Signal payloads recorded in ``state.metadata``, keyed by signal name."""
    return {
        key[len(SIGNAL_METADATA_PREFIX):]: value
        for key, value in state.metadata.items()
        if key.startswith(SIGNAL_METADATA_PREFIX)
    }


def mark_cancelled(state: WorkflowInstanceState, reason: str) -> None:
    state.status = WorkflowStatus.CANCELLED
    state.waiting_for_signal = None
    state.signal_timeout_at = None
    state.error_message = reason
    state.metadata[MetadataKeys.CANCELLATION_REASON] = reason
    state.metadata[MetadataKeys.CANCELLED_AT] = utcnow().isoformat()


class PersistentWorkflowEngine:
    """Run workflows whose state survives suspension and process restarts.

    Every pass re-walks the graph from the root. Signals already delivered
    are replayed from instance metadata, so waits that were satisfied do not
    suspend again, but steps before them run again unless they are
    idempotent or report ``is_already_applied``.
    """

    def __init__(
        self,
        repository: WorkflowStateRepository,
        registry: DefinitionRegistry,
        engine: Optional[WorkflowEngine] = None,
        notification_service: Optional[WorkflowNotificationService] = None,
        config: Optional[PersistenceConfig] = None,
    ) -> None:
        self.registry = registry
        self.engine = engine or WorkflowEngine()
        self.coordinator = WorkflowStateCoordinator(repository, registry)
        self.signal_handler = SignalHandler(self.coordinator, self._resume_in_background)
        self.notifications = notification_service or LoggingNotificationService()
        self.config = config or PersistenceConfig()
        self._executing: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self,
        definition: WorkflowDefinition,
        context: Any,
        options: Optional[ExecutionOptions] = None,
    ) -> WorkflowResult:
        """Run ``definition`` without persisting anything."""
        return await self.engine.execute(definition, context, options)

    async def start_persistent_workflow(
        self,
        definition: WorkflowDefinition,
        context: Any,
        options: Optional[ExecutionOptions] = None,
    ) -> PersistentWorkflowResult:
        instance_id = uuid.uuid4().hex
        context_type = type(context)
        try:
            descriptor = self.registry.descriptor_for(definition, context_type)
        except WorkflowConfigurationError as exc:
            logger.error(f"Cannot start workflow {definition.workflow_id}: {exc}")
            return PersistentWorkflowResult(
                workflow_instance_id=instance_id,
                status=WorkflowStatus.FAILED,
                context=context,
                error_message=str(exc),
                exception=exc,
            )

        state = WorkflowInstanceState(
            workflow_instance_id=instance_id,
            workflow_id=definition.workflow_id,
            workflow_display_name=definition.display_name,
            context=context,
            context_type=self.registry.context_type_id(context_type),
            status=WorkflowStatus.RUNNING,
            definition_descriptor=descriptor,
        )
        saved = await self.coordinator.save_workflow_state(state)
        if not saved.ok:
            return PersistentWorkflowResult(
                workflow_instance_id=instance_id,
                status=WorkflowStatus.FAILED,
                context=context,
                error_message=saved.error.message,
                exception=saved.error,
            )

        logger.info(f"Started workflow {definition.workflow_id} as instance {instance_id}")
        return await self._continue(state, definition, options)

    async def resume_workflow(
        self, workflow_instance_id: str, options: Optional[ExecutionOptions] = None
    ) -> PersistentWorkflowResult:
        """Continue a running instance from the root of its graph.

        Terminal and waiting instances are returned as they are stored;
        nothing is executed for them. Raises :class:`InstanceNotFoundError`
        for unknown ids.
        """
        info, context_type = await self.coordinator.get_workflow_state_info(workflow_instance_id)
        state = (
            await self.coordinator.load_workflow_state(workflow_instance_id, context_type)
            if info is not None
            else None
        )
        if state is None:
            raise InstanceNotFoundError(workflow_instance_id)

        if state.status != WorkflowStatus.RUNNING:
            logger.debug(
                f"Workflow {workflow_instance_id} is {state.status.value}; returning stored result"
            )
            return self._snapshot(state)
        if workflow_instance_id in self._executing:
            logger.debug(f"Workflow {workflow_instance_id} is already executing in this process")
            return self._snapshot(state)

        try:
            definition = self.registry.resolve(state.definition_descriptor)
        except WorkflowConfigurationError as exc:
            logger.error(f"Cannot rebuild definition for {workflow_instance_id}: {exc}")
            return await self._handle_exception(state, exc)

        return await self._continue(state, definition, options)

    async def cancel_workflow(self, workflow_instance_id: str, reason: str) -> bool:
        """Cancel a live instance. Unknown and terminal instances are left alone."""
        info, context_type = await self.coordinator.get_workflow_state_info(workflow_instance_id)
        if info is None or info.status not in LIVE_STATUSES:
            logger.warning(
                f"Cannot cancel workflow {workflow_instance_id}: "
                f"{'not found' if info is None else info.status.value}"
            )
            return False

        result = await self.coordinator.transition(
            workflow_instance_id,
            LIVE_STATUSES,
            lambda state: mark_cancelled(state, reason),
            context_type,
        )
        if result.ok:
            logger.info(f"Cancelled workflow {workflow_instance_id}: {reason}")
        return result.ok

    async def signal_workflow(
        self, workflow_instance_id: str, signal_name: str, data: Any = None
    ) -> bool:
        return await self.signal_handler.deliver_signal(workflow_instance_id, signal_name, data)

    async def get_workflow_state(
        self, workflow_instance_id: str
    ) -> Optional[WorkflowInstanceState]:
        return await self.coordinator.load_workflow_state(workflow_instance_id)

    async def list_workflows(self) -> List[WorkflowStateInfo]:
        return await self.coordinator.repository.list_workflows()

    async def delete_workflow(self, workflow_instance_id: str) -> bool:
        """Remove a terminal instance from the store."""
        info, _ = await self.coordinator.get_workflow_state_info(workflow_instance_id)
        if info is None or info.status not in TERMINAL_STATUSES:
            return False
        return await self.coordinator.repository.delete_workflow_state(workflow_instance_id)

    async def wait_for_background(self) -> None:
        """Wait for resumes triggered by delivered signals to finish."""
        await self.signal_handler.wait_for_background()

    # ------------------------------------------------------------------
    # Execution passes
    async def _resume_in_background(self, workflow_instance_id: str) -> None:
        await self.resume_workflow(workflow_instance_id)

    async def _continue(
        self,
        state: WorkflowInstanceState,
        definition: WorkflowDefinition,
        options: Optional[ExecutionOptions],
    ) -> PersistentWorkflowResult:
        instance_id = state.workflow_instance_id
        run_options = (options or self.engine.default_options).model_copy(
            update={"signals": delivered_signals(state)}
        )
        self._executing.add(instance_id)
        try:
            result = await self.engine.execute(definition, state.context, run_options)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"Error continuing workflow execution for instance {instance_id}")
            return await self._handle_exception(state, exc)
        finally:
            self._executing.discard(instance_id)

        if result.is_success:
            return await self._handle_completion(state, result)
        if result.is_suspended:
            return await self._handle_suspension(state, result)
        return await self._handle_failure(state, result)

    async def _persist(
        self, state: WorkflowInstanceState, updated: WorkflowInstanceState
    ) -> Optional[PersistentWorkflowResult]:
        """Write the outcome of a pass; return a conflict result if it was rejected."""
        written = await self.coordinator.update_workflow_state(
            updated, WorkflowStatus.RUNNING, expected_version=state.version
        )
        if written.ok:
            return None
        error = written.error
        logger.warning(
            f"Outcome of workflow {state.workflow_instance_id} was not persisted: {error}"
        )
        info, _ = await self.coordinator.get_workflow_state_info(state.workflow_instance_id)
        if info is not None and info.status == WorkflowStatus.CANCELLED:
            cancelled = WorkflowCancelledError(
                state.workflow_instance_id,
                f"Workflow {state.workflow_instance_id} was cancelled during execution",
            )
            cancelled.__cause__ = error
            error = cancelled
        return PersistentWorkflowResult(
            workflow_instance_id=state.workflow_instance_id,
            status=info.status if info is not None else WorkflowStatus.FAILED,
            context=updated.context,
            error_message=error.message,
            exception=error,
        )

    async def _handle_completion(
        self, state: WorkflowInstanceState, result: WorkflowResult
    ) -> PersistentWorkflowResult:
        updated = state.model_copy(
            update={
                "context": result.context,
                "status": WorkflowStatus.COMPLETED,
                "execution_history": [*state.execution_history, *result.execution_trace],
                "error_message": None,
            }
        )
        conflict = await self._persist(state, updated)
        if conflict is not None:
            return conflict

        await notify_safely(
            self.notifications.send_workflow_completion_notification(updated, result),
            "completion",
        )
        return PersistentWorkflowResult(
            workflow_instance_id=updated.workflow_instance_id,
            status=WorkflowStatus.COMPLETED,
            context=result.context,
            completion_result=result,
        )

    async def _handle_suspension(
        self, state: WorkflowInstanceState, result: WorkflowResult
    ) -> PersistentWorkflowResult:
        suspension = result.suspension
        signal_name = suspension.signal_name
        approval = suspension.approval or signal_name.lower().startswith(APPROVAL_SIGNAL_PREFIX)
        status = (
            WorkflowStatus.WAITING_FOR_APPROVAL if approval else WorkflowStatus.WAITING_FOR_SIGNAL
        )
        timeout = suspension.timeout or self.config.default_signal_timeout
        timeout_at = utcnow() + timedelta(seconds=timeout)

        updated = state.model_copy(
            update={
                "context": result.context,
                "status": status,
                "waiting_for_signal": signal_name,
                "signal_timeout_at": timeout_at,
                "execution_history": [*state.execution_history, *result.execution_trace],
            }
        )
        conflict = await self._persist(state, updated)
        if conflict is not None:
            return conflict

        logger.info(
            f"Workflow {state.workflow_instance_id} is {status.value} '{signal_name}' "
            f"until {timeout_at.isoformat()}"
        )
        return PersistentWorkflowResult(
            workflow_instance_id=updated.workflow_instance_id,
            status=status,
            context=result.context,
            waiting_for_signal=signal_name,
            signal_timeout_at=timeout_at,
        )

    async def _handle_failure(
        self, state: WorkflowInstanceState, result: WorkflowResult
    ) -> PersistentWorkflowResult:
        message = result.error_message or "Unknown error"
        metadata = {**state.metadata, MetadataKeys.FAILURE_REASON: message}
        if result.compensation_failures:
            metadata[MetadataKeys.COMPENSATION_FAILURES] = [
                f.model_dump() for f in result.compensation_failures
            ]
        updated = state.model_copy(
            update={
                "context": result.context,
                "status": WorkflowStatus.FAILED,
                "metadata": metadata,
                "error_message": message,
                "execution_history": [*state.execution_history, *result.execution_trace],
            }
        )
        conflict = await self._persist(state, updated)
        if conflict is not None:
            return conflict

        await notify_safely(
            self.notifications.send_workflow_error_notification(
                updated, message, result.exception
            ),
            "error",
        )
        return PersistentWorkflowResult(
            workflow_instance_id=updated.workflow_instance_id,
            status=WorkflowStatus.FAILED,
            context=result.context,
            error_message=message,
            exception=result.exception,
            completion_result=result,
        )

    async def _handle_exception(
        self, state: WorkflowInstanceState, exc: Exception
    ) -> PersistentWorkflowResult:
        message = exc.message if isinstance(exc, WorkflowError) else str(exc) or type(exc).__name__
        updated = state.model_copy(
            update={
                "status": WorkflowStatus.FAILED,
                "metadata": {**state.metadata, MetadataKeys.FAILURE_REASON: message},
                "error_message": message,
            }
        )
        conflict = await self._persist(state, updated)
        if conflict is not None:
            return conflict

        await notify_safely(
            self.notifications.send_workflow_error_notification(updated, message, exc),
            "error",
        )
        return PersistentWorkflowResult(
            workflow_instance_id=updated.workflow_instance_id,
            status=WorkflowStatus.FAILED,
            context=updated.context,
            error_message=message,
            exception=exc,
        )

    @staticmethod
    def _snapshot(state: WorkflowInstanceState) -> PersistentWorkflowResult:
        completion = None
        if state.status == WorkflowStatus.COMPLETED:
            completion = WorkflowResult.completed(
                state.context, execution_trace=list(state.execution_history)
            )
        return PersistentWorkflowResult(
            workflow_instance_id=state.workflow_instance_id,
            status=state.status,
            context=state.context,
            waiting_for_signal=state.waiting_for_signal if state.status in WAITING_STATUSES else None,
            signal_timeout_at=state.signal_timeout_at,
            error_message=state.error_message,
            completion_result=completion,
        )


__all__ = ["PersistentWorkflowEngine", "delivered_signals", "mark_cancelled"]
