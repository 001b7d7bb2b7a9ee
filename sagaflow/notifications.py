"""Fire-and-forget notifications about finished workflow instances."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from .persistence.models import WorkflowInstanceState
from .results import WorkflowResult
from .steps import call_maybe_async

logger = logging.getLogger(__name__)


class WorkflowNotificationService(Protocol):
    """Receives completion and error events from the persistent engine.

    Implementations may raise; the engine logs and discards such errors so a
    broken notifier never fails the workflow operation that triggered it.
    """

    async def send_workflow_completion_notification(
        self, state: WorkflowInstanceState, result: WorkflowResult
    ) -> None:
        """Called once an instance reaches ``completed``."""

    async def send_workflow_error_notification(
        self,
        state: WorkflowInstanceState,
        message: str,
        exception: Optional[BaseException] = None,
    ) -> None:
        """Called when an instance fails or its resume cannot proceed."""


class LoggingNotificationService(WorkflowNotificationService):
    """Default notifier that writes events to the ``sagaflow`` log."""

    async def send_workflow_completion_notification(
        self, state: WorkflowInstanceState, result: WorkflowResult
    ) -> None:
        logger.info(
            f"Workflow {state.workflow_id} instance {state.workflow_instance_id} completed"
        )

    async def send_workflow_error_notification(
        self,
        state: WorkflowInstanceState,
        message: str,
        exception: Optional[BaseException] = None,
    ) -> None:
        logger.error(
            f"Workflow {state.workflow_id} instance {state.workflow_instance_id} "
            f"failed: {message}"
        )


class CallbackNotificationService(WorkflowNotificationService):
    """Forward events to user callables, sync or async."""

    def __init__(
        self,
        on_completed: Optional[Callable[[WorkflowInstanceState, WorkflowResult], Any]] = None,
        on_error: Optional[
            Callable[[WorkflowInstanceState, str, Optional[BaseException]], Any]
        ] = None,
    ) -> None:
        self.on_completed = on_completed
        self.on_error = on_error

    async def send_workflow_completion_notification(
        self, state: WorkflowInstanceState, result: WorkflowResult
    ) -> None:
        if self.on_completed is not None:
            await call_maybe_async(self.on_completed, state, result)

    async def send_workflow_error_notification(
        self,
        state: WorkflowInstanceState,
        message: str,
        exception: Optional[BaseException] = None,
    ) -> None:
        if self.on_error is not None:
            await call_maybe_async(self.on_error, state, message, exception)


async def notify_safely(coro: Any, description: str) -> None:
    """Await a notification coroutine, logging instead of raising on failure."""
    try:
        await coro
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(f"Notification '{description}' failed")


__all__ = [
    "CallbackNotificationService",
    "LoggingNotificationService",
    "WorkflowNotificationService",
    "notify_safely",
]
