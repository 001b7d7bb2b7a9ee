"""Background sweeper cancelling instances whose signal wait expired."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .config import PersistenceConfig
from .errors import StateConflictError
from .persistence.models import WAITING_STATUSES, WorkflowInstanceState, utcnow
from .persistence.repository import WorkflowStateRepository
from .persistent import PersistentWorkflowEngine, mark_cancelled

logger = logging.getLogger(__name__)

ERROR_BACKOFF = 60.0


class WorkflowTimeoutService:
    """Periodically cancel waiting instances past their ``signal_timeout_at``."""

    def __init__(
        self,
        engine: PersistentWorkflowEngine,
        repository: Optional[WorkflowStateRepository] = None,
        config: Optional[PersistenceConfig] = None,
    ) -> None:
        self.engine = engine
        self.repository = repository or engine.coordinator.repository
        self.config = config or engine.config
        self._stopping = asyncio.Event()

    async def process_expired_workflows(self, now: Optional[datetime] = None) -> int:
        """Run one sweep and return the number of instances cancelled."""
        now = now or utcnow()
        waiting = await self.repository.get_waiting_workflows()
        expired = [
            info
            for info in waiting
            if info.signal_timeout_at is not None and info.signal_timeout_at < now
        ][: self.config.max_timeout_batch_size]

        processed = 0
        for info in expired:
            reason = f"Timed out waiting for signal: {info.waiting_for_signal}"
            logger.warning(
                f"Workflow {info.workflow_instance_id} has timed out waiting for "
                f"signal {info.waiting_for_signal}"
            )

            def expire(state: WorkflowInstanceState, reason: str = reason) -> None:
                # a signal may have been accepted since the sweep read the list
                if state.signal_timeout_at is None or state.signal_timeout_at >= now:
                    raise StateConflictError(
                        state.workflow_instance_id,
                        message=f"Workflow {state.workflow_instance_id} is no longer expired",
                    )
                mark_cancelled(state, reason)

            try:
                result = await self.engine.coordinator.transition(
                    info.workflow_instance_id, WAITING_STATUSES, expire
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Error cancelling timed-out workflow {info.workflow_instance_id}"
                )
                continue

            if result.ok:
                processed += 1
                logger.info(f"Cancelled timed-out workflow {info.workflow_instance_id}")
            else:
                logger.warning(
                    f"Failed to cancel timed-out workflow {info.workflow_instance_id}: "
                    f"{result.error}"
                )

        if processed:
            logger.info(f"Processed {processed} timed-out workflows")
        return processed

    async def run(self) -> None:
        """Sweep every ``timeout_check_interval`` seconds until stopped."""
        if not self.config.enable_timeout_processing:
            logger.info("Workflow timeout processing is disabled")
            return

        logger.info("Workflow timeout service started")
        self._stopping.clear()
        while not self._stopping.is_set():
            try:
                await self.process_expired_workflows()
                delay = self.config.timeout_check_interval
            except asyncio.CancelledError:
                logger.debug("Workflow timeout service cancellation requested")
                raise
            except Exception:
                logger.exception("Error processing workflow timeouts")
                delay = ERROR_BACKOFF
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Workflow timeout service stopped")

    def stop(self) -> None:
        self._stopping.set()


__all__ = ["WorkflowTimeoutService"]
