"""Data models for persisted workflow instance state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..results import StepExecutionTrace, WorkflowResult

ContextT = TypeVar("ContextT")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    WAITING_FOR_SIGNAL = "waiting_for_signal"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self in WAITING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


WAITING_STATUSES = frozenset(
    {WorkflowStatus.WAITING_FOR_SIGNAL, WorkflowStatus.WAITING_FOR_APPROVAL}
)
LIVE_STATUSES = frozenset({WorkflowStatus.RUNNING}) | WAITING_STATUSES
TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)

_TRANSITIONS: Dict[WorkflowStatus, frozenset] = {
    WorkflowStatus.RUNNING: frozenset(
        {
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
            WorkflowStatus.WAITING_FOR_SIGNAL,
            WorkflowStatus.WAITING_FOR_APPROVAL,
        }
    ),
    WorkflowStatus.WAITING_FOR_SIGNAL: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.WAITING_FOR_APPROVAL: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED}
    ),
}


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    """Return True when ``current -> target`` is a legal status change."""
    return target in _TRANSITIONS.get(current, frozenset())


class WorkflowInstanceState(BaseModel, Generic[ContextT]):
    """The persisted record of one workflow instance."""

    workflow_instance_id: str
    workflow_id: str
    workflow_display_name: str = ""
    context: ContextT
    context_type: str = ""
    status: WorkflowStatus = WorkflowStatus.RUNNING
    created_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    waiting_for_signal: Optional[str] = None
    signal_timeout_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    definition_descriptor: str = ""
    execution_history: List[StepExecutionTrace] = Field(default_factory=list)
    error_message: Optional[str] = None
    version: int = 0

    def info(self) -> "WorkflowStateInfo":
        return WorkflowStateInfo(
            workflow_instance_id=self.workflow_instance_id,
            workflow_id=self.workflow_id,
            status=self.status,
            waiting_for_signal=self.waiting_for_signal,
            signal_timeout_at=self.signal_timeout_at,
            last_updated_at=self.last_updated_at,
            context_type=self.context_type,
            definition_descriptor=self.definition_descriptor,
            version=self.version,
        )


class WorkflowStateInfo(BaseModel):
    """Lightweight status view, readable without knowing the context type."""

    workflow_instance_id: str
    workflow_id: str
    status: WorkflowStatus
    waiting_for_signal: Optional[str] = None
    signal_timeout_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    context_type: str = ""
    definition_descriptor: str = ""
    version: int = 0


class PersistentWorkflowResult(BaseModel, Generic[ContextT]):
    """What the persistent engine reports after start, resume or inspection."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow_instance_id: str
    status: WorkflowStatus
    context: Optional[ContextT] = None
    waiting_for_signal: Optional[str] = None
    signal_timeout_at: Optional[datetime] = None
    error_message: Optional[str] = None
    exception: Optional[Exception] = Field(default=None, exclude=True, repr=False)
    completion_result: Optional[WorkflowResult] = None

    @property
    def is_running(self) -> bool:
        return self.status == WorkflowStatus.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status in (WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)

    @property
    def is_waiting(self) -> bool:
        return self.status in WAITING_STATUSES


__all__ = [
    "LIVE_STATUSES",
    "PersistentWorkflowResult",
    "TERMINAL_STATUSES",
    "WAITING_STATUSES",
    "WorkflowInstanceState",
    "WorkflowStateInfo",
    "WorkflowStatus",
    "can_transition",
    "utcnow",
]
