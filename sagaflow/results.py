"""Outcome models for steps and whole workflow executions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import MAX_ERROR_MESSAGE_LENGTH, MAX_SIGNAL_NAME_LENGTH
from .errors import WorkflowError

ContextT = TypeVar("ContextT")
T = TypeVar("T")


class StepResult(BaseModel):
    """Outcome of one step attempt: success, failure or suspension."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_failure(self) -> bool:
        return False

    @property
    def is_suspended(self) -> bool:
        return False

    @classmethod
    def success(cls, metadata: Optional[Dict[str, Any]] = None) -> "StepSuccess":
        return StepSuccess(metadata=metadata or {})

    @classmethod
    def failure(
        cls,
        error: Union[str, BaseException],
        should_retry: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "StepFailure":
        """Build a failure from a message or an exception.

        Workflow errors keep their ``code`` so callers can tell a timeout
        from an ordinary step failure.
        """
        if isinstance(error, BaseException):
            return StepFailure(
                error_message=str(error) or type(error).__name__,
                error_code=getattr(error, "code", None),
                exception=error if isinstance(error, Exception) else None,
                should_retry=should_retry,
                metadata=metadata or {},
            )
        return StepFailure(
            error_message=error,
            should_retry=should_retry,
            metadata=metadata or {},
        )

    @classmethod
    def suspend(
        cls,
        signal_name: str,
        timeout: Optional[float] = None,
        approval: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "StepSuspended":
        return StepSuspended(
            signal_name=signal_name,
            timeout=timeout,
            approval=approval,
            metadata=metadata or {},
        )


class StepSuccess(StepResult):
    kind: Literal["success"] = "success"

    @property
    def is_success(self) -> bool:
        return True


class StepFailure(StepResult):
    kind: Literal["failure"] = "failure"
    error_message: str
    should_retry: bool = False
    error_code: Optional[str] = None
    exception: Optional[Exception] = Field(default=None, exclude=True, repr=False)

    @field_validator("error_message")
    @classmethod
    def _truncate(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("error_message must be a non-empty string")
        return v[:MAX_ERROR_MESSAGE_LENGTH]

    @property
    def is_failure(self) -> bool:
        return True


class StepSuspended(StepResult):
    """The step asks the workflow to pause until ``signal_name`` arrives."""

    kind: Literal["suspended"] = "suspended"
    signal_name: str
    timeout: Optional[float] = None
    approval: bool = False

    @field_validator("signal_name")
    @classmethod
    def _check_signal_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("signal_name must be a non-empty string")
        if len(v) > MAX_SIGNAL_NAME_LENGTH:
            raise ValueError(
                f"Signal name cannot exceed {MAX_SIGNAL_NAME_LENGTH} characters"
            )
        return v

    @property
    def is_suspended(self) -> bool:
        return True


AnyStepResult = Annotated[
    Union[StepSuccess, StepFailure, StepSuspended], Field(discriminator="kind")
]

TraceKind = Literal["step", "signal"]


class StepExecutionTrace(BaseModel):
    """Record of a single step attempt or signal wait, in execution order."""

    step_name: str
    node_id: str
    kind: TraceKind = "step"
    attempt: int = 1
    result: AnyStepResult
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0


class CompensationFailure(BaseModel):
    """A rollback action that itself failed. Recorded, never raised."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    step_name: str
    message: str
    exception: Optional[Exception] = Field(default=None, exclude=True, repr=False)


class WorkflowMetrics(BaseModel):
    total_execution_time: float = 0.0
    steps_executed: int = 0
    steps_succeeded: int = 0
    steps_failed: int = 0
    total_retries: int = 0
    average_step_execution_time: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.steps_executed:
            return 0.0
        return self.steps_succeeded / self.steps_executed * 100

    @classmethod
    def from_trace(
        cls, trace: List[StepExecutionTrace], total_execution_time: float
    ) -> "WorkflowMetrics":
        steps = [t for t in trace if t.kind == "step"]
        executed = len(steps)
        return cls(
            total_execution_time=total_execution_time,
            steps_executed=executed,
            steps_succeeded=sum(1 for t in steps if t.result.is_success),
            steps_failed=sum(1 for t in steps if t.result.is_failure),
            total_retries=sum(1 for t in steps if t.attempt > 1),
            average_step_execution_time=(
                sum(t.duration for t in steps) / executed if executed else 0.0
            ),
        )

    def to_summary_string(self) -> str:
        return (
            f"Workflow Metrics: Total Time: {self.total_execution_time * 1000:.2f}ms, "
            f"Steps: {self.steps_succeeded}/{self.steps_executed} succeeded, "
            f"Retries: {self.total_retries}, "
            f"Avg Step Time: {self.average_step_execution_time * 1000:.2f}ms"
        )


class WorkflowResult(BaseModel, Generic[ContextT]):
    """Aggregate outcome of one engine execution."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    is_success: bool
    is_suspended: bool = False
    context: ContextT
    suspension: Optional[StepSuspended] = None
    execution_trace: List[StepExecutionTrace] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    exception: Optional[Exception] = Field(default=None, exclude=True, repr=False)
    compensation_failures: List[CompensationFailure] = Field(default_factory=list)
    metrics: Optional[WorkflowMetrics] = None

    @property
    def suspended_signal_name(self) -> Optional[str]:
        return self.suspension.signal_name if self.suspension else None

    @property
    def is_failure(self) -> bool:
        return not self.is_success and not self.is_suspended

    @classmethod
    def completed(cls, context: Any, **kwargs: Any) -> "WorkflowResult":
        return cls(is_success=True, context=context, **kwargs)

    @classmethod
    def suspended(
        cls, context: Any, suspension: StepSuspended, **kwargs: Any
    ) -> "WorkflowResult":
        return cls(
            is_success=False,
            is_suspended=True,
            context=context,
            suspension=suspension,
            **kwargs,
        )

    @classmethod
    def failed(
        cls,
        context: Any,
        error_message: str,
        exception: Optional[Exception] = None,
        **kwargs: Any,
    ) -> "WorkflowResult":
        return cls(
            is_success=False,
            context=context,
            error_message=error_message,
            error_code=getattr(exception, "code", None),
            exception=exception,
            **kwargs,
        )


@dataclass(frozen=True)
class Result(Generic[T]):
    """Tagged success/error value returned by operations that can fail."""

    value: Optional[T] = None
    error: Optional[WorkflowError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: WorkflowError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = [
    "AnyStepResult",
    "CompensationFailure",
    "Result",
    "StepExecutionTrace",
    "StepFailure",
    "StepResult",
    "StepSuccess",
    "StepSuspended",
    "WorkflowMetrics",
    "WorkflowResult",
]
