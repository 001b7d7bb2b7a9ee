"""Step abstractions executed by the workflow engine."""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from .results import StepResult
from .utils.retry import RetryPolicy

ContextT = TypeVar("ContextT")

StepCallable = Callable[[Any], Union[None, StepResult, Awaitable[Optional[StepResult]]]]


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """Invoke ``func`` whether it is a coroutine function or a plain callable.

    Plain callables run in a worker thread so they do not block the loop.
    """
    if asyncio.iscoroutinefunction(func):
        return await func(*args)
    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


def coerce_step_result(value: Any) -> StepResult:
    if value is None:
        return StepResult.success()
    if isinstance(value, StepResult):
        return value
    raise TypeError(
        f"Step callables must return a StepResult or None, got {type(value).__name__}"
    )


class WorkflowStep(ABC, Generic[ContextT]):
    """A unit of work run against the workflow context.

    Subclasses implement :meth:`execute`. Steps that can be reached again
    after a resume should either be naturally idempotent or override
    :meth:`is_already_applied` to report work already recorded in the
    context.
    """

    can_retry: bool = True
    timeout: Optional[float] = None
    retry_policy: Optional[RetryPolicy] = None

    @property
    def step_name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def execute(self, context: ContextT) -> StepResult:
        """Run the step against ``context``."""

    async def compensate(self, context: ContextT) -> StepResult:
        """Undo the effects of a successful :meth:`execute`. No-op by default."""
        return StepResult.success()

    def is_already_applied(self, context: ContextT) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.step_name!r}>"


class FunctionStep(WorkflowStep[ContextT]):
    """Adapt a plain function (sync or async) into a workflow step."""

    def __init__(
        self,
        func: StepCallable,
        name: Optional[str] = None,
        compensate: Optional[StepCallable] = None,
        already_applied: Optional[Callable[[Any], bool]] = None,
        can_retry: bool = True,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._func = func
        self._name = name or getattr(func, "__name__", type(self).__name__)
        self._compensate = compensate
        self._already_applied = already_applied
        self.can_retry = can_retry
        self.timeout = timeout
        self.retry_policy = retry_policy

    @property
    def step_name(self) -> str:
        return self._name

    async def execute(self, context: ContextT) -> StepResult:
        return coerce_step_result(await call_maybe_async(self._func, context))

    async def compensate(self, context: ContextT) -> StepResult:
        if self._compensate is None:
            return StepResult.success()
        return coerce_step_result(await call_maybe_async(self._compensate, context))

    def is_already_applied(self, context: ContextT) -> bool:
        if self._already_applied is None:
            return False
        return bool(self._already_applied(context))


def step(
    name: Optional[str] = None,
    *,
    compensate: Optional[StepCallable] = None,
    already_applied: Optional[Callable[[Any], bool]] = None,
    can_retry: bool = True,
    timeout: Optional[float] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> Callable[[StepCallable], FunctionStep]:
    """Decorator turning a function into a :class:`FunctionStep`."""

    def decorator(func: StepCallable) -> FunctionStep:
        return FunctionStep(
            func,
            name=name,
            compensate=compensate,
            already_applied=already_applied,
            can_retry=can_retry,
            timeout=timeout,
            retry_policy=retry_policy,
        )

    return decorator


__all__ = [
    "FunctionStep",
    "WorkflowStep",
    "call_maybe_async",
    "coerce_step_result",
    "step",
]
