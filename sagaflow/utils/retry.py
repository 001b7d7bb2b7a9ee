"""Retry policy: attempt limits, backoff delays and error classification."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..constants import (
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
)
from ..errors import (
    StepExecutionFailure,
    WorkflowConfigurationError,
    WorkflowError,
    WorkflowStepTimeoutError,
)
from ..results import StepResult

DelayStrategy = Callable[[int], float]
ErrorMapper = Callable[[BaseException], WorkflowError]


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_RETRY_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_RETRY_DELAY,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff ``min(base * 2**attempt, max_delay)`` plus jitter."""
    delay = min(base * (2 ** attempt), max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def exponential_backoff(
    base: float = DEFAULT_RETRY_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_RETRY_DELAY,
    jitter: float = 0.0,
) -> DelayStrategy:
    def strategy(attempt: int) -> float:
        return compute_backoff(attempt, base=base, max_delay=max_delay, jitter=jitter)

    return strategy


def default_error_mapper(exc: BaseException) -> WorkflowError:
    if isinstance(exc, WorkflowError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return WorkflowStepTimeoutError(str(exc) or "Operation timed out")
    return StepExecutionFailure(f"{type(exc).__name__}: {exc}")


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether a failed attempt is retried and how long to wait.

    The policy is pure: it never sleeps and holds no per-execution state.
    ``attempt`` is 1-based throughout.
    """

    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    delay_strategy: DelayStrategy = field(default_factory=exponential_backoff)
    error_mapper: ErrorMapper = default_error_mapper

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise WorkflowConfigurationError(
                f"max_attempts must be greater than 0, got {self.max_attempts}"
            )

    @classmethod
    def create(
        cls,
        max_attempts: int,
        delay_strategy: DelayStrategy,
        error_mapper: Optional[ErrorMapper] = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            delay_strategy=delay_strategy,
            error_mapper=error_mapper or default_error_mapper,
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_RETRY_DELAY,
        jitter: float = 0.0,
    ) -> "RetryPolicy":
        return cls.create(max_attempts, exponential_backoff(base_delay, max_delay, jitter))

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls.create(1, lambda attempt: 0.0)

    def should_retry(self, attempt: int, result: StepResult) -> bool:
        if attempt >= self.max_attempts:
            return False
        return bool(result.is_failure and getattr(result, "should_retry", False))

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.delay_strategy(attempt))

    def map_error(self, exc: BaseException) -> WorkflowError:
        return self.error_mapper(exc)


__all__ = [
    "DelayStrategy",
    "ErrorMapper",
    "RetryPolicy",
    "compute_backoff",
    "default_error_mapper",
    "exponential_backoff",
]
