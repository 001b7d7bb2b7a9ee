"""Graph-walking workflow engine with retries, timeouts and compensation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .definition import WorkflowDefinition
from .errors import StepExecutionFailure, WorkflowError, WorkflowStepTimeoutError
from .graph import (
    ConditionalNode,
    DelayNode,
    Node,
    ParallelNode,
    SequenceNode,
    StepNode,
    WaitForSignalNode,
)
from .results import (
    CompensationFailure,
    StepExecutionTrace,
    StepFailure,
    StepResult,
    StepSuspended,
    WorkflowMetrics,
    WorkflowResult,
)
from .steps import WorkflowStep, call_maybe_async, coerce_step_result
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

ContextT = TypeVar("ContextT")


class ExecutionOptions(BaseModel):
    """Per-execution knobs for :class:`WorkflowEngine`.

    ``signals`` holds payloads of signals already delivered to the instance,
    keyed by signal name. A wait node whose signal is present consumes the
    payload instead of suspending.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    enable_tracing: bool = True
    default_retry_policy: Optional[RetryPolicy] = None
    default_step_timeout: Optional[float] = None
    enable_compensation: bool = True
    signals: Dict[str, Any] = Field(default_factory=dict)


class _DeadlineExceeded(Exception):
    """Internal: the workflow budget ran out while a step was in flight."""


class _ExecutionRun(Generic[ContextT]):
    """Mutable bookkeeping for a single call to :meth:`WorkflowEngine.execute`."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        context: ContextT,
        options: ExecutionOptions,
    ) -> None:
        self.definition = definition
        self.context = context
        self.options = options
        self.loop = asyncio.get_running_loop()
        self.deadline: Optional[float] = (
            self.loop.time() + definition.workflow_timeout
            if definition.workflow_timeout is not None
            else None
        )
        self.trace: List[StepExecutionTrace] = []
        self.completed: List[WorkflowStep] = []
        self.suspension: Optional[StepSuspended] = None
        self.failed_step: Optional[str] = None

    # ------------------------------------------------------------------
    # Graph walking
    async def walk(self, node: Node) -> StepResult:
        """Run ``node`` and remember the first suspension seen anywhere.

        Suspension stops work through results: a sequence returns at its
        first suspended child and a parallel node reports suspension only
        after every branch it launched has settled, so no node after the
        suspension point starts.
        """
        logger.debug(f"Walking {node.kind} node {node.node_id or ''}".rstrip())
        if isinstance(node, StepNode):
            result = await self._run_step(node)
        elif isinstance(node, SequenceNode):
            result = await self._run_sequence(node)
        elif isinstance(node, ConditionalNode):
            result = await self._run_conditional(node)
        elif isinstance(node, ParallelNode):
            result = await self._run_parallel(node)
        elif isinstance(node, DelayNode):
            result = await self._run_delay(node)
        elif isinstance(node, WaitForSignalNode):
            result = await self._run_wait(node)
        else:
            result = StepResult.failure(f"Unsupported node type {type(node).__name__}")

        if result.is_suspended and self.suspension is None:
            self.suspension = result
        return result

    async def _run_sequence(self, node: SequenceNode) -> StepResult:
        for child in node.nodes:
            result = await self.walk(child)
            if not result.is_success:
                return result
        return StepResult.success()

    async def _run_conditional(self, node: ConditionalNode) -> StepResult:
        try:
            outcome = node.predicate(self.context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Condition {node.node_id or 'predicate'} raised {exc!r}")
            return StepResult.failure(
                StepExecutionFailure(f"Condition evaluation failed: {exc}")
            )
        if outcome:
            return await self.walk(node.then_branch)
        if node.else_branch is not None:
            return await self.walk(node.else_branch)
        return StepResult.success()

    async def _run_parallel(self, node: ParallelNode) -> StepResult:
        outcomes = await asyncio.gather(
            *(self.walk(branch) for branch in node.branches),
            return_exceptions=True,
        )
        # every branch has settled; only now surface deadline or cancellation
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        results: List[StepResult] = list(outcomes)

        failures = [r for r in results if isinstance(r, StepFailure)]
        if failures:
            first = failures[0]
            if len(failures) == 1:
                return first
            error = StepExecutionFailure(
                f"{len(failures)} parallel branches failed; first: {first.error_message}"
            )
            error.__cause__ = first.exception
            return StepResult.failure(
                error, metadata={"branch_errors": [f.error_message for f in failures]}
            )
        if any(r.is_suspended for r in results):
            return self.suspension or next(r for r in results if r.is_suspended)
        return StepResult.success()

    async def _run_delay(self, node: DelayNode) -> StepResult:
        await asyncio.sleep(node.duration)
        return StepResult.success()

    async def _run_wait(self, node: WaitForSignalNode) -> StepResult:
        started_at = datetime.now(timezone.utc)
        start = self.loop.time()
        if node.signal_name not in self.options.signals:
            result: StepResult = StepResult.suspend(
                node.signal_name, timeout=node.timeout, approval=node.approval
            )
            logger.info(
                f"Workflow {self.definition.workflow_id} suspended waiting for "
                f"signal '{node.signal_name}'"
            )
        else:
            payload = self.options.signals[node.signal_name]
            if node.on_signal is None:
                result = StepResult.success()
            else:
                try:
                    result = coerce_step_result(
                        await call_maybe_async(node.on_signal, self.context, payload)
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(f"Signal handler for '{node.signal_name}' raised {exc!r}")
                    result = StepResult.failure(
                        StepExecutionFailure(
                            f"Signal '{node.signal_name}' handler failed: {exc}"
                        )
                    )
            if result.is_failure:
                self.failed_step = node.node_id
        self._record(node.signal_name, node, "signal", result, started_at, start, 1)
        return result

    # ------------------------------------------------------------------
    # Steps
    async def _run_step(self, node: StepNode) -> StepResult:
        step = node.step
        if step.is_already_applied(self.context):
            logger.debug(f"Step {step.step_name} already applied, skipping")
            self.completed.append(step)
            return StepResult.success(metadata={"skipped": True})

        policy = step.retry_policy or self.options.default_retry_policy or RetryPolicy()
        attempt = 0
        while True:
            if self.deadline is not None and self.loop.time() >= self.deadline:
                raise _DeadlineExceeded()
            attempt += 1
            started_at = datetime.now(timezone.utc)
            start = self.loop.time()
            try:
                result = await self._attempt(step, policy)
            except _DeadlineExceeded:
                self._record(
                    step.step_name, node, "step", self._deadline_failure(), started_at, start, attempt
                )
                self.failed_step = step.step_name
                raise
            self._record(step.step_name, node, "step", result, started_at, start, attempt)

            if result.is_success:
                self.completed.append(step)
                return result
            if result.is_suspended:
                return result
            if not (step.can_retry and policy.should_retry(attempt, result)):
                logger.warning(
                    f"Step {step.step_name} failed after {attempt} attempt(s): "
                    f"{result.error_message}"
                )
                self.failed_step = step.step_name
                return result

            delay = policy.delay_for(attempt)
            logger.debug(
                f"Retrying step {step.step_name} (attempt {attempt + 1}/"
                f"{policy.max_attempts}) in {delay:.3f}s"
            )
            await asyncio.sleep(delay)

    async def _attempt(self, step: WorkflowStep, policy: RetryPolicy) -> StepResult:
        limit = step.timeout if step.timeout is not None else self.options.default_step_timeout
        remaining = (
            max(self.deadline - self.loop.time(), 0.0) if self.deadline is not None else None
        )
        budget_bound = remaining is not None and (limit is None or remaining <= limit)
        timeout = remaining if budget_bound else limit

        if timeout is None:
            return await self._invoke(step, policy)
        try:
            return await asyncio.wait_for(self._invoke(step, policy), timeout)
        except asyncio.TimeoutError as exc:
            # step exceptions are mapped inside _invoke; only our own limit lands here
            if budget_bound:
                raise _DeadlineExceeded() from exc
            return StepResult.failure(
                WorkflowStepTimeoutError.for_step(step.step_name, timeout),
                should_retry=step.can_retry,
            )

    async def _invoke(self, step: WorkflowStep, policy: RetryPolicy) -> StepResult:
        try:
            return coerce_step_result(await step.execute(self.context))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            mapped = policy.map_error(exc)
            if mapped is not exc:
                mapped.__cause__ = exc
            logger.debug(f"Step {step.step_name} raised {exc!r}")
            return StepResult.failure(mapped, should_retry=step.can_retry)

    def _deadline_failure(self) -> StepFailure:
        return StepResult.failure(
            WorkflowStepTimeoutError.for_workflow(
                self.definition.workflow_id, self.definition.workflow_timeout or 0.0
            )
        )

    def _record(
        self,
        name: str,
        node: Node,
        kind: str,
        result: StepResult,
        started_at: datetime,
        start: float,
        attempt: int,
    ) -> None:
        if not self.options.enable_tracing:
            return
        self.trace.append(
            StepExecutionTrace(
                step_name=name,
                node_id=node.node_id or name,
                kind=kind,
                attempt=attempt,
                result=result,
                started_at=started_at,
                duration=self.loop.time() - start,
            )
        )

    # ------------------------------------------------------------------
    # Compensation
    async def compensate(self) -> List[CompensationFailure]:
        failures: List[CompensationFailure] = []
        for step in reversed(self.completed):
            logger.info(f"Compensating step {step.step_name}")
            try:
                result = coerce_step_result(await step.compensate(self.context))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"Compensation for {step.step_name} raised {exc!r}")
                failures.append(
                    CompensationFailure(step_name=step.step_name, message=str(exc), exception=exc)
                )
                continue
            if isinstance(result, StepFailure):
                logger.warning(
                    f"Compensation for {step.step_name} failed: {result.error_message}"
                )
                failures.append(
                    CompensationFailure(
                        step_name=step.step_name,
                        message=result.error_message,
                        exception=result.exception,
                    )
                )
        return failures


class WorkflowEngine:
    """Executes a :class:`WorkflowDefinition` against a context object.

    The engine mutates ``context`` in place and returns a
    :class:`WorkflowResult` that is either completed, failed or suspended.
    It holds no per-run state, so a single instance may run many workflows
    concurrently.
    """

    def __init__(self, options: Optional[ExecutionOptions] = None) -> None:
        self.default_options = options or ExecutionOptions()

    async def execute(
        self,
        definition: WorkflowDefinition,
        context: ContextT,
        options: Optional[ExecutionOptions] = None,
    ) -> WorkflowResult[ContextT]:
        options = options or self.default_options
        run: _ExecutionRun[ContextT] = _ExecutionRun(definition, context, options)
        start = run.loop.time()
        logger.info(f"Executing workflow {definition.workflow_id} v{definition.version}")

        try:
            if definition.workflow_timeout is None:
                outcome = await run.walk(definition.graph)
            else:
                outcome = await asyncio.wait_for(
                    run.walk(definition.graph), definition.workflow_timeout
                )
        except asyncio.CancelledError:
            logger.info(f"Workflow {definition.workflow_id} execution was cancelled")
            raise
        except (asyncio.TimeoutError, _DeadlineExceeded):
            outcome = StepResult.failure(
                WorkflowStepTimeoutError.for_workflow(
                    definition.workflow_id, definition.workflow_timeout or 0.0
                )
            )
        except WorkflowError as exc:
            outcome = StepResult.failure(exc)
        except Exception as exc:
            logger.exception(f"Unexpected error executing workflow {definition.workflow_id}")
            outcome = StepResult.failure(
                StepExecutionFailure(f"Unexpected error: {exc}"),
            )

        elapsed = run.loop.time() - start
        metrics = WorkflowMetrics.from_trace(run.trace, elapsed)

        if outcome.is_success:
            logger.info(f"Workflow {definition.workflow_id} completed")
            return WorkflowResult.completed(
                context, execution_trace=run.trace, metrics=metrics
            )

        if outcome.is_suspended:
            return WorkflowResult.suspended(
                context,
                suspension=run.suspension or outcome,
                execution_trace=run.trace,
                metrics=metrics,
            )

        assert isinstance(outcome, StepFailure)
        compensation_failures: List[CompensationFailure] = []
        if options.enable_compensation and run.completed:
            compensation_failures = await run.compensate()

        exception = outcome.exception
        if not isinstance(exception, WorkflowError):
            wrapped = StepExecutionFailure(outcome.error_message, step_name=run.failed_step)
            if exception is not None:
                wrapped.__cause__ = exception
            exception = wrapped
        logger.warning(
            f"Workflow {definition.workflow_id} failed: {outcome.error_message}"
        )
        return WorkflowResult.failed(
            context,
            outcome.error_message,
            exception=exception,
            execution_trace=run.trace,
            compensation_failures=compensation_failures,
            metrics=metrics,
        )


__all__ = ["ExecutionOptions", "WorkflowEngine"]
