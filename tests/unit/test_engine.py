import asyncio
from typing import List, Optional

import pytest
from pydantic import BaseModel

from sagaflow.definition import WorkflowBuilder, WorkflowDefinition
from sagaflow.engine import ExecutionOptions, WorkflowEngine
from sagaflow.errors import StepExecutionFailure, WorkflowStepTimeoutError
from sagaflow.graph import ConditionalNode, ParallelNode, SequenceNode, StepNode, WaitForSignalNode
from sagaflow.results import StepResult
from sagaflow.steps import FunctionStep, WorkflowStep
from sagaflow.utils.retry import RetryPolicy

NO_WAIT = RetryPolicy.create(3, lambda attempt: 0.0)


class OrderContext(BaseModel):
    amount: int = 0
    events: List[str] = []


class RecordingStep(WorkflowStep[OrderContext]):
    """Appends execute/compensate events to the context."""

    def __init__(
        self,
        name: str,
        fail: bool = False,
        delay: float = 0.0,
        compensate_error: Optional[str] = None,
    ) -> None:
        self._name = name
        self.fail = fail
        self.delay = delay
        self.compensate_error = compensate_error

    @property
    def step_name(self) -> str:
        return self._name

    async def execute(self, context: OrderContext) -> StepResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        context.events.append(f"execute:{self._name}")
        if self.fail:
            return StepResult.failure(f"{self._name} failed")
        return StepResult.success()

    async def compensate(self, context: OrderContext) -> StepResult:
        context.events.append(f"compensate:{self._name}")
        if self.compensate_error:
            raise RuntimeError(self.compensate_error)
        return StepResult.success()


class ConnectTimeoutStep(WorkflowStep[OrderContext]):
    """Raises its own TimeoutError, as a network client would."""

    retry_policy = NO_WAIT

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, context: OrderContext) -> StepResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise TimeoutError("connect timed out")
        return StepResult.success()


class FlakyStep(WorkflowStep[OrderContext]):
    retry_policy = NO_WAIT

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, context: OrderContext) -> StepResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("boom")
        return StepResult.success()


def sequence(*steps: WorkflowStep, workflow_id: str = "orders") -> WorkflowDefinition:
    builder = WorkflowBuilder(workflow_id).start_with(steps[0])
    for s in steps[1:]:
        builder.then(s)
    return builder.build()


@pytest.mark.asyncio
async def test_sequence_runs_in_order_and_records_trace():
    ctx = OrderContext()
    result = await WorkflowEngine().execute(
        sequence(RecordingStep("reserve"), RecordingStep("charge")), ctx
    )

    assert result.is_success
    assert result.context is ctx
    assert ctx.events == ["execute:reserve", "execute:charge"]
    assert [t.step_name for t in result.execution_trace] == ["reserve", "charge"]
    assert all(t.kind == "step" and t.attempt == 1 for t in result.execution_trace)
    assert result.metrics.steps_executed == 2
    assert result.metrics.success_rate == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_failure_compensates_completed_steps_in_reverse():
    ctx = OrderContext()
    result = await WorkflowEngine().execute(
        sequence(RecordingStep("step1"), RecordingStep("step2"), RecordingStep("step3", fail=True)),
        ctx,
    )

    assert result.is_failure
    assert result.error_message == "step3 failed"
    assert ctx.events == [
        "execute:step1",
        "execute:step2",
        "execute:step3",
        "compensate:step2",
        "compensate:step1",
    ]
    assert isinstance(result.exception, StepExecutionFailure)
    assert result.exception.step_name == "step3"
    assert result.compensation_failures == []


@pytest.mark.asyncio
async def test_compensation_failures_are_collected_and_do_not_stop_rollback():
    ctx = OrderContext()
    result = await WorkflowEngine().execute(
        sequence(
            RecordingStep("step1"),
            RecordingStep("step2", compensate_error="undo broke"),
            RecordingStep("step3", fail=True),
        ),
        ctx,
    )

    assert result.is_failure
    assert ctx.events[-2:] == ["compensate:step2", "compensate:step1"]
    assert len(result.compensation_failures) == 1
    failure = result.compensation_failures[0]
    assert failure.step_name == "step2"
    assert failure.message == "undo broke"


@pytest.mark.asyncio
async def test_compensation_can_be_disabled():
    ctx = OrderContext()
    result = await WorkflowEngine().execute(
        sequence(RecordingStep("step1"), RecordingStep("step2", fail=True)),
        ctx,
        ExecutionOptions(enable_compensation=False),
    )
    assert result.is_failure
    assert "compensate:step1" not in ctx.events


@pytest.mark.asyncio
async def test_retries_are_bounded_by_policy():
    flaky = FlakyStep(failures=10)
    result = await WorkflowEngine().execute(sequence(flaky), OrderContext())

    assert result.is_failure
    assert flaky.calls == 3
    assert [t.attempt for t in result.execution_trace] == [1, 2, 3]
    assert result.error_message == "RuntimeError: boom"
    assert result.metrics.total_retries == 2
    assert isinstance(result.exception.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failure():
    flaky = FlakyStep(failures=1)
    result = await WorkflowEngine().execute(sequence(flaky), OrderContext())

    assert result.is_success
    assert flaky.calls == 2
    assert [t.result.kind for t in result.execution_trace] == ["failure", "success"]


@pytest.mark.asyncio
async def test_non_retryable_steps_run_once():
    flaky = FlakyStep(failures=10)
    flaky.can_retry = False
    fatal = RecordingStep("fatal", fail=True)

    result = await WorkflowEngine().execute(sequence(flaky), OrderContext())
    assert result.is_failure
    assert flaky.calls == 1

    ctx = OrderContext()
    result = await WorkflowEngine().execute(sequence(fatal), ctx)
    assert result.is_failure
    assert ctx.events == ["execute:fatal"]


@pytest.mark.asyncio
async def test_default_retry_policy_from_options():
    calls = []

    def unstable(ctx):
        calls.append(1)
        raise ValueError("nope")

    result = await WorkflowEngine(
        ExecutionOptions(default_retry_policy=RetryPolicy.create(2, lambda a: 0.0))
    ).execute(sequence(FunctionStep(unstable)), OrderContext())

    assert result.is_failure
    assert len(calls) == 2
    assert result.error_message == "ValueError: nope"


@pytest.mark.asyncio
async def test_parallel_waits_for_all_branches_before_failing():
    ctx = OrderContext()
    definition = WorkflowBuilder("fanout").start_with(
        ParallelNode(
            [
                StepNode(RecordingStep("fast", fail=True)),
                StepNode(RecordingStep("slow", delay=0.05)),
            ]
        )
    ).build()

    result = await WorkflowEngine().execute(definition, ctx)

    assert result.is_failure
    assert result.error_message == "fast failed"
    assert "execute:slow" in ctx.events
    assert ctx.events.index("execute:slow") < ctx.events.index("compensate:slow")


@pytest.mark.asyncio
async def test_parallel_aggregates_multiple_failures():
    definition = WorkflowBuilder("fanout").start_with(
        ParallelNode(
            [
                StepNode(RecordingStep("a", fail=True)),
                StepNode(RecordingStep("b", fail=True, delay=0.01)),
                StepNode(RecordingStep("c")),
            ]
        )
    ).build()

    result = await WorkflowEngine().execute(definition, OrderContext())

    assert result.is_failure
    assert result.error_message == "2 parallel branches failed; first: a failed"


@pytest.mark.asyncio
async def test_parallel_failure_wins_over_suspension():
    definition = WorkflowBuilder("fanout").start_with(
        ParallelNode([WaitForSignalNode("ok"), StepNode(RecordingStep("broken", fail=True))])
    ).build()

    result = await WorkflowEngine().execute(definition, OrderContext())

    assert result.is_failure
    assert not result.is_suspended


@pytest.mark.asyncio
async def test_parallel_suspension_lets_other_branches_finish():
    ctx = OrderContext()
    definition = (
        WorkflowBuilder("fanout")
        .start_with(ParallelNode([WaitForSignalNode("ok"), StepNode(RecordingStep("side"))]))
        .then(RecordingStep("after"))
        .build()
    )

    result = await WorkflowEngine().execute(definition, ctx)

    assert result.is_suspended
    assert result.suspended_signal_name == "ok"
    assert ctx.events == ["execute:side"]


@pytest.mark.asyncio
async def test_conditional_picks_one_branch():
    async def is_large(ctx):
        return ctx.amount > 100

    definition = (
        WorkflowBuilder("review")
        .start_with(RecordingStep("intake"))
        .if_(is_large, RecordingStep("manual_review"), RecordingStep("auto_approve"))
        .build()
    )

    small = OrderContext(amount=10)
    assert (await WorkflowEngine().execute(definition, small)).is_success
    assert small.events == ["execute:intake", "execute:auto_approve"]

    large = OrderContext(amount=500)
    assert (await WorkflowEngine().execute(definition, large)).is_success
    assert large.events == ["execute:intake", "execute:manual_review"]


@pytest.mark.asyncio
async def test_conditional_without_else_and_failing_predicate():
    skipped = OrderContext()
    definition = (
        WorkflowBuilder("cond")
        .start_with(RecordingStep("first"))
        .if_(lambda ctx: False, RecordingStep("never"))
        .build()
    )
    assert (await WorkflowEngine().execute(definition, skipped)).is_success
    assert skipped.events == ["execute:first"]

    def explode(ctx):
        raise KeyError("missing")

    ctx = OrderContext()
    broken = (
        WorkflowBuilder("cond")
        .start_with(RecordingStep("first"))
        .if_(explode, RecordingStep("never"))
        .build()
    )
    result = await WorkflowEngine().execute(broken, ctx)
    assert result.is_failure
    assert result.error_message.startswith("Condition evaluation failed")
    assert ctx.events == ["execute:first", "compensate:first"]


@pytest.mark.asyncio
async def test_wait_for_signal_suspends_then_completes_with_payload():
    received = []

    def on_payment(ctx, payload):
        received.append(payload)
        ctx.amount = payload["amount"]

    definition = (
        WorkflowBuilder("orders")
        .start_with(RecordingStep("reserve"))
        .wait_for_signal("payment", timeout=30, on_signal=on_payment)
        .then(RecordingStep("ship"))
        .build()
    )
    engine = WorkflowEngine()

    ctx = OrderContext()
    first = await engine.execute(definition, ctx)
    assert first.is_suspended
    assert first.suspension.signal_name == "payment"
    assert first.suspension.timeout == 30
    assert ctx.events == ["execute:reserve"]
    assert first.execution_trace[-1].kind == "signal"
    assert first.execution_trace[-1].result.is_suspended

    second = await engine.execute(
        definition, ctx, ExecutionOptions(signals={"payment": {"amount": 42}})
    )
    assert second.is_success
    assert received == [{"amount": 42}]
    assert ctx.amount == 42
    # the graph is re-walked from the root, so reserve runs again
    assert ctx.events == ["execute:reserve", "execute:reserve", "execute:ship"]


@pytest.mark.asyncio
async def test_signal_handler_failure_fails_the_workflow():
    def reject(ctx, payload):
        return StepResult.failure("payment declined")

    definition = (
        WorkflowBuilder("orders")
        .start_with(RecordingStep("reserve"))
        .wait_for_signal("payment", on_signal=reject)
        .build()
    )
    ctx = OrderContext()
    result = await WorkflowEngine().execute(
        definition, ctx, ExecutionOptions(signals={"payment": None})
    )
    assert result.is_failure
    assert result.error_message == "payment declined"
    assert ctx.events[-1] == "compensate:reserve"


@pytest.mark.asyncio
async def test_step_timeout_is_reported_as_timeout_failure():
    async def nap(ctx):
        await asyncio.sleep(1)

    slow = FunctionStep(nap, name="slow", timeout=0.05, can_retry=False)
    result = await WorkflowEngine().execute(sequence(slow), OrderContext())

    assert result.is_failure
    assert result.error_code == "WORKFLOW_TIMEOUT"
    assert result.error_message == "Step 'slow' timed out after 0.05s"
    assert isinstance(result.exception, WorkflowStepTimeoutError)


@pytest.mark.asyncio
async def test_workflow_timeout_stops_long_running_steps():
    async def forever(ctx):
        await asyncio.sleep(10)

    definition = (
        WorkflowBuilder("slow_flow").start_with(FunctionStep(forever)).with_timeout(1).build()
    )
    result = await asyncio.wait_for(WorkflowEngine().execute(definition, OrderContext()), 5)

    assert result.is_failure
    assert result.error_code == "WORKFLOW_TIMEOUT"
    assert result.error_message == "Workflow 'slow_flow' exceeded its timeout of 1s"


@pytest.mark.asyncio
async def test_already_applied_steps_are_skipped_but_compensated():
    def charged(ctx):
        return "charged" in ctx.events

    charge = FunctionStep(
        lambda ctx: ctx.events.append("charge"),
        name="charge",
        compensate=lambda ctx: ctx.events.append("refund"),
        already_applied=charged,
    )
    ctx = OrderContext(events=["charged"])
    definition = sequence(RecordingStep("reserve"), charge, RecordingStep("ship", fail=True))

    result = await WorkflowEngine().execute(definition, ctx)

    assert result.is_failure
    assert "charge" not in ctx.events
    assert [t.step_name for t in result.execution_trace] == ["reserve", "ship"]
    assert ctx.events == [
        "charged",
        "execute:reserve",
        "execute:ship",
        "refund",
        "compensate:reserve",
    ]


@pytest.mark.asyncio
async def test_sync_function_steps_and_tracing_switch():
    def add(ctx):
        ctx.amount += 5

    ctx = OrderContext()
    result = await WorkflowEngine().execute(
        sequence(FunctionStep(add)), ctx, ExecutionOptions(enable_tracing=False)
    )
    assert result.is_success
    assert ctx.amount == 5
    assert result.execution_trace == []


@pytest.mark.asyncio
async def test_invalid_step_return_value_fails():
    bad = FunctionStep(lambda ctx: 42, name="bad", retry_policy=RetryPolicy.no_retry())
    result = await WorkflowEngine().execute(sequence(bad), OrderContext())
    assert result.is_failure
    assert result.error_message.startswith("TypeError")


@pytest.mark.asyncio
async def test_delay_node():
    definition = WorkflowBuilder("pause").start_with(RecordingStep("a")).delay(0.01).build()
    assert (await WorkflowEngine().execute(definition, OrderContext())).is_success


@pytest.mark.asyncio
async def test_cancellation_propagates():
    async def forever(ctx):
        await asyncio.sleep(10)

    task = asyncio.create_task(
        WorkflowEngine().execute(sequence(FunctionStep(forever)), OrderContext())
    )
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_returned_retryable_failure_is_attempted_three_times():
    calls = []

    def busy(ctx):
        calls.append(1)
        return StepResult.failure("gateway busy", should_retry=True)

    result = await WorkflowEngine().execute(
        sequence(FunctionStep(busy, name="busy", retry_policy=NO_WAIT)), OrderContext()
    )

    assert result.is_failure
    assert len(calls) == 3
    assert [t.attempt for t in result.execution_trace] == [1, 2, 3]
    assert all(t.result.is_failure for t in result.execution_trace)
    assert result.error_message == "gateway busy"


@pytest.mark.asyncio
async def test_step_raising_timeout_error_is_retried():
    flaky = ConnectTimeoutStep(failures=1)
    result = await WorkflowEngine().execute(sequence(flaky), OrderContext())

    assert result.is_success
    assert flaky.calls == 2
    assert [t.result.kind for t in result.execution_trace] == ["failure", "success"]
    first = result.execution_trace[0].result
    assert first.error_message == "connect timed out"
    assert first.error_code == "WORKFLOW_TIMEOUT"


@pytest.mark.asyncio
async def test_step_timeout_error_under_workflow_timeout_is_not_a_deadline():
    flaky = ConnectTimeoutStep(failures=1)
    definition = WorkflowBuilder("wf").start_with(flaky).with_timeout(60).build()

    result = await WorkflowEngine().execute(definition, OrderContext())

    assert result.is_success
    assert flaky.calls == 2
    assert [t.attempt for t in result.execution_trace] == [1, 2]


@pytest.mark.asyncio
async def test_step_timeout_errors_exhaust_retries():
    flaky = ConnectTimeoutStep(failures=10)
    result = await WorkflowEngine().execute(sequence(flaky), OrderContext())

    assert result.is_failure
    assert flaky.calls == 3
    assert len(result.execution_trace) == 3
    assert result.error_code == "WORKFLOW_TIMEOUT"
    assert result.error_message == "connect timed out"
    assert isinstance(result.exception, WorkflowStepTimeoutError)


@pytest.mark.asyncio
async def test_workflow_deadline_records_the_interrupted_attempt():
    async def forever(ctx):
        await asyncio.sleep(10)

    definition = (
        WorkflowBuilder("slow_flow").start_with(FunctionStep(forever)).with_timeout(1).build()
    )
    result = await asyncio.wait_for(WorkflowEngine().execute(definition, OrderContext()), 5)

    assert result.is_failure
    (entry,) = result.execution_trace
    assert entry.step_name == "forever"
    assert entry.result.is_failure
    assert entry.result.error_message == "Workflow 'slow_flow' exceeded its timeout of 1s"


def test_step_timeout_message_without_a_limit():
    error = WorkflowStepTimeoutError.for_step("charge")
    assert error.message == "Step 'charge' timed out"
    assert error.timeout is None


@pytest.mark.asyncio
async def test_compensation_follows_completion_order_of_parallel_branches():
    ctx = OrderContext()
    definition = (
        WorkflowBuilder("fanout")
        .start_with(
            ParallelNode(
                [
                    StepNode(RecordingStep("slow", delay=0.05)),
                    StepNode(RecordingStep("fast")),
                ]
            )
        )
        .then(RecordingStep("boom", fail=True))
        .build()
    )

    result = await WorkflowEngine().execute(definition, ctx)

    assert result.is_failure
    assert ctx.events == [
        "execute:fast",
        "execute:slow",
        "execute:boom",
        "compensate:slow",
        "compensate:fast",
    ]


@pytest.mark.asyncio
async def test_composite_branches_run_when_a_sibling_suspends_first():
    ctx = OrderContext()
    definition = (
        WorkflowBuilder("fanout")
        .start_with(
            ParallelNode(
                [
                    WaitForSignalNode("ok"),
                    SequenceNode([StepNode(RecordingStep("a")), StepNode(RecordingStep("b"))]),
                    ConditionalNode(lambda c: True, StepNode(RecordingStep("c"))),
                ]
            )
        )
        .then(RecordingStep("after"))
        .build()
    )

    result = await WorkflowEngine().execute(definition, ctx)

    assert result.is_suspended
    assert result.suspended_signal_name == "ok"
    assert sorted(ctx.events) == ["execute:a", "execute:b", "execute:c"]
    assert ctx.events.index("execute:a") < ctx.events.index("execute:b")
