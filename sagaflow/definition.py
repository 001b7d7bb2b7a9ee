"""Immutable workflow definitions and a fluent builder for them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional, Sequence, Union

from .constants import (
    MAX_DISPLAY_NAME_LENGTH,
    MAX_PARALLEL_BRANCHES,
    MAX_SIGNAL_NAME_LENGTH,
    MAX_WORKFLOW_ID_LENGTH,
    MAX_WORKFLOW_TIMEOUT,
    MIN_WORKFLOW_TIMEOUT,
)
from .errors import WorkflowConfigurationError
from .graph import (
    ConditionalNode,
    DelayNode,
    Node,
    ParallelNode,
    Predicate,
    SequenceNode,
    SignalHandlerFunc,
    StepNode,
    WaitForSignalNode,
)
from .steps import FunctionStep, WorkflowStep

NodeLike = Union[Node, WorkflowStep, Callable[[Any], Any], Sequence[Any]]


@dataclass(frozen=True, eq=False)
class WorkflowDefinition:
    """A declared graph of steps, built once per workflow type.

    The definition is validated on construction and never changes
    afterwards; the same instance is shared by every run.
    """

    workflow_id: str
    graph: Node
    display_name: str = ""
    version: str = "1.0"
    workflow_timeout: Optional[float] = None
    _signals: dict = field(init=False, repr=False, default_factory=dict)

    def __post_init__(self) -> None:
        if not self.display_name:
            object.__setattr__(self, "display_name", self.workflow_id)
        self._validate()

    # ------------------------------------------------------------------
    # Validation
    def _validate(self) -> None:
        if not isinstance(self.workflow_id, str) or not self.workflow_id.strip():
            raise WorkflowConfigurationError("Workflow ID cannot be empty")
        if len(self.workflow_id) > MAX_WORKFLOW_ID_LENGTH:
            raise WorkflowConfigurationError(
                f"Workflow ID cannot exceed {MAX_WORKFLOW_ID_LENGTH} characters"
            )
        if len(self.display_name) > MAX_DISPLAY_NAME_LENGTH:
            raise WorkflowConfigurationError(
                f"Display name cannot exceed {MAX_DISPLAY_NAME_LENGTH} characters"
            )
        if self.workflow_timeout is not None and not (
            MIN_WORKFLOW_TIMEOUT <= self.workflow_timeout <= MAX_WORKFLOW_TIMEOUT
        ):
            raise WorkflowConfigurationError(
                f"Workflow timeout must be between {MIN_WORKFLOW_TIMEOUT:g}s "
                f"and {MAX_WORKFLOW_TIMEOUT:g}s"
            )
        if not isinstance(self.graph, Node):
            raise WorkflowConfigurationError("Workflow graph must be a Node")

        seen: set[int] = set()
        node_ids: set[str] = set()
        stack: List[Node] = [self.graph]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                raise WorkflowConfigurationError(
                    f"Node {node.node_id or node.kind!r} appears more than once in the graph"
                )
            seen.add(id(node))
            if node.node_id is not None:
                if node.node_id in node_ids:
                    raise WorkflowConfigurationError(f"Duplicate node id {node.node_id!r}")
                node_ids.add(node.node_id)
            self._validate_node(node)
            stack.extend(reversed(node.children()))

    def _validate_node(self, node: Node) -> None:
        if isinstance(node, StepNode):
            if not isinstance(node.step, WorkflowStep):
                raise WorkflowConfigurationError(
                    f"Step node {node.node_id!r} does not wrap a WorkflowStep"
                )
            if node.step.timeout is not None and node.step.timeout <= 0:
                raise WorkflowConfigurationError(
                    f"Step {node.step.step_name!r} timeout must be positive"
                )
        elif isinstance(node, SequenceNode):
            if not node.nodes:
                raise WorkflowConfigurationError("Sequence nodes must contain at least one child")
        elif isinstance(node, ParallelNode):
            if not 1 <= len(node.branches) <= MAX_PARALLEL_BRANCHES:
                raise WorkflowConfigurationError(
                    f"Parallel nodes must have between 1 and {MAX_PARALLEL_BRANCHES} branches"
                )
        elif isinstance(node, DelayNode):
            if node.duration < 0:
                raise WorkflowConfigurationError("Delay duration cannot be negative")
        elif isinstance(node, WaitForSignalNode):
            name = node.signal_name
            if not name or not name.strip():
                raise WorkflowConfigurationError("Signal name cannot be empty")
            if len(name) > MAX_SIGNAL_NAME_LENGTH:
                raise WorkflowConfigurationError(
                    f"Signal name cannot exceed {MAX_SIGNAL_NAME_LENGTH} characters"
                )
            if name in self._signals:
                raise WorkflowConfigurationError(f"Signal {name!r} is awaited more than once")
            if node.timeout is not None and node.timeout <= 0:
                raise WorkflowConfigurationError(f"Signal {name!r} timeout must be positive")
            self._signals[name] = node
        elif isinstance(node, ConditionalNode):
            if not callable(node.predicate):
                raise WorkflowConfigurationError("Conditional predicate must be callable")

    # ------------------------------------------------------------------
    def nodes(self) -> Iterator[Node]:
        return self.graph.walk()

    def steps(self) -> Iterator[WorkflowStep]:
        for node in self.nodes():
            if isinstance(node, StepNode):
                yield node.step

    @property
    def signal_names(self) -> frozenset[str]:
        return frozenset(self._signals)

    def signal_node(self, signal_name: str) -> Optional[WaitForSignalNode]:
        return self._signals.get(signal_name)


def to_node(value: NodeLike) -> Node:
    """Coerce a step, callable or list of those into a graph node."""
    if isinstance(value, Node):
        return value
    if isinstance(value, WorkflowStep):
        return StepNode(value)
    if isinstance(value, (list, tuple)):
        nodes = [to_node(v) for v in value]
        return nodes[0] if len(nodes) == 1 else SequenceNode(nodes)
    if callable(value):
        return StepNode(FunctionStep(value))
    raise WorkflowConfigurationError(f"Cannot build a graph node from {value!r}")


class WorkflowBuilder:
    """Fluent construction of a :class:`WorkflowDefinition`.

    Example::

        definition = (
            WorkflowBuilder("orders", "Order processing")
            .start_with(ReserveStock())
            .wait_for_approval("manager_approval", timeout=3600)
            .then(ChargeCard())
            .build()
        )
    """

    def __init__(self, workflow_id: str, display_name: str = "", version: str = "1.0") -> None:
        self._workflow_id = workflow_id
        self._display_name = display_name
        self._version = version
        self._timeout: Optional[float] = None
        self._nodes: List[Node] = []
        self._started = False

    def with_timeout(self, seconds: float) -> "WorkflowBuilder":
        self._timeout = seconds
        return self

    def start_with(self, step: NodeLike) -> "WorkflowBuilder":
        if self._started:
            raise WorkflowConfigurationError("start_with() may only be called once")
        self._started = True
        self._nodes.append(to_node(step))
        return self

    def _append(self, node: Node) -> "WorkflowBuilder":
        if not self._started:
            raise WorkflowConfigurationError(
                "Cannot add nodes before start_with() has been called"
            )
        self._nodes.append(node)
        return self

    def then(self, step: NodeLike) -> "WorkflowBuilder":
        return self._append(to_node(step))

    def delay(self, seconds: float, node_id: Optional[str] = None) -> "WorkflowBuilder":
        return self._append(DelayNode(seconds, node_id=node_id))

    def wait_for_signal(
        self,
        signal_name: str,
        timeout: Optional[float] = None,
        on_signal: Optional[SignalHandlerFunc] = None,
        node_id: Optional[str] = None,
    ) -> "WorkflowBuilder":
        return self._append(
            WaitForSignalNode(signal_name, timeout=timeout, on_signal=on_signal, node_id=node_id)
        )

    def wait_for_approval(
        self,
        signal_name: str,
        timeout: Optional[float] = None,
        on_signal: Optional[SignalHandlerFunc] = None,
        node_id: Optional[str] = None,
    ) -> "WorkflowBuilder":
        return self._append(
            WaitForSignalNode(
                signal_name,
                timeout=timeout,
                approval=True,
                on_signal=on_signal,
                node_id=node_id,
            )
        )

    def if_(
        self,
        predicate: Predicate,
        then: NodeLike,
        else_: Optional[NodeLike] = None,
        node_id: Optional[str] = None,
    ) -> "WorkflowBuilder":
        return self._append(
            ConditionalNode(
                predicate,
                to_node(then),
                to_node(else_) if else_ is not None else None,
                node_id=node_id,
            )
        )

    def in_parallel(self, *branches: NodeLike, node_id: Optional[str] = None) -> "WorkflowBuilder":
        return self._append(ParallelNode([to_node(b) for b in branches], node_id=node_id))

    def build(self) -> WorkflowDefinition:
        if not self._nodes:
            raise WorkflowConfigurationError(
                "Cannot build workflow without any steps. Call start_with() first."
            )
        graph = self._nodes[0] if len(self._nodes) == 1 else SequenceNode(list(self._nodes))
        return WorkflowDefinition(
            workflow_id=self._workflow_id,
            graph=graph,
            display_name=self._display_name,
            version=self._version,
            workflow_timeout=self._timeout,
        )


__all__ = ["WorkflowBuilder", "WorkflowDefinition", "to_node"]
