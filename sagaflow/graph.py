"""Graph node variants that make up a workflow definition."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Optional, Sequence, Union

from .results import StepResult
from .steps import WorkflowStep

Predicate = Callable[[Any], Union[bool, Awaitable[bool]]]
SignalHandlerFunc = Callable[
    [Any, Any], Union[None, StepResult, Awaitable[Optional[StepResult]]]
]


@dataclass(frozen=True, eq=False)
class Node:
    """Base class for graph nodes. Nodes compare by identity."""

    node_id: Optional[str] = field(default=None, kw_only=True)

    @property
    def kind(self) -> str:
        return type(self).__name__.removesuffix("Node").lower()

    def children(self) -> Sequence["Node"]:
        return ()

    def walk(self) -> Iterator["Node"]:
        """Yield this node and every descendant, depth-first."""
        yield self
        for child in self.children():
            yield from child.walk()


@dataclass(frozen=True, eq=False)
class StepNode(Node):
    step: WorkflowStep

    def __post_init__(self) -> None:
        if self.node_id is None:
            object.__setattr__(self, "node_id", self.step.step_name)


@dataclass(frozen=True, eq=False)
class SequenceNode(Node):
    nodes: Sequence[Node]

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))

    def children(self) -> Sequence[Node]:
        return self.nodes


@dataclass(frozen=True, eq=False)
class ConditionalNode(Node):
    """Evaluates ``predicate`` once and runs exactly one branch."""

    predicate: Predicate
    then_branch: Node
    else_branch: Optional[Node] = None

    def children(self) -> Sequence[Node]:
        if self.else_branch is None:
            return (self.then_branch,)
        return (self.then_branch, self.else_branch)


@dataclass(frozen=True, eq=False)
class ParallelNode(Node):
    """Runs all branches concurrently and waits for every one to finish.

    Branches share the workflow context. Steps in concurrent branches must
    write disjoint fields or bring their own lock.
    """

    branches: Sequence[Node]

    def __post_init__(self) -> None:
        object.__setattr__(self, "branches", tuple(self.branches))

    def children(self) -> Sequence[Node]:
        return self.branches


@dataclass(frozen=True, eq=False)
class DelayNode(Node):
    duration: float


@dataclass(frozen=True, eq=False)
class WaitForSignalNode(Node):
    """Suspends the workflow until ``signal_name`` is delivered.

    On a resumed pass the delivered payload is handed to ``on_signal``,
    which may return a :class:`StepResult` to accept or reject it.
    """

    signal_name: str
    timeout: Optional[float] = None
    approval: bool = False
    on_signal: Optional[SignalHandlerFunc] = None

    def __post_init__(self) -> None:
        if self.node_id is None:
            object.__setattr__(self, "node_id", f"signal:{self.signal_name}")


__all__ = [
    "ConditionalNode",
    "DelayNode",
    "Node",
    "ParallelNode",
    "Predicate",
    "SequenceNode",
    "SignalHandlerFunc",
    "StepNode",
    "WaitForSignalNode",
]
