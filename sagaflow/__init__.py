"""sagaflow: durable workflow orchestration with signals and compensation."""

from .config import SagaflowConfig, load_config
from .coordinator import WorkflowStateCoordinator
from .definition import WorkflowBuilder, WorkflowDefinition
from .engine import ExecutionOptions, WorkflowEngine
from .errors import (
    InstanceNotFoundError,
    StateConflictError,
    StepExecutionFailure,
    WorkflowCancelledError,
    WorkflowConfigurationError,
    WorkflowError,
    WorkflowStepTimeoutError,
)
from .graph import (
    ConditionalNode,
    DelayNode,
    ParallelNode,
    SequenceNode,
    StepNode,
    WaitForSignalNode,
)
from .notifications import CallbackNotificationService, LoggingNotificationService
from .persistence import WorkflowStatus, get_repository
from .persistent import PersistentWorkflowEngine
from .registry import DefinitionRegistry
from .results import (
    CompensationFailure,
    Result,
    StepExecutionTrace,
    StepResult,
    WorkflowMetrics,
    WorkflowResult,
)
from .signals import ApprovalResponse, SignalHandler, approval_handler
from .steps import FunctionStep, WorkflowStep, step
from .timeouts import WorkflowTimeoutService
from .utils.retry import RetryPolicy

__version__ = "0.1.0"
__all__ = [
    "ApprovalResponse",
    "CallbackNotificationService",
    "CompensationFailure",
    "ConditionalNode",
    "DefinitionRegistry",
    "DelayNode",
    "ExecutionOptions",
    "FunctionStep",
    "InstanceNotFoundError",
    "LoggingNotificationService",
    "ParallelNode",
    "PersistentWorkflowEngine",
    "Result",
    "RetryPolicy",
    "SagaflowConfig",
    "SequenceNode",
    "SignalHandler",
    "StateConflictError",
    "StepExecutionFailure",
    "StepExecutionTrace",
    "StepNode",
    "StepResult",
    "WaitForSignalNode",
    "WorkflowBuilder",
    "WorkflowCancelledError",
    "WorkflowConfigurationError",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowMetrics",
    "WorkflowResult",
    "WorkflowStateCoordinator",
    "WorkflowStatus",
    "WorkflowStepTimeoutError",
    "WorkflowTimeoutService",
    "approval_handler",
    "get_repository",
    "load_config",
    "step",
]
