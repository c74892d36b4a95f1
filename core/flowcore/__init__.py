"""
FlowCore - Event-driven workflow execution engine.

Workflows are graphs of Start, End, Task, Approval, AIAgent, Conditional
and Parallel nodes. The engine validates a definition once, then advances
execution instances one event at a time.

Example:
    from flowcore import WorkflowEngine

    engine = WorkflowEngine()
    await engine.register(graph)
    execution_id = await engine.start("purchase-approval", {"amount": 15000})
"""

from flowcore.config import EngineConfig
from flowcore.errors import (
    ApprovalError,
    ApprovalErrorReason,
    ApprovalExpiredError,
    CancellationError,
    ConditionEvaluationError,
    ExecutionNotFoundError,
    FlowCoreError,
    InvalidStateError,
    StaleEventError,
    StepExecutionError,
    ValidationError,
    WorkflowNotFoundError,
)
from flowcore.graph.edge import EdgeSpec, GraphSpec
from flowcore.runner.handler_registry import (
    HandlerRegistry,
    TaskContext,
    TaskHandler,
    TaskResult,
    model_handler,
    task_handler,
)
from flowcore.runtime.engine import WorkflowEngine
from flowcore.schemas.approval import Decision
from flowcore.schemas.events import (
    ApprovalDecided,
    Cancel,
    Pause,
    Resume,
    StepCompleted,
    StepFailed,
    TimerFired,
)
from flowcore.schemas.execution import ExecutionSnapshot, ExecutionStatus, StepStatus
from flowcore.storage.execution_store import FileExecutionStore, InMemoryExecutionStore

__all__ = [
    "WorkflowEngine",
    "EngineConfig",
    "GraphSpec",
    "EdgeSpec",
    "HandlerRegistry",
    "TaskHandler",
    "TaskContext",
    "TaskResult",
    "task_handler",
    "model_handler",
    "Decision",
    "StepCompleted",
    "StepFailed",
    "ApprovalDecided",
    "Cancel",
    "Pause",
    "Resume",
    "TimerFired",
    "ExecutionSnapshot",
    "ExecutionStatus",
    "StepStatus",
    "InMemoryExecutionStore",
    "FileExecutionStore",
    # Errors
    "FlowCoreError",
    "ValidationError",
    "StepExecutionError",
    "ApprovalError",
    "ApprovalErrorReason",
    "ApprovalExpiredError",
    "ConditionEvaluationError",
    "StaleEventError",
    "CancellationError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    "InvalidStateError",
]
