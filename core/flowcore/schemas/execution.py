"""
Execution Schema - Runtime state of one workflow instance.

The ExecutionInstance is the only mutable thing the engine owns. It is
loaded, mutated by the StepAdvancer while the instance lock is held, and
saved back as a single JSON document. Everything needed to resume an
instance (step states, join records, approval requests, AI task records,
pending timers, deferred events) lives inside it.

Version History:
- v1.0: Initial schema
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from flowcore.graph.node import ExecutionMode, FailureMode
from flowcore.schemas.ai_task import AIAgentTask, Usage
from flowcore.schemas.approval import ApprovalRequest


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING_APPROVAL = "waiting_approval"  # Approval only
    EXPIRED = "expired"  # Approval only
    PARTIAL = "partial"  # Parallel only
    CANCELLED = "cancelled"

    @property
    def is_live(self) -> bool:
        return self in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.WAITING_APPROVAL)


class BranchRef(BaseModel):
    """One level of parallel scope: which branch of which Parallel node."""

    parallel_id: str
    branch_id: str
    activation_id: str = ""  # Parallel step activation that opened the scope

    model_config = {"frozen": True}


class StepState(BaseModel):
    """Runtime status of one node within an instance."""

    node_id: str
    status: StepStatus = StepStatus.PENDING
    activation_id: str = ""
    started_at: str | None = None
    completed_at: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    retry_count: int = 0
    retry_pending: bool = False
    branch_path: list[BranchRef] = Field(default_factory=list)
    usage: Usage | None = None

    model_config = {"extra": "allow"}


class PathEntry(BaseModel):
    node_id: str
    timestamp: str
    status: StepStatus
    activation_id: str = ""


class BranchStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Never started, join already resolved
    IGNORED = "ignored"  # Still running when the join resolved

    @property
    def is_terminal(self) -> bool:
        return self in (BranchStatus.COMPLETED, BranchStatus.FAILED, BranchStatus.SKIPPED)


class BranchState(BaseModel):
    id: str
    target_node_id: str
    status: BranchStatus = BranchStatus.QUEUED
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    late_outcome: str | None = None  # Outcome reported after the join resolved


class JoinStatus(StrEnum):
    WAITING = "waiting"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JoinRecord(BaseModel):
    """Fork/join bookkeeping for one Parallel step activation."""

    parallel_id: str
    activation_id: str
    join_node_id: str | None = None
    execution_mode: ExecutionMode
    failure_mode: FailureMode
    max_concurrency: int | None = None
    branches: dict[str, BranchState] = Field(default_factory=dict)
    queue: list[str] = Field(default_factory=list)
    status: JoinStatus = JoinStatus.WAITING
    started_branches: int = 0
    completed_branches: int = 0
    failed_branches: int = 0
    error: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status != JoinStatus.WAITING

    @property
    def running_branches(self) -> int:
        return sum(1 for b in self.branches.values() if b.status == BranchStatus.RUNNING)


class TimerKind(StrEnum):
    RETRY = "retry"
    TIMEOUT = "timeout"
    ESCALATION = "escalation"
    EXPIRY = "expiry"
    PARALLEL_TIMEOUT = "parallel_timeout"
    WORKFLOW_TIMEOUT = "workflow_timeout"


class ScheduledTimer(BaseModel):
    """A future wake-up persisted with the snapshot and re-armed on recovery."""

    id: str
    kind: TimerKind
    fire_at: str  # ISO 8601
    node_id: str | None = None
    activation_id: str | None = None
    attempt: int = 0


class ErrorDetails(BaseModel):
    """Diagnosis for a failed instance."""

    node_id: str | None = None
    error: str
    retry_count: int = 0


class ExecutionInstance(BaseModel):
    """
    One live run of a workflow definition.

    Invariant: every key of step_states is a node id of the definition.
    """

    schema_version: str = "1.0"

    id: str
    workflow_id: str
    workflow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    priority: int = 0

    variables: dict[str, Any] = Field(default_factory=dict)
    step_states: dict[str, StepState] = Field(default_factory=dict)
    execution_path: list[PathEntry] = Field(default_factory=list)

    approvals: dict[str, ApprovalRequest] = Field(default_factory=dict)  # by node id
    ai_tasks: dict[str, AIAgentTask] = Field(default_factory=dict)  # by node id
    joins: dict[str, JoinRecord] = Field(default_factory=dict)  # by parallel node id
    loop_counts: dict[str, int] = Field(default_factory=dict)  # by edge id
    timers: dict[str, ScheduledTimer] = Field(default_factory=dict)
    deferred_events: list[dict[str, Any]] = Field(default_factory=list)

    end_reached: bool = False
    error_details: ErrorDetails | None = None
    cancel_reason: str | None = None
    retry_of: str | None = None
    id_sequence: int = 0
    log_seq: int = 0  # last event-log sequence number applied

    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    paused_at: str | None = None
    updated_at: str | None = None

    model_config = {"extra": "allow"}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def live_steps(self) -> list[StepState]:
        return [s for s in self.step_states.values() if s.status.is_live]


class ExecutionMetrics(BaseModel):
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    total_retries: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    execution_time_ms: int = 0
    wait_time_ms: int = 0


class ExecutionSnapshot(BaseModel):
    """Read-only view returned by get_snapshot."""

    execution_id: str
    workflow_id: str
    workflow_version: int
    status: ExecutionStatus
    variables: dict[str, Any]
    step_states: dict[str, StepState]
    execution_path: list[PathEntry]
    metrics: ExecutionMetrics
    approvals: dict[str, ApprovalRequest] = Field(default_factory=dict)
    error_details: ErrorDetails | None = None
    retry_of: str | None = None


def _millis(start: str | None, end: str | None, now: datetime) -> int:
    if not start:
        return 0
    begin = datetime.fromisoformat(start)
    finish = datetime.fromisoformat(end) if end else now
    return max(0, int((finish - begin).total_seconds() * 1000))


def compute_metrics(instance: ExecutionInstance, now: datetime) -> ExecutionMetrics:
    """Aggregate step counts, retries, usage and timings for a snapshot."""
    metrics = ExecutionMetrics(total_steps=len(instance.step_states))
    for step in instance.step_states.values():
        if step.status in (StepStatus.COMPLETED, StepStatus.PARTIAL):
            metrics.completed_steps += 1
        elif step.status in (StepStatus.FAILED, StepStatus.EXPIRED):
            metrics.failed_steps += 1
        elif step.status == StepStatus.SKIPPED:
            metrics.skipped_steps += 1
        metrics.total_retries += step.retry_count
        if step.usage is not None:
            metrics.total_tokens += step.usage.total_tokens
            metrics.total_cost += step.usage.cost

    end = instance.completed_at or instance.cancelled_at
    metrics.execution_time_ms = _millis(instance.started_at, end, now)
    for request in instance.approvals.values():
        metrics.wait_time_ms += _millis(request.created_at, request.responded_at or end, now)
    return metrics


def build_snapshot(instance: ExecutionInstance, now: datetime) -> ExecutionSnapshot:
    copy = instance.model_copy(deep=True)
    return ExecutionSnapshot(
        execution_id=copy.id,
        workflow_id=copy.workflow_id,
        workflow_version=copy.workflow_version,
        status=copy.status,
        variables=copy.variables,
        step_states=copy.step_states,
        execution_path=copy.execution_path,
        metrics=compute_metrics(copy, now),
        approvals=copy.approvals,
        error_details=copy.error_details,
        retry_of=copy.retry_of,
    )
