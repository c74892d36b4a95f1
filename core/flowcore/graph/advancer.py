"""
Step Advancer - The event-driven state machine at the core of the engine.

Given an ExecutionInstance and one ingress event, the advancer mutates
the instance: it completes or fails steps, traverses edges, activates
the next steps, drives the approval, parallel and retry coordinators, and
collects side effects for the engine to run afterwards.

The advancer is synchronous and performs no I/O. The engine guarantees
that it is never entered twice for the same instance at the same time.

Failure propagation for a step with no retries left:
1. follow its recovery edge ("error", or "expired" for approvals) if any
2. otherwise, inside a parallel branch, fail that branch
3. otherwise fail the instance, keeping step id, error and retry count
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flowcore.config import EngineConfig
from flowcore.errors import (
    ApprovalError,
    ApprovalExpiredError,
    CancellationError,
    InvalidStateError,
    StaleEventError,
)
from flowcore.graph.ai_agent import AIAgentTaskRunner
from flowcore.graph.approval import ApprovalCoordinator
from flowcore.graph.context import AdvanceContext, Effect
from flowcore.graph.edge import TAG_ERROR, TAG_EXPIRED, EdgeSpec
from flowcore.graph.parallel import JoinUpdate, ParallelForkJoinCoordinator
from flowcore.graph.retry import RetryScheduler
from flowcore.graph.steps import Immediate, ImmediateFailure
from flowcore.graph.validator import CompiledGraph
from flowcore.runtime.event_bus import EventType
from flowcore.schemas.approval import ApprovalRequest, ApprovalStatus
from flowcore.schemas.events import (
    ApprovalDecided,
    Cancel,
    Event,
    Pause,
    Resume,
    StepCompleted,
    StepFailed,
    TimerFired,
    parse_event,
)
from flowcore.schemas.execution import (
    BranchRef,
    BranchStatus,
    ErrorDetails,
    ExecutionInstance,
    ExecutionStatus,
    JoinStatus,
    PathEntry,
    StepState,
    StepStatus,
    TimerKind,
)

logger = logging.getLogger(__name__)


@dataclass
class AdvanceResult:
    """Side effects to run after the instance is saved.

    ``changed`` is False when the event was a no-op (e.g. cancelling a
    terminal instance) and nothing needs to be persisted.
    """

    effects: list[Effect] = field(default_factory=list)
    changed: bool = True


class StepAdvancer:
    """Applies events to execution instances of a compiled graph."""

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or EngineConfig()
        self.retry = RetryScheduler(self.config)
        self.approvals = ApprovalCoordinator()
        self.parallel = ParallelForkJoinCoordinator()
        self.ai = AIAgentTaskRunner()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def start(
        self, graph: CompiledGraph, instance: ExecutionInstance, now: datetime
    ) -> AdvanceResult:
        """Move a pending instance to running and activate its Start node."""
        if instance.status != ExecutionStatus.PENDING:
            raise InvalidStateError(f"Execution '{instance.id}' already started")
        ctx = self._context(graph, instance, now)

        instance.status = ExecutionStatus.RUNNING
        instance.started_at = ctx.timestamp
        timeout = graph.spec.settings.timeout_minutes
        if timeout is not None:
            ctx.schedule_timer(TimerKind.WORKFLOW_TIMEOUT, now + timedelta(minutes=timeout))
        logger.info(
            f"Execution '{instance.id}' started for workflow '{graph.workflow_id}' "
            f"v{graph.version}",
            extra={"event": "execution_started"},
        )
        ctx.notify(
            EventType.EXECUTION_STARTED,
            variables=dict(instance.variables),
            priority=instance.priority,
        )

        self.activate(ctx, graph.start_node_id, [])
        self._settle(ctx)
        return AdvanceResult(ctx.effects)

    def advance(
        self,
        graph: CompiledGraph,
        instance: ExecutionInstance,
        event: Event,
        now: datetime,
    ) -> AdvanceResult:
        """
        Apply one ingress event.

        Raises:
            StaleEventError: the event no longer applies; nothing changed
            ApprovalError: a decision was refused; nothing changed
            InvalidStateError: pause/resume not allowed in the current status
        """
        ctx = self._context(graph, instance, now)

        if isinstance(event, Cancel):
            if instance.is_terminal:
                logger.debug(f"Cancel of terminal execution '{instance.id}' ignored")
                return AdvanceResult(changed=False)
            self._cancel(ctx, event.reason)
            return AdvanceResult(ctx.effects)

        if isinstance(event, Pause):
            self._pause(ctx, event.reason)
            return AdvanceResult(ctx.effects)

        if isinstance(event, Resume):
            self._resume(ctx)
            self._settle(ctx)
            return AdvanceResult(ctx.effects)

        if instance.is_terminal:
            if isinstance(event, ApprovalDecided):
                # Surfaces ApprovalError for decisions on finalized requests
                self._on_approval_decided(ctx, event)
            raise StaleEventError(
                instance.id, getattr(event, "node_id", None), f"execution is {instance.status}"
            )

        if instance.status == ExecutionStatus.PAUSED:
            instance.deferred_events.append(event.model_dump(mode="json"))
            logger.info(
                f"Execution '{instance.id}' is paused, deferred {event.type}",
                extra={"event": "event_deferred"},
            )
            return AdvanceResult(ctx.effects)

        self._apply(ctx, event)
        self._settle(ctx)
        return AdvanceResult(ctx.effects)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _context(
        self, graph: CompiledGraph, instance: ExecutionInstance, now: datetime
    ) -> AdvanceContext:
        instance.updated_at = now.isoformat()
        return AdvanceContext(graph=graph, instance=instance, now=now, config=self.config)

    def _apply(self, ctx: AdvanceContext, event: Event) -> None:
        if isinstance(event, StepCompleted):
            self._on_step_completed(ctx, event)
        elif isinstance(event, StepFailed):
            self._on_step_failed(ctx, event)
        elif isinstance(event, ApprovalDecided):
            self._on_approval_decided(ctx, event)
        elif isinstance(event, TimerFired):
            self._on_timer(ctx, event)
        else:
            raise InvalidStateError(f"Event {event.type} cannot be applied here")

    def _live_step(
        self,
        ctx: AdvanceContext,
        node_id: str,
        activation_id: str | None = None,
        attempt: int | None = None,
    ) -> StepState:
        """Return the step an event targets, or raise StaleEventError."""
        instance = ctx.instance
        if node_id not in ctx.graph.nodes:
            raise StaleEventError(instance.id, node_id, "unknown node")
        step = instance.step_states.get(node_id)
        if step is None:
            raise StaleEventError(instance.id, node_id, "step was never activated")
        if not step.status.is_live:
            raise StaleEventError(instance.id, node_id, f"step is {step.status}")
        if activation_id is not None and activation_id != step.activation_id:
            raise StaleEventError(instance.id, node_id, "step was re-activated since")
        if attempt is not None and attempt != step.retry_count:
            raise StaleEventError(instance.id, node_id, f"attempt {attempt} was superseded")
        return step

    def _on_step_completed(self, ctx: AdvanceContext, event: StepCompleted) -> None:
        step = self._live_step(ctx, event.node_id, event.activation_id, event.attempt)
        if not ctx.graph.step(event.node_id).external or step.status != StepStatus.RUNNING:
            raise StaleEventError(
                ctx.instance.id, event.node_id, "step does not accept external completion"
            )
        if event.usage is not None:
            self.ai.record_usage(ctx, step, event.usage)
        self._complete_step(ctx, step, event.output)

    def _on_step_failed(self, ctx: AdvanceContext, event: StepFailed) -> None:
        step = self._live_step(ctx, event.node_id, event.activation_id, event.attempt)
        if not ctx.graph.step(event.node_id).external or step.status != StepStatus.RUNNING:
            raise StaleEventError(
                ctx.instance.id, event.node_id, "step does not accept external failure"
            )
        self._attempt_failed(ctx, step, event.error, event.retryable)

    def _attempt_failed(
        self, ctx: AdvanceContext, step: StepState, error: str, retryable: bool
    ) -> None:
        node = ctx.graph.node(step.node_id)
        kind = ctx.graph.step(step.node_id)
        ctx.cancel_step_timers(step.node_id, step.activation_id)
        policy = kind.retry_policy(self, ctx, node) if retryable else None
        if policy is not None and self.retry.schedule_retry(ctx, step, policy, error):
            kind.retry_scheduled(self, ctx, step)
            ctx.notify(
                EventType.STEP_RETRY_SCHEDULED,
                node_id=step.node_id,
                attempt=step.retry_count,
                max_retries=policy.max_retries,
                error=error,
            )
            return
        self._fail_step(ctx, step, error)

    def _on_approval_decided(self, ctx: AdvanceContext, event: ApprovalDecided) -> None:
        instance = ctx.instance
        if event.node_id not in ctx.graph.nodes:
            raise StaleEventError(instance.id, event.node_id, "unknown node")
        request = instance.approvals.get(event.node_id)
        if request is None or (event.request_id and event.request_id != request.id):
            raise StaleEventError(instance.id, event.node_id, "no such approval request")
        if request.status == ApprovalStatus.CANCELLED:
            raise StaleEventError(instance.id, event.node_id, "approval request was cancelled")

        outcome = self.approvals.decide(
            ctx, request, event.approver_id, event.decision, event.comment
        )
        if outcome is not None:
            step = instance.step_states[event.node_id]
            self._complete_approval(ctx, step, request)

    def _complete_approval(
        self, ctx: AdvanceContext, step: StepState, request: ApprovalRequest
    ) -> None:
        output = {
            "decision": str(request.final_decision),
            "request_id": request.id,
            "received_approvals": request.received_approvals,
            "required_approvals": request.required_approvals,
        }
        self._complete_step(ctx, step, output)

    def _on_timer(self, ctx: AdvanceContext, event: TimerFired) -> None:
        instance = ctx.instance
        timer = instance.timers.pop(event.timer_id, None)
        if timer is None:
            raise StaleEventError(instance.id, event.node_id, f"timer '{event.timer_id}' cancelled")

        if timer.kind == TimerKind.WORKFLOW_TIMEOUT:
            minutes = ctx.graph.spec.settings.timeout_minutes
            self._fail_instance(ctx, None, f"Workflow timed out after {minutes} minutes", 0)
            return

        step = self._live_step(ctx, timer.node_id or "", timer.activation_id)
        node = ctx.graph.node(step.node_id)

        if timer.kind == TimerKind.RETRY:
            if not step.retry_pending or timer.attempt != step.retry_count:
                raise StaleEventError(instance.id, step.node_id, "retry superseded")
            step.retry_pending = False
            logger.info(
                f"Retrying step '{step.node_id}' (attempt {step.retry_count})",
                extra={"event": "step_retry", "node_id": step.node_id, "attempt": step.retry_count},
            )
            ctx.notify(EventType.STEP_STARTED, node_id=step.node_id, attempt=step.retry_count)
            ctx.graph.step(step.node_id).dispatch(self, ctx, node, step)

        elif timer.kind == TimerKind.TIMEOUT:
            if step.retry_pending or timer.attempt != step.retry_count:
                raise StaleEventError(instance.id, step.node_id, "timeout superseded")
            minutes = node.config.timeout_minutes
            self._attempt_failed(ctx, step, f"Step timed out after {minutes} minutes", True)

        elif timer.kind == TimerKind.ESCALATION:
            request = instance.approvals[step.node_id]
            self.approvals.escalate(ctx, request)

        elif timer.kind == TimerKind.EXPIRY:
            request = instance.approvals[step.node_id]
            if not request.is_pending:
                raise StaleEventError(instance.id, step.node_id, "approval already decided")
            if self.approvals.expire(ctx, node, request) is not None:
                self._complete_approval(ctx, step, request)
            else:
                self._fail_step(
                    ctx,
                    step,
                    str(ApprovalExpiredError(step.node_id)),
                    status=StepStatus.EXPIRED,
                    recovery_tags=(TAG_EXPIRED, TAG_ERROR),
                )

        elif timer.kind == TimerKind.PARALLEL_TIMEOUT:
            self.apply_join_update(ctx, step.node_id, self.parallel.timeout(ctx, step.node_id))

    # ------------------------------------------------------------------
    # Activation and traversal
    # ------------------------------------------------------------------

    def activate(self, ctx: AdvanceContext, node_id: str, branch_path: list[BranchRef]) -> None:
        """Activate a node in the given parallel scope."""
        instance = ctx.instance
        if instance.is_terminal:
            return

        if branch_path:
            ref = branch_path[-1]
            record = instance.joins[ref.parallel_id]
            if record.join_node_id == node_id:
                self._branch_finished(ctx, ref, None)
                return

        existing = instance.step_states.get(node_id)
        if existing is not None and existing.status.is_live:
            logger.info(
                f"Step '{node_id}' is already {existing.status}, activation ignored",
                extra={"node_id": node_id},
            )
            return

        node = ctx.graph.node(node_id)
        kind = ctx.graph.step(node_id)
        step = StepState(
            node_id=node_id,
            status=kind.initial_status,
            activation_id=ctx.next_id("act"),
            started_at=ctx.timestamp,
            branch_path=list(branch_path),
        )
        instance.step_states[node_id] = step
        self._record_path(ctx, step)
        logger.info(
            f"Step '{node_id}' ({node.kind}) activated",
            extra={"event": "step_started", "node_id": node_id},
        )
        ctx.notify(
            EventType.STEP_STARTED,
            node_id=node_id,
            kind=str(node.kind),
            activation_id=step.activation_id,
        )

        outcome = kind.activate(self, ctx, node, step)
        if isinstance(outcome, Immediate):
            self._complete_step(ctx, step, outcome.output)
        elif isinstance(outcome, ImmediateFailure):
            self._fail_step(ctx, step, outcome.error)

    def traverse(self, ctx: AdvanceContext, source: StepState, edges: list[EdgeSpec]) -> None:
        """Fire edges from a finished step, activating their targets in the step's scope."""
        for edge in edges:
            if ctx.instance.is_terminal:
                return
            if edge.loop:
                ctx.instance.loop_counts[edge.id] = ctx.instance.loop_counts.get(edge.id, 0) + 1
            logger.debug(
                f"Edge '{edge.id}' {edge.source} -> {edge.target}",
                extra={"node_id": edge.source},
            )
            ctx.notify(
                EventType.EDGE_TRAVERSED,
                node_id=edge.source,
                edge_id=edge.id,
                target=edge.target,
                branch_tag=edge.branch_tag,
            )
            self.activate(ctx, edge.target, list(source.branch_path))

    def reach_end(self, ctx: AdvanceContext, step: StepState) -> None:
        """An End node (or a Parallel without join node) finished in the step's scope."""
        if step.branch_path:
            self._branch_finished(ctx, step.branch_path[-1], None)
        else:
            ctx.instance.end_reached = True

    def dead_end(self, ctx: AdvanceContext, step: StepState) -> None:
        """
        A step completed without firing any edge.

        At top level ``_settle`` fails the instance once nothing else is
        live. Inside a parallel branch the branch fails as soon as no
        other step of that branch is live, so the join still resolves.
        """
        scope = step.branch_path
        if not scope:
            return
        if any(s.branch_path[: len(scope)] == scope for s in ctx.instance.live_steps()):
            return
        self._branch_finished(
            ctx, scope[-1], f"Branch stalled at '{step.node_id}': no outgoing edge selected"
        )

    def apply_join_update(self, ctx: AdvanceContext, parallel_id: str, update: JoinUpdate) -> None:
        parallel_step = ctx.instance.step_states[parallel_id]
        record = ctx.instance.joins[parallel_id]
        for index, branch in enumerate(update.start):
            if record.is_resolved or ctx.instance.is_terminal:
                # Resolved before these branches ran a single step
                for unstarted in update.start[index:]:
                    if unstarted.status == BranchStatus.IGNORED:
                        unstarted.status = BranchStatus.SKIPPED
                break
            scope = self.parallel.scope_for(record, branch, parallel_step.branch_path)
            self.activate(ctx, branch.target_node_id, scope)
        if update.resolved is not None:
            self._finish_parallel(ctx, parallel_step)

    def _branch_finished(self, ctx: AdvanceContext, ref: BranchRef, error: str | None) -> None:
        if error is None:
            update = self.parallel.branch_completed(ctx, ref)
        else:
            update = self.parallel.branch_failed(ctx, ref, error)
        self.apply_join_update(ctx, ref.parallel_id, update)

    def _finish_parallel(self, ctx: AdvanceContext, step: StepState) -> None:
        if step.status != StepStatus.RUNNING:
            return
        record = ctx.instance.joins[step.node_id]
        output = {
            "status": str(record.status),
            "completed_branches": record.completed_branches,
            "failed_branches": record.failed_branches,
            "branches": {b.id: str(b.status) for b in record.branches.values()},
        }
        if record.status == JoinStatus.FAILED:
            step.output = output
            self._fail_step(ctx, step, record.error or "Parallel branches failed")
            return
        status = (
            StepStatus.PARTIAL if record.status == JoinStatus.PARTIAL else StepStatus.COMPLETED
        )
        self._complete_step(ctx, step, output, status=status)

    # ------------------------------------------------------------------
    # Step transitions
    # ------------------------------------------------------------------

    def _complete_step(
        self,
        ctx: AdvanceContext,
        step: StepState,
        output,
        status: StepStatus = StepStatus.COMPLETED,
    ) -> None:
        instance = ctx.instance
        node = ctx.graph.node(step.node_id)
        kind = ctx.graph.step(step.node_id)
        ctx.cancel_step_timers(step.node_id, step.activation_id)
        step.retry_pending = False
        step.output = output

        detached = self.parallel.is_detached(instance, step.branch_path)
        edges: list[EdgeSpec] = []
        if not detached:
            edges = kind.select_edges(ctx, node, step)
            exceeded = self._loop_limit_exceeded(ctx, edges)
            if exceeded is not None:
                self._fail_step(ctx, step, exceeded)
                return

        step.status = status
        step.completed_at = ctx.timestamp
        step.error = None
        if kind.merges_output and not detached and isinstance(output, dict):
            instance.variables.update(output)
        self._record_path(ctx, step)
        logger.info(
            f"Step '{step.node_id}' {status}" + (" (ignored branch)" if detached else ""),
            extra={"event": "step_completed", "node_id": step.node_id},
        )
        ctx.notify(
            EventType.STEP_COMPLETED,
            node_id=step.node_id,
            status=str(status),
            output=output,
            detached=detached,
        )
        kind.finished(self, ctx, step)
        if detached:
            return
        kind.proceed(self, ctx, node, step, edges)

    def _fail_step(
        self,
        ctx: AdvanceContext,
        step: StepState,
        error: str,
        status: StepStatus = StepStatus.FAILED,
        recovery_tags: tuple[str, ...] = (TAG_ERROR,),
    ) -> None:
        ctx.cancel_step_timers(step.node_id, step.activation_id)
        step.status = status
        step.error = error
        step.retry_pending = False
        step.completed_at = ctx.timestamp
        self._record_path(ctx, step)
        logger.warning(
            f"Step '{step.node_id}' {status} after {step.retry_count} retries: {error}",
            extra={"event": "step_failed", "node_id": step.node_id},
        )
        ctx.notify(
            EventType.STEP_FAILED,
            node_id=step.node_id,
            status=str(status),
            error=error,
            retry_count=step.retry_count,
        )
        ctx.graph.step(step.node_id).finished(self, ctx, step)

        if self.parallel.is_detached(ctx.instance, step.branch_path):
            return

        for tag in recovery_tags:
            edges = ctx.graph.tagged_edges(step.node_id, tag)
            if not edges:
                continue
            exceeded = self._loop_limit_exceeded(ctx, edges)
            if exceeded is not None:
                error = f"{error}; {exceeded}"
                break
            logger.info(
                f"Step '{step.node_id}' recovering via '{tag}' edge",
                extra={"node_id": step.node_id},
            )
            self.traverse(ctx, step, edges)
            return

        if step.branch_path:
            self._branch_finished(ctx, step.branch_path[-1], error)
        else:
            self._fail_instance(ctx, step.node_id, error, step.retry_count)

    def _loop_limit_exceeded(self, ctx: AdvanceContext, edges: list[EdgeSpec]) -> str | None:
        for edge in edges:
            if not edge.loop:
                continue
            limit = edge.max_iterations or self.config.loop_max_iterations
            if ctx.instance.loop_counts.get(edge.id, 0) + 1 > limit:
                return f"Loop edge '{edge.id}' exceeded {limit} iterations"
        return None

    def _record_path(self, ctx: AdvanceContext, step: StepState) -> None:
        ctx.instance.execution_path.append(
            PathEntry(
                node_id=step.node_id,
                timestamp=ctx.timestamp,
                status=step.status,
                activation_id=step.activation_id,
            )
        )

    # ------------------------------------------------------------------
    # Instance transitions
    # ------------------------------------------------------------------

    def _settle(self, ctx: AdvanceContext) -> None:
        """Complete or fail the instance once nothing is left to wait for."""
        instance = ctx.instance
        if instance.status != ExecutionStatus.RUNNING:
            return
        live = [
            s
            for s in instance.live_steps()
            if not self.parallel.is_detached(instance, s.branch_path)
        ]
        if live:
            return
        if instance.end_reached:
            self._complete_instance(ctx)
        else:
            self._fail_instance(
                ctx, None, "Execution stalled: no active steps and no end node reached", 0
            )

    def _complete_instance(self, ctx: AdvanceContext) -> None:
        instance = ctx.instance
        instance.status = ExecutionStatus.COMPLETED
        instance.completed_at = ctx.timestamp
        self._close_out(ctx, StepStatus.SKIPPED)
        logger.info(
            f"Execution '{instance.id}' completed", extra={"event": "execution_completed"}
        )
        ctx.notify(
            EventType.EXECUTION_COMPLETED,
            variables=dict(instance.variables),
            recipients=list(ctx.graph.spec.settings.notifications.on_success),
        )

    def _fail_instance(
        self, ctx: AdvanceContext, node_id: str | None, error: str, retry_count: int
    ) -> None:
        instance = ctx.instance
        if instance.is_terminal:
            return
        instance.status = ExecutionStatus.FAILED
        instance.completed_at = ctx.timestamp
        instance.error_details = ErrorDetails(node_id=node_id, error=error, retry_count=retry_count)
        self._close_out(ctx, StepStatus.SKIPPED)
        logger.error(
            f"Execution '{instance.id}' failed at '{node_id}': {error}",
            extra={"event": "execution_failed", "node_id": node_id},
        )
        ctx.notify(
            EventType.EXECUTION_FAILED,
            node_id=node_id,
            error=error,
            retry_count=retry_count,
            recipients=list(ctx.graph.spec.settings.notifications.on_failure),
        )

    def _cancel(self, ctx: AdvanceContext, reason: str) -> None:
        instance = ctx.instance
        instance.status = ExecutionStatus.CANCELLED
        instance.cancelled_at = ctx.timestamp
        instance.cancel_reason = reason or None
        error = str(CancellationError(reason or "Execution cancelled"))
        self._close_out(ctx, StepStatus.CANCELLED, error=error)
        logger.info(
            f"Execution '{instance.id}' cancelled" + (f": {reason}" if reason else ""),
            extra={"event": "execution_cancelled"},
        )
        ctx.notify(EventType.EXECUTION_CANCELLED, reason=reason)

    def _close_out(
        self, ctx: AdvanceContext, step_status: StepStatus, error: str | None = None
    ) -> None:
        """Settle everything still open when the instance becomes terminal."""
        instance = ctx.instance
        for step in instance.step_states.values():
            if step.status.is_live:
                step.status = step_status
                step.error = error
                step.retry_pending = False
                step.completed_at = ctx.timestamp
        for request in instance.approvals.values():
            self.approvals.cancel(request, ctx.timestamp)
        for task in instance.ai_tasks.values():
            self.ai.cancel(task, ctx.timestamp)
        for record in instance.joins.values():
            self.parallel.cancel(ctx, record)
        ctx.cancel_all_timers()
        instance.deferred_events.clear()

    def _pause(self, ctx: AdvanceContext, reason: str) -> None:
        instance = ctx.instance
        if instance.status != ExecutionStatus.RUNNING:
            raise InvalidStateError(f"Cannot pause execution '{instance.id}' in {instance.status}")
        instance.status = ExecutionStatus.PAUSED
        instance.paused_at = ctx.timestamp
        logger.info(f"Execution '{instance.id}' paused", extra={"event": "execution_paused"})
        ctx.notify(EventType.EXECUTION_PAUSED, reason=reason)

    def _resume(self, ctx: AdvanceContext) -> None:
        instance = ctx.instance
        if instance.status != ExecutionStatus.PAUSED:
            raise InvalidStateError(
                f"Cannot resume execution '{instance.id}' in {instance.status}"
            )
        instance.status = ExecutionStatus.RUNNING
        instance.paused_at = None
        deferred = list(instance.deferred_events)
        instance.deferred_events.clear()
        logger.info(
            f"Execution '{instance.id}' resumed, applying {len(deferred)} deferred event(s)",
            extra={"event": "execution_resumed"},
        )
        ctx.notify(EventType.EXECUTION_RESUMED, deferred_events=len(deferred))

        for raw in deferred:
            if instance.is_terminal:
                break
            event = parse_event(raw)
            try:
                self._apply(ctx, event)
            except (StaleEventError, ApprovalError) as e:
                logger.warning(f"Deferred {event.type} discarded on resume: {e}")
                ctx.notify(
                    EventType.EVENT_DISCARDED,
                    node_id=getattr(event, "node_id", None),
                    event_type=event.type,
                    reason=str(e),
                )
