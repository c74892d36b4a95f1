"""
Step kinds - One implementation per node kind.

The implementation for every node is chosen once, when the graph is
compiled (see ``step_for``). The StepAdvancer only ever calls the
uniform StepKind interface; it never branches on node kind itself.

``activate`` returns:
- Immediate(output): the step finished synchronously (control nodes)
- ImmediateFailure(error): the step failed synchronously
- None: the step now waits for an event (handler result, decision, branches)
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from flowcore.errors import ConditionEvaluationError
from flowcore.graph.context import AdvanceContext, DispatchStep
from flowcore.graph.edge import TAG_FALSE, TAG_TRUE, EdgeSpec
from flowcore.graph.node import NodeKind, RetryPolicy
from flowcore.schemas.execution import StepState, StepStatus, TimerKind

if TYPE_CHECKING:
    from flowcore.graph.advancer import StepAdvancer


@dataclass
class Immediate:
    output: dict[str, Any] = field(default_factory=dict)


@dataclass
class ImmediateFailure:
    error: str


Activation = Immediate | ImmediateFailure | None


class StepKind:
    """Uniform behaviour of a node kind inside the StepAdvancer."""

    kind: ClassVar[NodeKind]
    initial_status: ClassVar[StepStatus] = StepStatus.RUNNING
    # Completion arrives as an external StepCompleted / StepFailed
    external: ClassVar[bool] = False
    # Mapping outputs are merged into instance variables
    merges_output: ClassVar[bool] = False

    def activate(
        self, advancer: "StepAdvancer", ctx: AdvanceContext, node: Any, step: StepState
    ) -> Activation:
        raise NotImplementedError

    def select_edges(self, ctx: AdvanceContext, node: Any, step: StepState) -> list[EdgeSpec]:
        """Edges that fire when this step completes."""
        return [e for e in ctx.graph.forward_edges(node.id) if e.branch_tag is None]

    def proceed(
        self,
        advancer: "StepAdvancer",
        ctx: AdvanceContext,
        node: Any,
        step: StepState,
        edges: list[EdgeSpec],
    ) -> None:
        """Continue the instance after this step completed."""
        if edges:
            advancer.traverse(ctx, step, edges)
        else:
            advancer.dead_end(ctx, step)

    def retry_policy(self, advancer: "StepAdvancer", ctx: AdvanceContext, node: Any):
        """Retry policy for retryable failures, or None if the kind never retries."""
        return None

    def dispatch(
        self, advancer: "StepAdvancer", ctx: AdvanceContext, node: Any, step: StepState
    ) -> None:
        """Start (or restart after a retry delay) the work for this step."""

    def retry_scheduled(self, advancer: "StepAdvancer", ctx: AdvanceContext, step: StepState):
        pass

    def finished(self, advancer: "StepAdvancer", ctx: AdvanceContext, step: StepState) -> None:
        """Hook run once the step reached a terminal status."""


class StartStep(StepKind):
    kind = NodeKind.START

    def activate(self, advancer, ctx, node, step):
        return Immediate()


class EndStep(StepKind):
    kind = NodeKind.END

    def activate(self, advancer, ctx, node, step):
        return Immediate()

    def select_edges(self, ctx, node, step):
        return []

    def proceed(self, advancer, ctx, node, step, edges):
        advancer.reach_end(ctx, step)


class _HandlerStep(StepKind):
    """Shared dispatch, timeout and retry behaviour of Task and AIAgent steps."""

    external = True
    merges_output = True

    def retry_policy(self, advancer, ctx, node) -> RetryPolicy:
        return advancer.retry.resolve_policy(
            node.config.retry_policy, ctx.graph.spec.settings.retry_policy
        )

    def _arm_timeout(self, ctx: AdvanceContext, node: Any, step: StepState) -> None:
        minutes = node.config.timeout_minutes
        if minutes is not None:
            ctx.schedule_timer(
                TimerKind.TIMEOUT,
                ctx.now + timedelta(minutes=minutes),
                node_id=node.id,
                activation_id=step.activation_id,
                attempt=step.retry_count,
            )


class TaskStep(_HandlerStep):
    kind = NodeKind.TASK

    def activate(self, advancer, ctx, node, step):
        step.input = {**ctx.instance.variables, **node.config.parameters}
        self.dispatch(advancer, ctx, node, step)
        return None

    def dispatch(self, advancer, ctx, node, step):
        self._arm_timeout(ctx, node, step)
        ctx.dispatch(
            DispatchStep(
                node_id=node.id,
                kind=NodeKind.TASK,
                handler_key=node.config.task_type,
                activation_id=step.activation_id,
                attempt=step.retry_count,
                input=dict(step.input),
                parameters=dict(node.config.parameters),
            )
        )


class AIAgentStep(_HandlerStep):
    kind = NodeKind.AI_AGENT

    def activate(self, advancer, ctx, node, step):
        advancer.ai.open(ctx, node, step)
        self.dispatch(advancer, ctx, node, step)
        return None

    def dispatch(self, advancer, ctx, node, step):
        self._arm_timeout(ctx, node, step)
        advancer.ai.dispatch(ctx, node, step)

    def retry_scheduled(self, advancer, ctx, step):
        advancer.ai.retry_scheduled(ctx, step)

    def finished(self, advancer, ctx, step):
        advancer.ai.finished(ctx, step)


class ApprovalStep(StepKind):
    kind = NodeKind.APPROVAL
    initial_status = StepStatus.WAITING_APPROVAL

    def activate(self, advancer, ctx, node, step):
        advancer.approvals.open(ctx, node, step)
        return None

    def select_edges(self, ctx, node, step):
        decision = (step.output or {}).get("decision")
        return [e for e in ctx.graph.forward_edges(node.id) if e.branch_tag in (None, decision)]


class ConditionalStep(StepKind):
    kind = NodeKind.CONDITIONAL

    def activate(self, advancer, ctx, node, step):
        condition = ctx.graph.conditions[node.id]
        step.input = {"condition": condition.expression}
        try:
            result = condition.evaluate(ctx.instance.variables)
        except ConditionEvaluationError as e:
            return ImmediateFailure(str(e))
        return Immediate({"condition_result": result})

    def select_edges(self, ctx, node, step):
        tag = TAG_TRUE if step.output["condition_result"] else TAG_FALSE
        return ctx.graph.tagged_edges(node.id, tag)[:1]


class ParallelStep(StepKind):
    kind = NodeKind.PARALLEL

    def activate(self, advancer, ctx, node, step):
        update = advancer.parallel.fork(ctx, node, step)
        advancer.apply_join_update(ctx, node.id, update)
        return None

    def proceed(self, advancer, ctx, node, step, edges):
        join_node_id = ctx.graph.join_nodes.get(node.id)
        if join_node_id is not None:
            advancer.activate(ctx, join_node_id, list(step.branch_path))
        elif edges:
            advancer.traverse(ctx, step, edges)
        else:
            advancer.reach_end(ctx, step)


_STEP_KINDS: dict[NodeKind, StepKind] = {
    step.kind: step
    for step in (
        StartStep(),
        EndStep(),
        TaskStep(),
        AIAgentStep(),
        ApprovalStep(),
        ConditionalStep(),
        ParallelStep(),
    )
}


def step_for(node: Any) -> StepKind:
    """Select the step implementation for a node. Called once per node at compile time."""
    return _STEP_KINDS[node.kind]
