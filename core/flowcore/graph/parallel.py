"""
Parallel Fork/Join Coordinator - Branch activation and join rules.

Each Parallel step activation owns a JoinRecord in the instance. Branch
steps carry the scope they run in (``StepState.branch_path``); a branch
finishes when its path reaches the join node or an End node, or when a
step fails with no recovery edge.

Join rule by execution mode:
- all: resolve once every branch is terminal
- any / first: resolve on the first completed branch

Failure rule by failure mode:
- fail_fast: the first branch failure resolves the node as failed
- continue: wait for every branch; completed, partial, or failed if no
  branch completed
- ignore: completed once the join rule is met, whatever failed

Branches still running when the join resolves are marked ignored: they
are not interrupted, their results are recorded and discarded.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from flowcore.graph.node import ExecutionMode, FailureMode
from flowcore.runtime.event_bus import EventType
from flowcore.schemas.execution import (
    BranchRef,
    BranchState,
    BranchStatus,
    ExecutionInstance,
    JoinRecord,
    JoinStatus,
    StepState,
    TimerKind,
)

if TYPE_CHECKING:
    from flowcore.graph.context import AdvanceContext

logger = logging.getLogger(__name__)


@dataclass
class JoinUpdate:
    """What the advancer must do after a join record changed."""

    start: list[BranchState] = field(default_factory=list)
    resolved: JoinStatus | None = None


class ParallelForkJoinCoordinator:
    """Tracks branches of Parallel steps against their join records."""

    def fork(self, ctx: "AdvanceContext", node: Any, step: StepState) -> JoinUpdate:
        """Open the join record for a Parallel activation and pick the first branches."""
        config = node.config
        record = JoinRecord(
            parallel_id=node.id,
            activation_id=step.activation_id,
            join_node_id=ctx.graph.join_nodes.get(node.id),
            execution_mode=config.execution_mode,
            failure_mode=config.failure_mode,
            max_concurrency=config.max_concurrency,
            branches={
                b.id: BranchState(id=b.id, target_node_id=b.target_node_id)
                for b in config.branches
            },
            queue=[b.id for b in config.branches],
        )
        ctx.instance.joins[node.id] = record

        if config.timeout_minutes is not None:
            ctx.schedule_timer(
                TimerKind.PARALLEL_TIMEOUT,
                ctx.now + timedelta(minutes=config.timeout_minutes),
                node_id=node.id,
                activation_id=step.activation_id,
            )

        started = self._take_startable(ctx, record)
        logger.info(
            f"Parallel '{node.id}' forked {len(record.branches)} branch(es), "
            f"{len(started)} started, join at {record.join_node_id or '<end>'}",
            extra={"event": "parallel_forked", "node_id": node.id},
        )
        return JoinUpdate(start=started)

    def scope_for(self, record: JoinRecord, branch: BranchState, parent: list[BranchRef]):
        return [
            *parent,
            BranchRef(
                parallel_id=record.parallel_id,
                branch_id=branch.id,
                activation_id=record.activation_id,
            ),
        ]

    def branch_completed(self, ctx: "AdvanceContext", ref: BranchRef) -> JoinUpdate:
        return self._branch_finished(ctx, ref, BranchStatus.COMPLETED, None)

    def branch_failed(self, ctx: "AdvanceContext", ref: BranchRef, error: str) -> JoinUpdate:
        return self._branch_finished(ctx, ref, BranchStatus.FAILED, error)

    def timeout(self, ctx: "AdvanceContext", parallel_id: str) -> JoinUpdate:
        record = ctx.instance.joins.get(parallel_id)
        if record is None or record.is_resolved:
            return JoinUpdate()
        record.error = f"Parallel node '{parallel_id}' timed out"
        self._resolve(ctx, record, JoinStatus.FAILED)
        return JoinUpdate(resolved=JoinStatus.FAILED)

    def cancel(self, ctx: "AdvanceContext", record: JoinRecord) -> None:
        if not record.is_resolved:
            self._close_branches(record, ctx.timestamp)
            record.status = JoinStatus.CANCELLED

    @staticmethod
    def is_detached(instance: ExecutionInstance, branch_path: list[BranchRef]) -> bool:
        """True if any enclosing branch is no longer running (its join resolved)."""
        for ref in branch_path:
            record = instance.joins.get(ref.parallel_id)
            if record is None or record.activation_id != ref.activation_id:
                return True
            if record.is_resolved:
                return True
            branch = record.branches.get(ref.branch_id)
            if branch is None or branch.status != BranchStatus.RUNNING:
                return True
        return False

    # ------------------------------------------------------------------

    def _branch_finished(
        self,
        ctx: "AdvanceContext",
        ref: BranchRef,
        outcome: BranchStatus,
        error: str | None,
    ) -> JoinUpdate:
        record = ctx.instance.joins[ref.parallel_id]
        branch = record.branches[ref.branch_id]
        if record.is_resolved or branch.status != BranchStatus.RUNNING:
            branch.late_outcome = str(outcome)
            logger.debug(
                f"Late {outcome} of branch '{ref.branch_id}' in '{ref.parallel_id}' recorded",
                extra={"node_id": ref.parallel_id},
            )
            return JoinUpdate()

        branch.status = outcome
        branch.completed_at = ctx.timestamp
        branch.error = error
        if outcome == BranchStatus.COMPLETED:
            record.completed_branches += 1
        else:
            record.failed_branches += 1
        logger.info(
            f"Branch '{ref.branch_id}' of '{ref.parallel_id}' {outcome} "
            f"({record.completed_branches} completed, {record.failed_branches} failed "
            f"of {len(record.branches)})",
            extra={"event": "branch_finished", "node_id": ref.parallel_id},
        )

        resolution = self._resolution(record)
        if resolution is not None:
            self._resolve(ctx, record, resolution)
            return JoinUpdate(resolved=resolution)
        return JoinUpdate(start=self._take_startable(ctx, record))

    def _resolution(self, record: JoinRecord) -> JoinStatus | None:
        completed = record.completed_branches
        failed = record.failed_branches

        if failed and record.failure_mode == FailureMode.FAIL_FAST:
            return JoinStatus.FAILED
        if record.execution_mode in (ExecutionMode.ANY, ExecutionMode.FIRST) and completed:
            if failed and record.failure_mode == FailureMode.CONTINUE:
                return JoinStatus.PARTIAL
            return JoinStatus.COMPLETED
        if completed + failed < len(record.branches):
            return None

        if record.failure_mode == FailureMode.IGNORE:
            return JoinStatus.COMPLETED
        if completed == 0:
            return JoinStatus.FAILED
        return JoinStatus.PARTIAL if failed else JoinStatus.COMPLETED

    def _resolve(self, ctx: "AdvanceContext", record: JoinRecord, status: JoinStatus) -> None:
        record.status = status
        self._close_branches(record, ctx.timestamp)
        ctx.cancel_step_timers(record.parallel_id, record.activation_id)
        if status == JoinStatus.FAILED and record.error is None:
            failures = [b.error for b in record.branches.values() if b.error]
            record.error = failures[0] if failures else "All branches failed"

        logger.info(
            f"Parallel '{record.parallel_id}' resolved {status}",
            extra={"event": "parallel_resolved", "node_id": record.parallel_id},
        )
        ctx.notify(
            EventType.PARALLEL_RESOLVED,
            node_id=record.parallel_id,
            status=str(status),
            branches={b.id: str(b.status) for b in record.branches.values()},
        )

    @staticmethod
    def _close_branches(record: JoinRecord, timestamp: str) -> None:
        for branch in record.branches.values():
            if branch.status == BranchStatus.QUEUED:
                branch.status = BranchStatus.SKIPPED
                branch.completed_at = timestamp
            elif branch.status == BranchStatus.RUNNING:
                branch.status = BranchStatus.IGNORED
        record.queue.clear()

    @staticmethod
    def _take_startable(ctx: "AdvanceContext", record: JoinRecord) -> list[BranchState]:
        limit = record.max_concurrency or len(record.branches)
        started = []
        while record.queue and record.running_branches < limit:
            branch = record.branches[record.queue.pop(0)]
            branch.status = BranchStatus.RUNNING
            branch.started_at = ctx.timestamp
            record.started_branches += 1
            started.append(branch)
        return started
