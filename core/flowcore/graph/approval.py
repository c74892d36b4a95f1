"""
Approval Coordinator - Multi-party decisions for Approval steps.

Decision rules by approval type:

- any: the first decision, approve or reject, is final
- all: one rejection is final; approval needs every approver
- majority: final once more than half of the approvers decided; the
  larger side wins and a tie resolves to rejected

Escalation adds approvers after a delay instead of failing the step.
Expiry either applies the configured automatic decision or leaves the
request expired, which the StepAdvancer routes like a failure.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from flowcore.errors import ApprovalError, ApprovalErrorReason, ConditionEvaluationError
from flowcore.runtime.event_bus import EventType
from flowcore.schemas.approval import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalType,
    Decision,
    DecisionRecord,
    EscalationState,
)
from flowcore.schemas.execution import StepState, TimerKind

if TYPE_CHECKING:
    from flowcore.graph.context import AdvanceContext

logger = logging.getLogger(__name__)

SYSTEM_APPROVER = "system"


class ApprovalCoordinator:
    """Owns the ApprovalRequest lifecycle for Approval steps."""

    @staticmethod
    def required_approvals(approval_type: ApprovalType, approver_count: int) -> int:
        if approval_type == ApprovalType.ANY:
            return 1
        if approval_type == ApprovalType.ALL:
            return approver_count
        return approver_count // 2 + 1

    def open(self, ctx: "AdvanceContext", node: Any, step: StepState) -> ApprovalRequest:
        """Create the request for a freshly activated Approval step and arm its timers."""
        config = node.config
        approvers = list(config.approvers)
        request = ApprovalRequest(
            id=f"{ctx.instance.id}.{ctx.next_id('approval')}",
            execution_id=ctx.instance.id,
            node_id=node.id,
            title=config.title or node.label,
            approvers=approvers,
            approval_type=config.approval_type,
            required_approvals=self.required_approvals(config.approval_type, len(approvers)),
            escalation=EscalationState(
                enabled=config.escalation.enabled,
                escalate_to=list(config.escalation.escalate_to),
            ),
            created_at=ctx.timestamp,
        )

        if config.due_in_hours is not None:
            expires_at = ctx.now + timedelta(hours=config.due_in_hours)
            request.expires_at = expires_at.isoformat()
            ctx.schedule_timer(
                TimerKind.EXPIRY, expires_at, node_id=node.id, activation_id=step.activation_id
            )
        if config.escalation.enabled:
            escalate_at = ctx.now + timedelta(hours=config.escalation.escalate_after_hours)
            request.escalation.escalate_at = escalate_at.isoformat()
            ctx.schedule_timer(
                TimerKind.ESCALATION,
                escalate_at,
                node_id=node.id,
                activation_id=step.activation_id,
            )

        ctx.instance.approvals[node.id] = request
        logger.info(
            f"Approval '{node.id}' requested from {approvers} ({config.approval_type})",
            extra={"event": "approval_requested", "node_id": node.id},
        )
        ctx.notify(
            EventType.APPROVAL_REQUESTED,
            node_id=node.id,
            request_id=request.id,
            title=request.title,
            approvers=approvers,
            approval_type=str(request.approval_type),
            expires_at=request.expires_at,
            recipients=list(ctx.graph.spec.settings.notifications.on_approval),
        )
        return request

    def decide(
        self,
        ctx: "AdvanceContext",
        request: ApprovalRequest,
        approver_id: str,
        decision: Decision,
        comment: str = "",
    ) -> Decision | None:
        """
        Record one approver's decision.

        Returns the final decision when this one makes the request
        terminal, otherwise None. Raises ApprovalError, without touching
        the request, when the decision is not acceptable.
        """
        if request.status == ApprovalStatus.EXPIRED:
            raise ApprovalError(
                ApprovalErrorReason.EXPIRED, f"Approval request '{request.id}' has expired"
            )
        if not request.is_pending:
            raise ApprovalError(
                ApprovalErrorReason.ALREADY_DECIDED,
                f"Approval request '{request.id}' is already {request.status}",
            )
        if approver_id not in request.approvers:
            raise ApprovalError(
                ApprovalErrorReason.UNAUTHORIZED,
                f"'{approver_id}' is not an approver for request '{request.id}'",
            )
        if request.has_decided(approver_id):
            raise ApprovalError(
                ApprovalErrorReason.ALREADY_DECIDED,
                f"'{approver_id}' already decided on request '{request.id}'",
            )
        expires_at = request.expires_at
        if expires_at is not None and ctx.now >= datetime.fromisoformat(expires_at):
            raise ApprovalError(
                ApprovalErrorReason.EXPIRED, f"Approval request '{request.id}' has expired"
            )

        request.decisions.append(
            DecisionRecord(
                approver_id=approver_id,
                decision=decision,
                comment=comment,
                timestamp=ctx.timestamp,
            )
        )
        if decision == Decision.APPROVED:
            request.received_approvals += 1

        outcome = self._evaluate(request)
        if outcome is not None:
            self._finalize(ctx, request, outcome)

        logger.info(
            f"Approval '{request.node_id}': {approver_id} {decision}"
            + (f", final {outcome}" if outcome else ""),
            extra={"event": "approval_decided", "node_id": request.node_id},
        )
        ctx.notify(
            EventType.APPROVAL_DECIDED,
            node_id=request.node_id,
            request_id=request.id,
            approver_id=approver_id,
            decision=str(decision),
            final_decision=str(outcome) if outcome else None,
        )
        return outcome

    def _evaluate(self, request: ApprovalRequest) -> Decision | None:
        approved = request.received_approvals
        rejected = len(request.decisions) - approved
        total = len(request.approvers)

        if request.approval_type == ApprovalType.ANY:
            return request.decisions[-1].decision if request.decisions else None
        if request.approval_type == ApprovalType.ALL:
            if rejected:
                return Decision.REJECTED
            return Decision.APPROVED if approved >= total else None
        if len(request.decisions) * 2 > total:
            return Decision.APPROVED if approved > rejected else Decision.REJECTED
        return None

    def _finalize(self, ctx: "AdvanceContext", request: ApprovalRequest, outcome: Decision) -> None:
        request.final_decision = outcome
        request.status = (
            ApprovalStatus.APPROVED if outcome == Decision.APPROVED else ApprovalStatus.REJECTED
        )
        request.responded_at = ctx.timestamp

    def escalate(self, ctx: "AdvanceContext", request: ApprovalRequest) -> bool:
        """Add escalation approvers to a still-pending request. Returns True if applied."""
        if not request.is_pending or request.escalation.escalated:
            return False
        added = [a for a in request.escalation.escalate_to if a not in request.approvers]
        request.approvers.extend(added)
        request.required_approvals = self.required_approvals(
            request.approval_type, len(request.approvers)
        )
        request.escalation.escalated = True
        request.escalation.escalated_at = ctx.timestamp
        logger.info(
            f"Approval '{request.node_id}' escalated to {added}",
            extra={"event": "approval_escalated", "node_id": request.node_id},
        )
        ctx.notify(
            EventType.APPROVAL_ESCALATED,
            node_id=request.node_id,
            request_id=request.id,
            added_approvers=added,
            approvers=list(request.approvers),
        )
        return True

    def expire(self, ctx: "AdvanceContext", node: Any, request: ApprovalRequest) -> Decision | None:
        """
        Handle a passed deadline.

        Returns the automatic decision when auto-approval applies,
        otherwise marks the request expired and returns None.
        """
        auto = node.config.auto_approve
        if auto.enabled and self._auto_conditions_hold(ctx, node.id):
            request.decisions.append(
                DecisionRecord(
                    approver_id=SYSTEM_APPROVER,
                    decision=auto.default_decision,
                    comment="Automatic decision on expiry",
                    timestamp=ctx.timestamp,
                    automatic=True,
                )
            )
            if auto.default_decision == Decision.APPROVED:
                request.received_approvals += 1
            self._finalize(ctx, request, auto.default_decision)
            logger.info(
                f"Approval '{node.id}' expired, automatic decision {auto.default_decision}",
                extra={"event": "approval_auto_decided", "node_id": node.id},
            )
            ctx.notify(
                EventType.APPROVAL_DECIDED,
                node_id=node.id,
                request_id=request.id,
                approver_id=SYSTEM_APPROVER,
                decision=str(auto.default_decision),
                final_decision=str(auto.default_decision),
                automatic=True,
            )
            return auto.default_decision

        request.status = ApprovalStatus.EXPIRED
        request.responded_at = ctx.timestamp
        logger.warning(
            f"Approval '{node.id}' expired without a decision",
            extra={"event": "approval_expired", "node_id": node.id},
        )
        ctx.notify(EventType.APPROVAL_EXPIRED, node_id=node.id, request_id=request.id)
        return None

    def _auto_conditions_hold(self, ctx: "AdvanceContext", node_id: str) -> bool:
        for condition in ctx.graph.auto_approve_conditions.get(node_id, []):
            try:
                if not condition.evaluate(ctx.instance.variables):
                    return False
            except ConditionEvaluationError as e:
                logger.warning(
                    f"Auto-approve condition for '{node_id}' could not be evaluated, "
                    f"treating as not met: {e}",
                    extra={"node_id": node_id},
                )
                return False
        return True

    @staticmethod
    def cancel(request: ApprovalRequest, timestamp: str) -> None:
        if request.is_pending:
            request.status = ApprovalStatus.CANCELLED
            request.responded_at = timestamp
