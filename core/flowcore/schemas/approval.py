"""
Approval Schema - Multi-party decision records for Approval steps.

One ApprovalRequest exists per active Approval step instance. It is
persisted inside the execution snapshot and mutated only by the
ApprovalCoordinator.
"""

from enum import StrEnum

from pydantic import BaseModel, Field


class Decision(StrEnum):
    """A single approver's verdict, also the request's final outcome."""

    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalType(StrEnum):
    """How individual decisions combine into a final outcome."""

    ANY = "any"  # First decision is final
    ALL = "all"  # Unanimous approval, any rejection is final
    MAJORITY = "majority"  # More than half of the approvers decided


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class DecisionRecord(BaseModel):
    """One approver's recorded decision."""

    approver_id: str
    decision: Decision
    comment: str = ""
    timestamp: str  # ISO 8601
    automatic: bool = False

    model_config = {"extra": "allow"}


class EscalationState(BaseModel):
    """Runtime escalation bookkeeping for a request."""

    enabled: bool = False
    escalate_at: str | None = None  # ISO 8601
    escalate_to: list[str] = Field(default_factory=list)
    escalated: bool = False
    escalated_at: str | None = None


class ApprovalRequest(BaseModel):
    """
    Decision accumulator for one Approval step activation.

    Invariants:
    - received_approvals never exceeds len(decisions)
    - once status leaves PENDING no further decisions are accepted
    """

    id: str
    execution_id: str
    node_id: str
    title: str = ""
    approvers: list[str]
    approval_type: ApprovalType = ApprovalType.ANY
    status: ApprovalStatus = ApprovalStatus.PENDING
    decisions: list[DecisionRecord] = Field(default_factory=list)
    required_approvals: int = 1
    received_approvals: int = 0
    final_decision: Decision | None = None
    escalation: EscalationState = Field(default_factory=EscalationState)
    created_at: str
    expires_at: str | None = None
    responded_at: str | None = None

    model_config = {"extra": "allow"}

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def has_decided(self, approver_id: str) -> bool:
        return any(d.approver_id == approver_id for d in self.decisions)
