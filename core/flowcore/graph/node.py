"""
Node Protocol - The step kinds a workflow graph is built from.

Nodes are a closed tagged union discriminated on ``kind``. Each kind
carries its own typed config; the engine picks the matching step
implementation once, when the graph is compiled at registration.

Kinds:
- start: single entry point, completes immediately
- end: terminal node, completes the instance (or a parallel branch)
- task: unit of work executed by a registered task handler
- approval: human decision gate (any / all / majority)
- ai_agent: unit of work executed by a model-keyed AI handler
- conditional: routes along the "true" or "false" edge
- parallel: fork/join over a fixed list of branches
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

import jsonschema
from pydantic import BaseModel, Field

from flowcore.schemas.approval import ApprovalType, Decision


class NodeKind(StrEnum):
    START = "start"
    END = "end"
    TASK = "task"
    APPROVAL = "approval"
    AI_AGENT = "ai_agent"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"


class ExecutionMode(StrEnum):
    """When a parallel join fires."""

    ALL = "all"  # Every branch reached a terminal state
    ANY = "any"  # First branch completed
    FIRST = "first"  # Same as ANY


class FailureMode(StrEnum):
    """How branch failures affect a parallel node."""

    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"
    IGNORE = "ignore"


class VariableType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


# ---------------------------------------------------------------------------
# Kind-specific configuration
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Backoff policy: delay = retry_delay * backoff_multiplier ** retry_count."""

    max_retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=60.0, ge=0, description="Base delay in seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    model_config = {"frozen": True}


class TaskConfig(BaseModel):
    task_type: str = Field(description="Handler registry key")
    timeout_minutes: float | None = Field(default=None, gt=0)
    retry_policy: RetryPolicy | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class EscalationConfig(BaseModel):
    enabled: bool = False
    escalate_after_hours: float = Field(default=24.0, gt=0)
    escalate_to: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class AutoApproveConfig(BaseModel):
    """Automatic decision applied when an approval expires."""

    enabled: bool = False
    conditions: list[str] = Field(
        default_factory=list,
        description="Restricted expressions; all must hold for the automatic decision",
    )
    default_decision: Decision = Decision.APPROVED

    model_config = {"frozen": True}


class ApprovalConfig(BaseModel):
    title: str = ""
    approvers: list[str] = Field(default_factory=list)
    approval_type: ApprovalType = ApprovalType.ANY
    due_in_hours: float | None = Field(default=None, gt=0, description="Expiry offset")
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    auto_approve: AutoApproveConfig = Field(default_factory=AutoApproveConfig)

    model_config = {"frozen": True}


class AIAgentConfig(BaseModel):
    model: str = Field(description="Handler registry key for the AI capability")
    prompt: str
    system_prompt: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)
    timeout_minutes: float | None = Field(default=None, gt=0)
    retry_policy: RetryPolicy | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ConditionalConfig(BaseModel):
    condition: str
    true_edge_id: str | None = None
    false_edge_id: str | None = None

    model_config = {"frozen": True}


class BranchSpec(BaseModel):
    """A parallel branch, fixed at registration."""

    id: str
    target_node_id: str
    label: str = ""

    model_config = {"frozen": True}


class ParallelConfig(BaseModel):
    branches: list[BranchSpec] = Field(default_factory=list)
    execution_mode: ExecutionMode = ExecutionMode.ALL
    failure_mode: FailureMode = FailureMode.FAIL_FAST
    max_concurrency: int | None = Field(default=None, ge=1)
    timeout_minutes: float | None = Field(default=None, gt=0)
    join_node_id: str | None = Field(
        default=None, description="Convergence node; computed at registration when omitted"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class _NodeBase(BaseModel):
    id: str
    name: str = ""
    description: str = ""

    model_config = {"frozen": True, "extra": "allow"}

    @property
    def label(self) -> str:
        return self.name or self.id


class StartNode(_NodeBase):
    kind: Literal[NodeKind.START] = NodeKind.START


class EndNode(_NodeBase):
    kind: Literal[NodeKind.END] = NodeKind.END


class TaskNode(_NodeBase):
    kind: Literal[NodeKind.TASK] = NodeKind.TASK
    config: TaskConfig


class ApprovalNode(_NodeBase):
    kind: Literal[NodeKind.APPROVAL] = NodeKind.APPROVAL
    config: ApprovalConfig


class AIAgentNode(_NodeBase):
    kind: Literal[NodeKind.AI_AGENT] = NodeKind.AI_AGENT
    config: AIAgentConfig


class ConditionalNode(_NodeBase):
    kind: Literal[NodeKind.CONDITIONAL] = NodeKind.CONDITIONAL
    config: ConditionalConfig


class ParallelNode(_NodeBase):
    kind: Literal[NodeKind.PARALLEL] = NodeKind.PARALLEL
    config: ParallelConfig


NodeSpec = Annotated[
    StartNode | EndNode | TaskNode | ApprovalNode | AIAgentNode | ConditionalNode | ParallelNode,
    Field(discriminator="kind"),
]


class VariableSpec(BaseModel):
    """Declared workflow variable."""

    type: VariableType = VariableType.STRING
    required: bool = False
    default: Any = None
    description: str = ""

    model_config = {"frozen": True}

    def json_schema(self) -> dict[str, Any]:
        """Draft 7 fragment for this variable. Optional variables may be null."""
        if self.required:
            return {"type": self.type.value}
        return {"type": [self.type.value, "null"]}

    def matches(self, value: Any) -> bool:
        """True if value has the declared JSON type."""
        return jsonschema.Draft7Validator({"type": self.type.value}).is_valid(value)
