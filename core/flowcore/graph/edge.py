"""
Edge Protocol - How nodes connect in a workflow graph.

An edge always fires after its source completes, unless its source
selects among tagged edges:

- conditional sources: exactly one of the "true" / "false" edges fires
- parallel sources: edges tagged with a branch id mirror the branch list
- approval sources: "approved" / "rejected" edges fire on the matching
  outcome, untagged edges always fire
- "error" edges are recovery paths, followed only when the source fails
- "expired" edges are followed when an approval expires

Edges flagged ``loop`` may point backwards (e.g. "resubmit" in a review
cycle). The graph without loop edges must be acyclic, and each loop edge
carries an iteration cap.
"""

from typing import Any

from pydantic import BaseModel, Field

from flowcore.graph.node import NodeKind, NodeSpec, RetryPolicy, VariableSpec

TAG_TRUE = "true"
TAG_FALSE = "false"
TAG_ERROR = "error"
TAG_EXPIRED = "expired"
TAG_APPROVED = "approved"
TAG_REJECTED = "rejected"

# Edges with these tags never fire on normal completion
RECOVERY_TAGS = frozenset({TAG_ERROR, TAG_EXPIRED})


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Unconditional transition
        EdgeSpec(id="e1", source="start", target="review")

        # Conditional routing
        EdgeSpec(id="big", source="check_amount", target="cfo", branch_tag="true")

        # Recovery path
        EdgeSpec(id="on-error", source="charge", target="refund", branch_tag="error")

        # Backward edge with an iteration guard
        EdgeSpec(id="resubmit", source="legal", target="draft", loop=True, max_iterations=3)
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    branch_tag: str | None = None
    loop: bool = False
    max_iterations: int | None = Field(default=None, ge=1)
    description: str = ""

    model_config = {"frozen": True, "extra": "allow"}

    @property
    def is_recovery(self) -> bool:
        return self.branch_tag in RECOVERY_TAGS


class NotificationSettings(BaseModel):
    on_success: list[str] = Field(default_factory=list)
    on_failure: list[str] = Field(default_factory=list)
    on_approval: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class GraphSettings(BaseModel):
    """Workflow-wide defaults."""

    timeout_minutes: float | None = Field(default=None, gt=0)
    retry_policy: RetryPolicy | None = None
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    model_config = {"frozen": True}


class GraphSpec(BaseModel):
    """
    Complete, immutable definition of a workflow.

    Example:
        GraphSpec(
            id="purchase-approval",
            name="Purchase Approval",
            nodes=[
                StartNode(id="start"),
                ApprovalNode(id="manager", config=ApprovalConfig(approvers=["m1"])),
                EndNode(id="end"),
            ],
            edges=[
                EdgeSpec(id="e1", source="start", target="manager"),
                EdgeSpec(id="e2", source="manager", target="end"),
            ],
        )
    """

    id: str
    name: str = ""
    version: int = Field(default=1, ge=1)
    description: str = ""

    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    variable_schema: dict[str, VariableSpec] = Field(default_factory=dict)
    settings: GraphSettings = Field(default_factory=GraphSettings)

    model_config = {"frozen": True, "extra": "allow"}

    def get_node(self, node_id: str) -> Any | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> EdgeSpec | None:
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def nodes_of_kind(self, kind: NodeKind) -> list[Any]:
        return [node for node in self.nodes if node.kind == kind]

    def variables_json_schema(self) -> dict[str, Any]:
        """JSON schema (draft 7) that instance variables must satisfy."""
        return {
            "type": "object",
            "properties": {name: var.json_schema() for name, var in self.variable_schema.items()},
            "required": [name for name, var in self.variable_schema.items() if var.required],
        }

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def successors(self, node_id: str, include_loops: bool = True) -> list[str]:
        """Node IDs directly reachable from node_id, including parallel branch targets."""
        targets = [
            e.target for e in self.get_outgoing_edges(node_id) if include_loops or not e.loop
        ]
        node = self.get_node(node_id)
        if node is not None and node.kind == NodeKind.PARALLEL:
            for branch in node.config.branches:
                if branch.target_node_id not in targets:
                    targets.append(branch.target_node_id)
        return targets
