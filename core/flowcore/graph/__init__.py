"""Graph definitions: nodes, edges, settings and the condition language."""

from flowcore.graph.conditions import CompiledCondition, ConditionEvaluator
from flowcore.graph.edge import (
    RECOVERY_TAGS,
    TAG_APPROVED,
    TAG_ERROR,
    TAG_EXPIRED,
    TAG_FALSE,
    TAG_REJECTED,
    TAG_TRUE,
    EdgeSpec,
    GraphSettings,
    GraphSpec,
    NotificationSettings,
)
from flowcore.graph.node import (
    AIAgentConfig,
    AIAgentNode,
    ApprovalConfig,
    ApprovalNode,
    AutoApproveConfig,
    BranchSpec,
    ConditionalConfig,
    ConditionalNode,
    EndNode,
    EscalationConfig,
    ExecutionMode,
    FailureMode,
    NodeKind,
    NodeSpec,
    ParallelConfig,
    ParallelNode,
    RetryPolicy,
    StartNode,
    TaskConfig,
    TaskNode,
    VariableSpec,
    VariableType,
)

__all__ = [
    # Nodes
    "NodeKind",
    "NodeSpec",
    "StartNode",
    "EndNode",
    "TaskNode",
    "ApprovalNode",
    "AIAgentNode",
    "ConditionalNode",
    "ParallelNode",
    "TaskConfig",
    "ApprovalConfig",
    "EscalationConfig",
    "AutoApproveConfig",
    "AIAgentConfig",
    "ConditionalConfig",
    "ParallelConfig",
    "BranchSpec",
    "ExecutionMode",
    "FailureMode",
    "RetryPolicy",
    "VariableSpec",
    "VariableType",
    # Edges and graph
    "EdgeSpec",
    "GraphSpec",
    "GraphSettings",
    "NotificationSettings",
    "TAG_TRUE",
    "TAG_FALSE",
    "TAG_ERROR",
    "TAG_EXPIRED",
    "TAG_APPROVED",
    "TAG_REJECTED",
    "RECOVERY_TAGS",
    # Conditions
    "ConditionEvaluator",
    "CompiledCondition",
]
