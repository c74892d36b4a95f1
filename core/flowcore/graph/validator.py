"""
Graph Validator - Registration-time checks and compilation.

A definition that passes validation is compiled once into a
CompiledGraph: conditions are parsed, each node's step implementation is
selected, and parallel join nodes are resolved. Nothing about graph
structure is re-derived while instances run.

Every violation is collected; ValidationError lists all of them.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flowcore.errors import ConditionEvaluationError, ValidationError
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
    GraphSpec,
)
from flowcore.graph.node import NodeKind
from flowcore.graph.steps import StepKind, step_for

logger = logging.getLogger(__name__)

_APPROVAL_TAGS = frozenset({TAG_APPROVED, TAG_REJECTED, TAG_EXPIRED})
_CONDITIONAL_TAGS = frozenset({TAG_TRUE, TAG_FALSE})


@dataclass
class CompiledGraph:
    """A validated definition plus everything precomputed for execution."""

    spec: GraphSpec
    start_node_id: str
    nodes: dict[str, Any]
    steps: dict[str, StepKind]
    outgoing: dict[str, list[EdgeSpec]]
    conditions: dict[str, CompiledCondition] = field(default_factory=dict)
    auto_approve_conditions: dict[str, list[CompiledCondition]] = field(default_factory=dict)
    join_nodes: dict[str, str | None] = field(default_factory=dict)

    @property
    def workflow_id(self) -> str:
        return self.spec.id

    @property
    def version(self) -> int:
        return self.spec.version

    def node(self, node_id: str) -> Any:
        return self.nodes[node_id]

    def step(self, node_id: str) -> StepKind:
        return self.steps[node_id]

    def edges_from(self, node_id: str) -> list[EdgeSpec]:
        return self.outgoing.get(node_id, [])

    def tagged_edges(self, node_id: str, tag: str) -> list[EdgeSpec]:
        return [e for e in self.edges_from(node_id) if e.branch_tag == tag]

    def forward_edges(self, node_id: str) -> list[EdgeSpec]:
        """Outgoing edges that fire on normal completion (recovery paths excluded)."""
        return [e for e in self.edges_from(node_id) if not e.is_recovery]


def _format_pydantic_errors(error: PydanticValidationError) -> list[str]:
    errors = []
    for item in error.errors():
        field_path = ".".join(str(loc) for loc in item["loc"])
        errors.append(f"{field_path}: {item['msg']} (type: {item['type']})")
    return errors


class GraphValidator:
    """
    Validates workflow definitions and compiles them for execution.

    Usage:
        validator = GraphValidator()
        compiled = validator.compile(definition_dict)   # raises ValidationError
        problems = validator.validate(graph_spec)       # list[str], empty if valid
    """

    def __init__(self, evaluator: ConditionEvaluator | None = None):
        self.evaluator = evaluator or ConditionEvaluator()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def parse(self, definition: GraphSpec | dict[str, Any]) -> GraphSpec:
        """Coerce a raw definition into a GraphSpec, reporting every schema error."""
        if isinstance(definition, GraphSpec):
            return definition
        try:
            return GraphSpec.model_validate(definition)
        except PydanticValidationError as e:
            raise ValidationError(_format_pydantic_errors(e)) from e

    def compile(self, definition: GraphSpec | dict[str, Any]) -> CompiledGraph:
        graph = self.parse(definition)
        errors = self.validate(graph)
        if errors:
            logger.warning(
                f"Workflow '{graph.id}' v{graph.version} rejected with {len(errors)} error(s)"
            )
            raise ValidationError(errors)

        start = graph.nodes_of_kind(NodeKind.START)[0]
        outgoing: dict[str, list[EdgeSpec]] = {node.id: [] for node in graph.nodes}
        for edge in graph.edges:
            outgoing[edge.source].append(edge)

        compiled = CompiledGraph(
            spec=graph,
            start_node_id=start.id,
            nodes={node.id: node for node in graph.nodes},
            steps={node.id: step_for(node) for node in graph.nodes},
            outgoing=outgoing,
        )
        for node in graph.nodes_of_kind(NodeKind.CONDITIONAL):
            compiled.conditions[node.id] = self.evaluator.compile(node.config.condition)
        for node in graph.nodes_of_kind(NodeKind.APPROVAL):
            compiled.auto_approve_conditions[node.id] = [
                self.evaluator.compile(expr) for expr in node.config.auto_approve.conditions
            ]
        for node in graph.nodes_of_kind(NodeKind.PARALLEL):
            compiled.join_nodes[node.id] = node.config.join_node_id or self._compute_join(
                graph, node
            )
        logger.debug(f"Compiled workflow '{graph.id}' v{graph.version}")
        return compiled

    def validate(self, graph: GraphSpec) -> list[str]:
        """Return every structural violation found in the definition."""
        errors: list[str] = []
        node_ids = graph.node_ids()

        errors.extend(self._check_unique_ids(graph))

        starts = graph.nodes_of_kind(NodeKind.START)
        if len(starts) != 1:
            errors.append(f"Workflow must have exactly one start node, found {len(starts)}")
        if not graph.nodes_of_kind(NodeKind.END):
            errors.append("Workflow must have at least one end node")

        for edge in graph.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target not in node_ids:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        for node in graph.nodes:
            errors.extend(self._check_node(graph, node))

        errors.extend(self._check_edge_tags(graph))
        errors.extend(self._check_variable_schema(graph))

        structural_ok = (
            len(starts) == 1
            and len(node_ids) == len(graph.nodes)
            and all(e.source in node_ids and e.target in node_ids for e in graph.edges)
            and all(
                b.target_node_id in node_ids
                for n in graph.nodes_of_kind(NodeKind.PARALLEL)
                for b in n.config.branches
            )
        )
        if structural_ok:
            errors.extend(self._check_acyclic(graph))
            errors.extend(self._check_reachability(graph, starts[0].id))
            errors.extend(self._check_branch_regions(graph))

        return errors

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _check_unique_ids(self, graph: GraphSpec) -> list[str]:
        errors = []
        seen: set[str] = set()
        for node in graph.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)
        seen = set()
        for edge in graph.edges:
            if edge.id in seen:
                errors.append(f"Duplicate edge id '{edge.id}'")
            seen.add(edge.id)
        return errors

    def _check_node(self, graph: GraphSpec, node: Any) -> list[str]:
        errors: list[str] = []
        outgoing = graph.get_outgoing_edges(node.id)

        if node.kind == NodeKind.START and graph.get_incoming_edges(node.id):
            errors.append(f"Start node '{node.id}' must not have incoming edges")

        elif node.kind == NodeKind.END and outgoing:
            errors.append(f"End node '{node.id}' must not have outgoing edges")

        elif node.kind == NodeKind.CONDITIONAL:
            errors.extend(self._check_condition(node.id, node.config.condition))
            routing = [e for e in outgoing if not e.is_recovery]
            tags = sorted(e.branch_tag or "<untagged>" for e in routing)
            if tags != [TAG_FALSE, TAG_TRUE]:
                errors.append(
                    f"Conditional node '{node.id}' must have exactly two outgoing edges "
                    f"tagged 'true' and 'false', found {tags}"
                )
            for attr, tag in (("true_edge_id", TAG_TRUE), ("false_edge_id", TAG_FALSE)):
                edge_id = getattr(node.config, attr)
                if edge_id is None:
                    continue
                edge = graph.get_edge(edge_id)
                if edge is None or edge.source != node.id or edge.branch_tag != tag:
                    errors.append(
                        f"Conditional node '{node.id}' {attr} '{edge_id}' must be an outgoing "
                        f"edge tagged '{tag}'"
                    )

        elif node.kind == NodeKind.APPROVAL:
            config = node.config
            if not config.approvers:
                errors.append(f"Approval node '{node.id}' must have at least one approver")
            if len(set(config.approvers)) != len(config.approvers):
                errors.append(f"Approval node '{node.id}' lists an approver more than once")
            if config.escalation.enabled and not config.escalation.escalate_to:
                errors.append(
                    f"Approval node '{node.id}' enables escalation without escalate_to approvers"
                )
            for expression in config.auto_approve.conditions:
                errors.extend(self._check_condition(node.id, expression))
            routing = [e for e in outgoing if not e.is_recovery]
            tags = {e.branch_tag for e in routing}
            if tags and None not in tags:
                missing = sorted({TAG_APPROVED, TAG_REJECTED} - tags)
                if missing:
                    errors.append(
                        f"Approval node '{node.id}' has no edge for decision(s) {missing}; "
                        "tag an edge for each outcome or add an untagged edge"
                    )

        elif node.kind == NodeKind.PARALLEL:
            errors.extend(self._check_parallel(graph, node))

        return errors

    def _check_condition(self, node_id: str, expression: str) -> list[str]:
        try:
            self.evaluator.compile(expression)
        except ConditionEvaluationError as e:
            return [f"Node '{node_id}' has an invalid condition: {e}"]
        return []

    def _check_parallel(self, graph: GraphSpec, node: Any) -> list[str]:
        errors = []
        config = node.config
        node_ids = graph.node_ids()
        if not config.branches:
            errors.append(f"Parallel node '{node.id}' must declare at least one branch")

        branch_ids: set[str] = set()
        targets: set[str] = set()
        for branch in config.branches:
            if branch.id in branch_ids:
                errors.append(f"Parallel node '{node.id}' has duplicate branch id '{branch.id}'")
            branch_ids.add(branch.id)
            if branch.target_node_id not in node_ids:
                errors.append(
                    f"Parallel node '{node.id}' branch '{branch.id}' targets missing node "
                    f"'{branch.target_node_id}'"
                )
            elif branch.target_node_id == node.id:
                errors.append(f"Parallel node '{node.id}' branch '{branch.id}' targets itself")
            if branch.target_node_id in targets:
                errors.append(
                    f"Parallel node '{node.id}' has several branches targeting "
                    f"'{branch.target_node_id}'"
                )
            targets.add(branch.target_node_id)

        by_id = {b.id: b for b in config.branches}
        for edge in graph.get_outgoing_edges(node.id):
            if edge.branch_tag is None or edge.branch_tag in RECOVERY_TAGS:
                continue
            branch = by_id.get(edge.branch_tag)
            if branch is None:
                errors.append(
                    f"Edge '{edge.id}' from parallel node '{node.id}' has unknown branch tag "
                    f"'{edge.branch_tag}'"
                )
            elif branch.target_node_id != edge.target:
                errors.append(
                    f"Edge '{edge.id}' for branch '{branch.id}' targets '{edge.target}' but the "
                    f"branch targets '{branch.target_node_id}'"
                )

        if config.join_node_id is not None and config.join_node_id not in node_ids:
            errors.append(
                f"Parallel node '{node.id}' join node '{config.join_node_id}' does not exist"
            )
        return errors

    def _check_edge_tags(self, graph: GraphSpec) -> list[str]:
        errors = []
        for edge in graph.edges:
            if edge.max_iterations is not None and not edge.loop:
                errors.append(f"Edge '{edge.id}' sets max_iterations but is not a loop edge")
            source = graph.get_node(edge.source)
            if source is None or edge.branch_tag is None:
                continue
            tag = edge.branch_tag
            if tag == TAG_ERROR:
                if source.kind in (NodeKind.START, NodeKind.END):
                    errors.append(f"Edge '{edge.id}': {source.kind} nodes cannot fail")
            elif tag in _CONDITIONAL_TAGS:
                if source.kind != NodeKind.CONDITIONAL:
                    errors.append(
                        f"Edge '{edge.id}' tagged '{tag}' must leave a conditional node"
                    )
            elif tag in _APPROVAL_TAGS:
                if source.kind != NodeKind.APPROVAL:
                    errors.append(f"Edge '{edge.id}' tagged '{tag}' must leave an approval node")
            elif source.kind != NodeKind.PARALLEL:
                errors.append(f"Edge '{edge.id}' has unknown branch tag '{tag}'")
        return errors

    def _check_variable_schema(self, graph: GraphSpec) -> list[str]:
        errors = []
        for name, spec in graph.variable_schema.items():
            if spec.default is not None and not spec.matches(spec.default):
                errors.append(
                    f"Variable '{name}' default {spec.default!r} is not of type '{spec.type}'"
                )
        return errors

    def _check_acyclic(self, graph: GraphSpec) -> list[str]:
        """The graph without loop edges must be a DAG."""
        white, grey, black = 0, 1, 2
        color = {node.id: white for node in graph.nodes}
        errors: list[str] = []

        def visit(node_id: str, trail: list[str]) -> None:
            color[node_id] = grey
            trail.append(node_id)
            for nxt in graph.successors(node_id, include_loops=False):
                if color[nxt] == grey:
                    cycle = trail[trail.index(nxt) :] + [nxt]
                    errors.append(
                        f"Cycle without a loop edge: {' -> '.join(cycle)} "
                        "(mark the backward edge with loop=true)"
                    )
                elif color[nxt] == white:
                    visit(nxt, trail)
            trail.pop()
            color[node_id] = black

        for node in graph.nodes:
            if color[node.id] == white:
                visit(node.id, [])
        return errors

    def _check_reachability(self, graph: GraphSpec, start_id: str) -> list[str]:
        errors = []
        reachable = self._reachable(graph, start_id, include_loops=True)
        for node in graph.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from start node '{start_id}'")

        # Every node must be able to reach an End node
        predecessors: dict[str, set[str]] = {node.id: set() for node in graph.nodes}
        for node in graph.nodes:
            for nxt in graph.successors(node.id):
                predecessors[nxt].add(node.id)
        can_finish: set[str] = set()
        queue = deque(n.id for n in graph.nodes_of_kind(NodeKind.END))
        while queue:
            current = queue.popleft()
            if current in can_finish:
                continue
            can_finish.add(current)
            queue.extend(predecessors[current] - can_finish)
        for node in graph.nodes:
            if node.id in reachable and node.id not in can_finish:
                errors.append(f"Node '{node.id}' has no path to an end node")
        return errors

    def _check_branch_regions(self, graph: GraphSpec) -> list[str]:
        """Branches of one Parallel node must not share nodes before their join."""
        errors = []
        for node in graph.nodes_of_kind(NodeKind.PARALLEL):
            join = node.config.join_node_id or self._compute_join(graph, node)
            regions: dict[str, set[str]] = {}
            for branch in node.config.branches:
                region = self._region(graph, branch.target_node_id, stop=join)
                regions[branch.id] = {
                    n for n in region if graph.get_node(n).kind != NodeKind.END
                }
            ids = list(regions)
            for i, first in enumerate(ids):
                for second in ids[i + 1 :]:
                    shared = regions[first] & regions[second]
                    if shared:
                        errors.append(
                            f"Parallel node '{node.id}' branches '{first}' and '{second}' share "
                            f"nodes {sorted(shared)} before the join"
                        )
        return errors

    # ------------------------------------------------------------------
    # Graph helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _reachable(graph: GraphSpec, source: str, include_loops: bool = False) -> set[str]:
        seen: set[str] = set()
        queue = deque([source])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(graph.successors(current, include_loops=include_loops))
        return seen

    @staticmethod
    def _distances(graph: GraphSpec, source: str) -> dict[str, int]:
        distances = {source: 0}
        queue = deque([source])
        while queue:
            current = queue.popleft()
            for nxt in graph.successors(current, include_loops=False):
                if nxt not in distances:
                    distances[nxt] = distances[current] + 1
                    queue.append(nxt)
        return distances

    @staticmethod
    def _region(graph: GraphSpec, source: str, stop: str | None) -> set[str]:
        seen: set[str] = set()
        queue = deque([source])
        while queue:
            current = queue.popleft()
            if current in seen or current == stop:
                continue
            seen.add(current)
            queue.extend(graph.successors(current, include_loops=False))
        return seen

    def _compute_join(self, graph: GraphSpec, node: Any) -> str | None:
        """Nearest node reachable from every branch target over forward edges."""
        targets = [b.target_node_id for b in node.config.branches]
        if not targets or any(graph.get_node(t) is None for t in targets):
            return None
        distances = [self._distances(graph, t) for t in targets]
        common = set(distances[0])
        for dist in distances[1:]:
            common &= set(dist)
        common.discard(node.id)
        common.difference_update(targets)
        if not common:
            return None

        reach = {c: self._reachable(graph, c) - {c} for c in common}
        earliest = [c for c in common if not any(c in reach[other] for other in common)]
        return min(earliest, key=lambda c: (sum(d[c] for d in distances), c))
