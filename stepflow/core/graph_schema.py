"""Workflow graph schema definitions using Pydantic models.

A workflow is a directed graph with exactly one trigger node and any number of
action nodes. Edges leaving branching nodes (condition, switch, filter, loop over
batches) carry a branch label; every other edge is unlabeled.

Structural rules are checked before a run starts and all violations are reported
at once:
- Unique node and edge ids, edges pointing at existing nodes
- Exactly one trigger, and nothing flows into it
- Every action node has at least one incoming edge
- Branch labels come from the source node's vocabulary
- No cycles except the loop-back into a Loop Over Batches node

The loop body (everything reachable from a loop's ``batch`` edge before returning
to the loop node) is contracted to the loop node when computing execution order,
so the outer graph stays a DAG.
"""

import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from stepflow.core.exceptions import StructuralError

CONDITION = "condition"
SWITCH = "switch"
FILTER = "filter"
LOOP_OVER_BATCHES = "loop-over-batches"
MERGE = "merge"

LOOP_BATCH = "batch"
LOOP_DONE = "done"

# Branch vocabularies that do not depend on node config
FIXED_BRANCH_LABELS: dict[str, frozenset[str]] = {
    CONDITION: frozenset({"true", "false"}),
    FILTER: frozenset({"kept", "rejected"}),
    LOOP_OVER_BATCHES: frozenset({LOOP_BATCH, LOOP_DONE}),
}
BRANCHING_ACTIONS = frozenset({*FIXED_BRANCH_LABELS, SWITCH})

MAX_CYCLES_TO_REPORT = 20

_NODE_ID_FORBIDDEN = re.compile(r"[:{}]")


def normalize_action_key(key: str) -> str:
    """Canonical form of an action key.

    Built-in keys are kebab-case, so display names such as "Loop Over Batches"
    or "set_fields" map onto "loop-over-batches" and "set-fields". Namespaced
    plugin keys ("<integration>/<verb>") are only stripped.
    """
    key = key.strip()
    if "/" in key:
        return key
    return re.sub(r"[\s_]+", "-", key).lower()


class NodeKind(str, Enum):
    """Node kinds in a workflow graph"""

    TRIGGER = "trigger"  # Entry point, exactly one per workflow
    ACTION = "action"  # Step invoked through the dispatcher


class Node(BaseModel):
    """Graph node: a trigger or an action step with templated config"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: NodeKind
    action_key: str = Field(alias="actionKey")
    config: dict[str, Any] = Field(default_factory=dict)
    label: str | None = None
    enabled: bool = True  # Disabled nodes pass flow through without running

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Node ids are template resolution keys: `{{@<id>:Label.path}}`.

        They must be non-empty and cannot contain ':' or braces, which would make
        references to them ambiguous.
        """
        if not v or not v.strip():
            raise ValueError("Node ID cannot be empty")
        if _NODE_ID_FORBIDDEN.search(v):
            raise ValueError(f"Invalid node ID: '{v}'. ':', '{{' and '}}' are not allowed.")
        return v

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("action_key")
    @classmethod
    def validate_action_key(cls, v):
        key = normalize_action_key(v)
        if not key:
            raise ValueError("actionKey cannot be empty")
        return key

    @property
    def is_trigger(self) -> bool:
        return self.kind == NodeKind.TRIGGER

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    """Directed edge between nodes, labeled when it leaves a branching node"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str = Field(alias="sourceNodeId")
    target: str = Field(alias="targetNodeId")
    branch_label: str | None = Field(default=None, alias="branchLabel")

    @field_validator("branch_label", mode="before")
    @classmethod
    def blank_label_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


def declared_branch_labels(node: Node) -> frozenset[str] | None:
    """Branch labels a node's outgoing edges may use.

    Returns an empty set for non-branching nodes and None for a switch whose
    outputs are not statically known (rules supplied through a template).
    """
    if node.action_key in FIXED_BRANCH_LABELS:
        return FIXED_BRANCH_LABELS[node.action_key]
    if node.action_key != SWITCH:
        return frozenset()

    rules = node.config.get("rules")
    if not isinstance(rules, list):
        return None
    outputs = set()
    for rule in rules:
        if not isinstance(rule, dict) or not isinstance(rule.get("output"), str):
            return None
        outputs.add(rule["output"])
    fallback = node.config.get("fallbackOutput")
    if isinstance(fallback, str) and fallback:
        outputs.add(fallback)
    if any("{{" in output for output in outputs):
        return None
    return frozenset(outputs)


@dataclass
class GraphTopology:
    """Execution plan derived once from a valid definition.

    Scopes are keyed by loop node id (None for the outer graph). Each scope's
    order lists only its own members; a nested loop stands in for its body.
    """

    loop_bodies: dict[str, frozenset[str]]
    back_edges: frozenset[str]
    scope_of: dict[str, str | None]
    orders: dict[str | None, list[str]]
    incoming: dict[str, list[Edge]] = field(default_factory=dict)
    outgoing: dict[str, list[Edge]] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        """Outer execution order with loop bodies contracted"""
        return self.orders[None]

    def flattened_order(self, scope: str | None = None) -> list[str]:
        """Execution order with each loop body expanded after its loop node"""
        result = []
        for node_id in self.orders[scope]:
            result.append(node_id)
            if node_id in self.loop_bodies:
                result.extend(self.flattened_order(node_id))
        return result

    def back_edge_sources(self, loop_id: str) -> list[str]:
        return [
            e.source
            for e in self.incoming.get(loop_id, [])
            if e.id in self.back_edges
        ]


class WorkflowDefinition(BaseModel):
    """Complete workflow document. Immutable during a run."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    _topology: GraphTopology | None = PrivateAttr(default=None)

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def trigger(self) -> Node | None:
        triggers = [n for n in self.nodes if n.is_trigger]
        return triggers[0] if len(triggers) == 1 else None

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids
        node_map = {n.id: n for n in self.nodes}

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        seen_edge_keys = set()
        for edge in self.edges:
            key = (edge.source, edge.target, edge.branch_label)
            if key in seen_edge_keys:
                errors.append(
                    f"Duplicate edge from '{edge.source}' to '{edge.target}'"
                    + (f" on branch '{edge.branch_label}'" if edge.branch_label else "")
                )
            seen_edge_keys.add(key)

        valid_edges = []
        for edge in self.edges:
            ok = True
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
                ok = False
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
                ok = False
            if ok and edge.source == edge.target:
                errors.append(f"Edge {edge.id}: node '{edge.source}' cannot connect to itself")
                ok = False
            if ok:
                valid_edges.append(edge)

        triggers = [n for n in self.nodes if n.is_trigger]
        if len(triggers) != 1:
            found = ", ".join(f"'{n.id}'" for n in triggers) or "none"
            errors.append(f"Workflow must have exactly one trigger node (found: {found})")
        for trigger in triggers:
            for edge in valid_edges:
                if edge.target == trigger.id:
                    errors.append(
                        f"Edge {edge.id}: trigger node '{trigger.id}' cannot have incoming edges"
                    )

        # Branch label vocabulary
        for edge in valid_edges:
            src = node_map[edge.source]
            if src.action_key not in BRANCHING_ACTIONS:
                if edge.branch_label is not None:
                    errors.append(
                        f"Edge {edge.id}: node '{src.id}' ({src.action_key}) does not branch "
                        f"but edge has branch label '{edge.branch_label}'"
                    )
                continue
            if edge.branch_label is None:
                errors.append(
                    f"Edge {edge.id}: edges leaving {src.action_key} node '{src.id}' "
                    f"need a branch label"
                )
                continue
            allowed = declared_branch_labels(src)
            if allowed is not None and edge.branch_label not in allowed:
                expected = ", ".join(sorted(allowed)) or "none declared"
                errors.append(
                    f"Edge {edge.id}: unknown branch label '{edge.branch_label}' for "
                    f"{src.action_key} node '{src.id}' (expected: {expected})"
                )

        G = nx.DiGraph()
        G.add_nodes_from(node_ids)
        G.add_edges_from((e.source, e.target) for e in valid_edges)

        loop_bodies = self._find_loop_bodies(G, valid_edges, node_map)
        for loop_id, body in loop_bodies.items():
            for edge in valid_edges:
                if edge.target not in body or edge.source in body:
                    continue
                if edge.source == loop_id and edge.branch_label == LOOP_BATCH:
                    continue
                if edge.source == loop_id:
                    errors.append(
                        f"Edge {edge.id}: '{edge.branch_label}' edge of loop '{loop_id}' "
                        f"targets '{edge.target}' inside its own body"
                    )
                else:
                    errors.append(
                        f"Edge {edge.id}: '{edge.source}' -> '{edge.target}' enters the body "
                        f"of loop '{loop_id}' from outside"
                    )

        back_edges = self._find_back_edges(valid_edges, loop_bodies)
        forward = G.copy()
        forward.remove_edges_from(
            (e.source, e.target) for e in valid_edges if e.id in back_edges
        )

        for cycle_count, cycle in enumerate(nx.simple_cycles(forward), start=1):
            if cycle_count > MAX_CYCLES_TO_REPORT:
                errors.append(
                    f"Too many cycles to report (>{MAX_CYCLES_TO_REPORT}). "
                    f"Simplify graph structure."
                )
                break
            path = " -> ".join([*cycle, cycle[0]])
            errors.append(f"Cycle outside a Loop Over Batches body: {path}")

        for node in self.nodes:
            if node.is_trigger or node.id not in forward:
                continue
            if forward.in_degree(node.id) == 0:
                if G.in_degree(node.id) > 0:
                    errors.append(
                        f"Node '{node.id}' is only reachable through a loop-back edge"
                    )
                else:
                    errors.append(f"Node '{node.id}' has no incoming edge")

        for node in self.nodes:
            if node.action_key != MERGE or node.id not in forward:
                continue
            if forward.in_degree(node.id) < 2:
                errors.append(f"Merge node '{node.id}' needs at least 2 incoming edges")
            if G.out_degree(node.id) > 1:
                errors.append(f"Merge node '{node.id}' can have at most 1 outgoing edge")

        return errors

    def ensure_valid(self) -> None:
        """Raise StructuralError listing every violation, if any."""
        errors = self.validate_graph()
        if errors:
            raise StructuralError(errors)

    def topology(self) -> GraphTopology:
        """Validate once and compute the execution plan.

        Raises:
            StructuralError: If the definition is invalid.
        """
        if self._topology is None:
            self.ensure_valid()
            self._topology = self._build_topology()
        return self._topology

    def topological_order(self) -> list[str]:
        """Deterministic order (ties broken by node id) with loop bodies contracted"""
        return self.topology().order

    def _build_topology(self) -> GraphTopology:
        node_map = {n.id: n for n in self.nodes}
        G = self._to_networkx()
        loop_bodies = self._find_loop_bodies(G, self.edges, node_map)
        back_edges = self._find_back_edges(self.edges, loop_bodies)

        scope_of: dict[str, str | None] = {}
        for node_id in node_map:
            enclosing = [loop for loop, body in loop_bodies.items() if node_id in body]
            # Bodies nest, so the smallest enclosing body is the innermost
            scope_of[node_id] = min(enclosing, key=lambda loop: len(loop_bodies[loop]), default=None)

        forward = G.copy()
        forward.remove_edges_from(
            (e.source, e.target) for e in self.edges if e.id in back_edges
        )

        orders: dict[str | None, list[str]] = {}
        for scope in [None, *sorted(loop_bodies)]:
            members = [n for n, s in scope_of.items() if s == scope]
            orders[scope] = list(nx.lexicographical_topological_sort(forward.subgraph(members)))

        incoming: dict[str, list[Edge]] = {n: [] for n in node_map}
        outgoing: dict[str, list[Edge]] = {n: [] for n in node_map}
        for edge in self.edges:
            incoming[edge.target].append(edge)
            outgoing[edge.source].append(edge)

        return GraphTopology(
            loop_bodies={k: frozenset(v) for k, v in loop_bodies.items()},
            back_edges=frozenset(back_edges),
            scope_of=scope_of,
            orders=orders,
            incoming=incoming,
            outgoing=outgoing,
        )

    @staticmethod
    def _find_loop_bodies(
        G: nx.DiGraph, edges: list[Edge], node_map: dict[str, Node]
    ) -> dict[str, set[str]]:
        """Nodes reachable from each loop's batch edges without passing the loop node"""
        bodies = {}
        for node_id, node in node_map.items():
            if node.action_key != LOOP_OVER_BATCHES:
                continue
            queue = deque(
                e.target
                for e in edges
                if e.source == node_id and e.branch_label == LOOP_BATCH and e.target in G
            )
            body: set[str] = set()
            while queue:
                current = queue.popleft()
                if current == node_id or current in body:
                    continue
                body.add(current)
                queue.extend(G.successors(current))
            bodies[node_id] = body
        return bodies

    @staticmethod
    def _find_back_edges(edges: list[Edge], loop_bodies: dict[str, set[str]]) -> set[str]:
        return {
            e.id
            for e in edges
            if e.target in loop_bodies and e.source in loop_bodies[e.target]
        }

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G
