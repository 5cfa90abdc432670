"""Tests for workflow graph models, structural validation and execution order."""

import pytest
from pydantic import ValidationError

from stepflow.core.exceptions import ErrorKind, StructuralError
from stepflow.core.graph_schema import (
    Edge,
    Node,
    NodeKind,
    WorkflowDefinition,
    declared_branch_labels,
    normalize_action_key,
)


# =============================================================================
# Model Tests
# =============================================================================


class TestNodeModel:
    """Node parsing and normalization."""

    def test_camel_case_aliases(self):
        node = Node.model_validate(
            {"id": "n1", "kind": "Action", "actionKey": "Set Fields", "config": {"a": 1}}
        )
        assert node.kind == NodeKind.ACTION
        assert node.action_key == "set-fields"
        assert node.config == {"a": 1}

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Loop Over Batches", "loop-over-batches"),
            ("set_fields", "set-fields"),
            ("  condition ", "condition"),
            ("json/parse", "json/parse"),
        ],
    )
    def test_normalize_action_key(self, raw, expected):
        assert normalize_action_key(raw) == expected

    @pytest.mark.parametrize("bad_id", ["", "   ", "a:b", "a{b", "x}"])
    def test_rejects_ids_that_break_references(self, bad_id):
        with pytest.raises(ValidationError):
            Node(id=bad_id, kind="action", action_key="code")

    def test_display_name_falls_back_to_id(self):
        assert Node(id="n1", kind="action", action_key="code").display_name == "n1"
        assert Node(id="n1", kind="action", action_key="code", label="Calc").display_name == "Calc"

    def test_blank_branch_label_is_none(self):
        edge = Edge.model_validate(
            {"id": "e1", "sourceNodeId": "a", "targetNodeId": "b", "branchLabel": "  "}
        )
        assert edge.branch_label is None


class TestDeclaredBranchLabels:
    """Branch vocabularies per node type."""

    def test_fixed_vocabularies(self):
        cond = Node(id="c", kind="action", action_key="condition")
        loop = Node(id="l", kind="action", action_key="loop-over-batches")
        assert declared_branch_labels(cond) == {"true", "false"}
        assert declared_branch_labels(loop) == {"batch", "done"}

    def test_switch_outputs_include_fallback(self):
        switch = Node(
            id="s",
            kind="action",
            action_key="switch",
            config={
                "rules": [{"output": "gold"}, {"output": "silver"}],
                "fallbackOutput": "other",
            },
        )
        assert declared_branch_labels(switch) == {"gold", "silver", "other"}

    def test_switch_with_templated_rules_is_dynamic(self):
        switch = Node(
            id="s", kind="action", action_key="switch", config={"rules": "{{@a:A.rules}}"}
        )
        assert declared_branch_labels(switch) is None

    def test_non_branching_node_has_no_labels(self):
        assert declared_branch_labels(Node(id="x", kind="action", action_key="code")) == frozenset()


# =============================================================================
# Structural Validation
# =============================================================================


class TestValidateGraph:
    """validate_graph() reports every violation at once."""

    def test_valid_linear_workflow(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("a", "code", {"expression": "1"})],
            [("trigger", "a")],
        )
        assert wf.validate_graph() == []

    def test_missing_trigger(self, build_workflow):
        wf = build_workflow([("a", "code")], [])
        errors = wf.validate_graph()
        assert any("exactly one trigger" in e for e in errors)

    def test_two_triggers(self, build_workflow):
        wf = build_workflow([("t1", "manual"), ("t2", "webhook")], [])
        errors = wf.validate_graph()
        assert any("'t1', 't2'" in e for e in errors)

    def test_trigger_cannot_have_incoming_edges(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("a", "code")],
            [("trigger", "a"), ("a", "trigger")],
        )
        assert any("cannot have incoming edges" in e for e in wf.validate_graph())

    def test_edge_to_unknown_node(self, build_workflow):
        wf = build_workflow([("trigger", "manual")], [("trigger", "ghost")])
        assert any("target 'ghost' not found" in e for e in wf.validate_graph())

    def test_duplicate_ids(self):
        wf = WorkflowDefinition.model_validate(
            {
                "id": "wf",
                "name": "dup",
                "nodes": [
                    {"id": "t", "kind": "trigger", "actionKey": "manual"},
                    {"id": "a", "kind": "action", "actionKey": "code"},
                    {"id": "a", "kind": "action", "actionKey": "code"},
                ],
                "edges": [
                    {"id": "e", "sourceNodeId": "t", "targetNodeId": "a"},
                    {"id": "e", "sourceNodeId": "t", "targetNodeId": "a"},
                ],
            }
        )
        errors = wf.validate_graph()
        assert "Duplicate node ID: 'a'" in errors
        assert "Duplicate edge ID: 'e'" in errors
        assert any(e.startswith("Duplicate edge from 't' to 'a'") for e in errors)

    def test_node_without_incoming_edge(self, build_workflow):
        wf = build_workflow([("trigger", "manual"), ("orphan", "code")], [])
        assert "Node 'orphan' has no incoming edge" in wf.validate_graph()

    def test_cycle_outside_loop(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("a", "code"), ("b", "code")],
            [("trigger", "a"), ("a", "b"), ("b", "a")],
        )
        assert any("Cycle outside a Loop Over Batches body" in e for e in wf.validate_graph())

    def test_self_loop(self, build_workflow):
        wf = build_workflow([("trigger", "manual"), ("a", "code")], [("trigger", "a"), ("a", "a")])
        assert any("cannot connect to itself" in e for e in wf.validate_graph())

    def test_condition_edges_need_known_labels(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("cond", "condition"), ("a", "code"), ("b", "code")],
            [("trigger", "cond"), ("cond", "a", "maybe"), ("cond", "b")],
        )
        errors = wf.validate_graph()
        assert any("unknown branch label 'maybe'" in e for e in errors)
        assert any("need a branch label" in e for e in errors)

    def test_label_on_non_branching_edge(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("a", "code")],
            [("trigger", "a", "true")],
        )
        assert any("does not branch" in e for e in wf.validate_graph())

    def test_switch_labels_checked_against_rules(self, build_workflow):
        wf = build_workflow(
            [
                ("trigger", "manual"),
                ("sw", "switch", {"rules": [{"output": "gold", "operator": "equals", "value": 1}]}),
                ("a", "code"),
            ],
            [("trigger", "sw"), ("sw", "a", "platinum")],
        )
        assert any("unknown branch label 'platinum'" in e for e in wf.validate_graph())

    def test_merge_needs_two_incoming_edges(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("m", "merge")],
            [("trigger", "m")],
        )
        assert "Merge node 'm' needs at least 2 incoming edges" in wf.validate_graph()

    def test_merge_has_at_most_one_outgoing_edge(self, build_workflow):
        wf = build_workflow(
            [
                ("trigger", "manual"),
                ("a", "code"),
                ("b", "code"),
                ("m", "merge"),
                ("x", "code"),
                ("y", "code"),
            ],
            [("trigger", "a"), ("trigger", "b"), ("a", "m"), ("b", "m"), ("m", "x"), ("m", "y")],
        )
        assert "Merge node 'm' can have at most 1 outgoing edge" in wf.validate_graph()

    def test_loop_body_entered_from_outside(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("loop", "loop-over-batches"), ("body", "code")],
            [("trigger", "loop"), ("loop", "body", "batch"), ("body", "loop"), ("trigger", "body")],
        )
        assert any("enters the body of loop 'loop'" in e for e in wf.validate_graph())

    def test_loop_back_edge_is_not_a_cycle(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("loop", "loop-over-batches"), ("body", "code"), ("after", "code")],
            [("trigger", "loop"), ("loop", "body", "batch"), ("body", "loop"), ("loop", "after", "done")],
        )
        assert wf.validate_graph() == []

    def test_ensure_valid_raises_all_errors(self, build_workflow):
        wf = build_workflow([("a", "code"), ("b", "code")], [])
        with pytest.raises(StructuralError) as exc_info:
            wf.ensure_valid()
        assert exc_info.value.kind == ErrorKind.STRUCTURAL
        assert len(exc_info.value.errors) == 3
        assert "Invalid workflow definition" in str(exc_info.value)


# =============================================================================
# Execution Order
# =============================================================================


class TestTopology:
    """Deterministic order and loop body contraction."""

    def test_ties_broken_by_node_id(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("c", "code"), ("b", "code"), ("a", "code")],
            [("trigger", "c"), ("trigger", "b"), ("trigger", "a")],
        )
        assert wf.topological_order() == ["trigger", "a", "b", "c"]

    def test_order_respects_dependencies(self, build_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("a", "code"), ("z", "code")],
            [("trigger", "z"), ("z", "a")],
        )
        assert wf.topological_order() == ["trigger", "z", "a"]

    def test_loop_body_is_contracted(self, build_workflow):
        wf = build_workflow(
            [
                ("trigger", "manual"),
                ("loop", "loop-over-batches"),
                ("step1", "code"),
                ("step2", "code"),
                ("after", "code"),
            ],
            [
                ("trigger", "loop"),
                ("loop", "step1", "batch"),
                ("step1", "step2"),
                ("step2", "loop"),
                ("loop", "after", "done"),
            ],
        )
        topology = wf.topology()
        assert topology.order == ["trigger", "loop", "after"]
        assert topology.orders["loop"] == ["step1", "step2"]
        assert topology.loop_bodies["loop"] == {"step1", "step2"}
        assert topology.back_edges == {"step2->loop"}
        assert topology.back_edge_sources("loop") == ["step2"]
        assert topology.flattened_order() == ["trigger", "loop", "step1", "step2", "after"]

    def test_nested_loops_get_their_own_scope(self, build_workflow):
        wf = build_workflow(
            [
                ("trigger", "manual"),
                ("outer", "loop-over-batches"),
                ("inner", "loop-over-batches"),
                ("work", "code"),
            ],
            [
                ("trigger", "outer"),
                ("outer", "inner", "batch"),
                ("inner", "work", "batch"),
                ("work", "inner"),
                ("inner", "outer", "done"),
            ],
        )
        topology = wf.topology()
        assert topology.scope_of["inner"] == "outer"
        assert topology.scope_of["work"] == "inner"
        assert topology.orders["outer"] == ["inner"]
        assert topology.orders["inner"] == ["work"]

    def test_topology_raises_for_invalid_definition(self, build_workflow):
        wf = build_workflow([("a", "code")], [])
        with pytest.raises(StructuralError):
            wf.topology()
