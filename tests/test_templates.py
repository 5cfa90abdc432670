"""Tests for template tokenization and resolution."""

import pytest

from stepflow.core.context import ErrorInfo, ExecutionContext, LoopFrame
from stepflow.core.exceptions import (
    ErrorKind,
    PathNotFoundError,
    UnresolvedReferenceError,
)
from stepflow.core.templates import (
    LABEL_MISMATCH,
    LiteralSegment,
    ReferenceSegment,
    TemplateResolver,
    contains_reference,
    tokenize,
)


@pytest.fixture
def context() -> ExecutionContext:
    """Context where action_1 succeeded, broken failed and idle is pending"""
    ctx = ExecutionContext("wf-test", run_id="run-test")
    ctx.schedule("action_1")
    ctx.mark_succeeded(
        "action_1",
        {"status": 200, "data": {"items": [{"sku": "A-1", "qty": 2}], "total": 19.5}},
    )
    ctx.schedule("broken")
    ctx.mark_failed("broken", ErrorInfo(kind=ErrorKind.STEP_EXECUTION, message="boom"))
    ctx.schedule("idle")
    return ctx


# =============================================================================
# Tokenizer
# =============================================================================


class TestTokenize:
    """Splitting raw strings into literal and reference segments."""

    def test_single_reference(self):
        segments = tokenize("{{@action_1:HTTP.status}}")
        assert segments == [
            ReferenceSegment(
                node_id="action_1", label="HTTP", path="status", raw="{{@action_1:HTTP.status}}"
            )
        ]

    def test_mixed_string(self):
        segments = tokenize("Order {{@a:Order.id}} costs {{ @b:Price.total }}!")
        assert [type(s) for s in segments] == [
            LiteralSegment,
            ReferenceSegment,
            LiteralSegment,
            ReferenceSegment,
            LiteralSegment,
        ]
        assert segments[3].node_id == "b"
        assert segments[3].path == "total"

    def test_reference_without_path(self):
        (segment,) = tokenize("{{@a:Label}}")
        assert segment.label == "Label"
        assert segment.path == ""

    def test_nested_path_is_kept_whole(self):
        (segment,) = tokenize("{{@a:HTTP.data.items[0].sku}}")
        assert segment.path == "data.items[0].sku"

    def test_incomplete_reference_stays_literal(self):
        assert tokenize("{{@a}} and {{ plain }}") == [LiteralSegment("{{@a}} and {{ plain }}")]
        assert not contains_reference("{{@a}}")
        assert contains_reference("x {{@a:A}}")


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    """Resolving strings against the execution context."""

    def test_whole_reference_keeps_native_type(self, context):
        resolver = TemplateResolver()
        assert resolver.resolve("{{@action_1:HTTP.status}}", context) == 200
        assert resolver.resolve("{{@action_1:HTTP.data.items}}", context) == [
            {"sku": "A-1", "qty": 2}
        ]

    def test_reference_without_path_returns_whole_output(self, context):
        output = TemplateResolver().resolve("{{@action_1:HTTP}}", context)
        assert output["status"] == 200

    def test_mixed_string_is_stringified(self, context):
        resolver = TemplateResolver()
        assert resolver.resolve("{{@action_1:HTTP.status}} == 200", context) == "200 == 200"
        assert (
            resolver.resolve("sku={{@action_1:HTTP.data.items[0].sku}}", context) == "sku=A-1"
        )

    def test_containers_interpolate_as_json(self, context):
        value = TemplateResolver().resolve("items: {{@action_1:HTTP.data.items}}", context)
        assert value == 'items: [{"sku":"A-1","qty":2}]'

    def test_plain_string_passes_through(self, context):
        assert TemplateResolver().resolve("no references", context) == "no references"

    def test_label_is_not_used_for_lookup(self, context):
        assert TemplateResolver().resolve("{{@action_1:Anything.status}}", context) == 200


class TestResolutionPolicies:
    """Lenient warnings versus strict errors."""

    def test_lenient_unresolved_reference(self, context):
        warnings = []
        value = TemplateResolver().resolve("{{@idle:Idle.x}}", context, warnings)
        assert value is None
        assert warnings[0].kind == "UnresolvedReference"
        assert warnings[0].reference == "{{@idle:Idle.x}}"

    def test_lenient_failed_node_in_mixed_string(self, context):
        warnings = []
        value = TemplateResolver().resolve("got [{{@broken:B.value}}]", context, warnings)
        assert value == "got []"
        assert len(warnings) == 1

    def test_lenient_missing_path(self, context):
        warnings = []
        value = TemplateResolver().resolve("{{@action_1:HTTP.data.missing}}", context, warnings)
        assert value is None
        assert warnings[0].kind == "PathNotFound"
        assert "missing" in warnings[0].message

    def test_strict_unknown_node(self, context):
        with pytest.raises(UnresolvedReferenceError):
            TemplateResolver(policy="strict").resolve("{{@nobody:X.y}}", context)

    def test_strict_index_out_of_range(self, context):
        with pytest.raises(PathNotFoundError) as exc_info:
            TemplateResolver(policy="strict").resolve(
                "{{@action_1:HTTP.data.items[3]}}", context
            )
        assert "out of range" in str(exc_info.value)

    def test_label_mismatch_warning_is_opt_in(self, context):
        labels = {"action_1": "HTTP"}
        quiet = TemplateResolver(labels=labels)
        noisy = TemplateResolver(labels=labels, warn_on_label_mismatch=True)

        warnings = []
        quiet.resolve("{{@action_1:Other.status}}", context, warnings)
        assert warnings == []

        value = noisy.resolve("{{@action_1:Other.status}}", context, warnings)
        assert value == 200
        assert [w.kind for w in warnings] == [LABEL_MISMATCH]


class TestResolveConfig:
    """Deep resolution of node config."""

    def test_walks_nested_structures(self, context):
        config = {
            "endpoint": "https://api.example.test/orders/{{@action_1:HTTP.data.items[0].sku}}",
            "httpBody": {"qty": "{{@action_1:HTTP.data.items[0].qty}}", "fixed": 3},
            "tags": ["{{@action_1:HTTP.status}}", "static"],
            "{{@action_1:HTTP.status}}": "keys are not resolved",
        }
        resolved, warnings = TemplateResolver().resolve_config(config, context)
        assert resolved["endpoint"] == "https://api.example.test/orders/A-1"
        assert resolved["httpBody"] == {"qty": 2, "fixed": 3}
        assert resolved["tags"] == [200, "static"]
        assert "{{@action_1:HTTP.status}}" in resolved
        assert warnings == []

    def test_does_not_mutate_input(self, context):
        config = {"value": "{{@action_1:HTTP.status}}"}
        TemplateResolver().resolve_config(config, context)
        assert config == {"value": "{{@action_1:HTTP.status}}"}

    def test_collects_warnings(self, context):
        _, warnings = TemplateResolver().resolve_config(
            {"a": "{{@idle:I.x}}", "b": ["{{@action_1:H.nope}}"]}, context
        )
        assert sorted(w.kind for w in warnings) == ["PathNotFound", "UnresolvedReference"]


class TestLoopFrameReferences:
    """Body nodes referencing the running loop see the current batch."""

    def test_active_frame_view(self, context):
        frame = LoopFrame(loop_node_id="loop", batches=[[1, 2], [3]])
        frame.current_batch_index = 1
        frame.accumulated_results.append("first")
        context.push_frame(frame)

        resolver = TemplateResolver(policy="strict")
        assert resolver.resolve("{{@loop:Loop.batch}}", context) == [3]
        assert resolver.resolve("{{@loop:Loop.batchIndex}}", context) == 1
        assert resolver.resolve("{{@loop:Loop.accumulatedResults}}", context) == ["first"]

        context.pop_frame()
        with pytest.raises(UnresolvedReferenceError):
            resolver.resolve("{{@loop:Loop.batch}}", context)
