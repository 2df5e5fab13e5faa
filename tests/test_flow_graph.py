"""Tests for flow graph parsing, validation and edge resolution."""
import pytest

from conftest import edge, flow, greeting_flow, node
from flows.errors import (
    DanglingEdgeError, DuplicateHandleError, GraphValidationError, InvalidNodeError,
    MissingStartError, OrphanNodeError, UnknownNodeError,
)
from flows.graph import FlowGraph, NodeIdAllocator
from models.schemas import DelayUnit, HandoffNode, QuickReplyNode


class TestParsing:
    def test_typed_nodes(self, greeting_graph):
        qr = greeting_graph.get("node_3")
        assert isinstance(qr, QuickReplyNode)
        assert [b.id for b in qr.data.buttons] == ["btn-1", "btn-2"]
        handoff = greeting_graph.get("node_5")
        assert isinstance(handoff, HandoffNode)
        assert handoff.data.queue_name == "sales"
        assert len(greeting_graph) == 5
        assert "node_4" in greeting_graph

    def test_editor_attributes_ignored(self):
        raw = flow([{"id": "n1", "type": "start", "position": {"x": 1, "y": 2}, "data": {"label": "Go"}}], [])
        graph = FlowGraph.from_flow_data(raw)
        assert graph.get("n1").label == "Go"

    def test_node_defaults(self):
        graph = FlowGraph.from_flow_data(flow(
            [node("n1", "delay"), node("n2", "condition"), node("n3", "quickReply", buttons=[{"title": "A"}])],
            [],
        ))
        assert graph.get("n1").data.unit == DelayUnit.MINUTES
        assert graph.get("n1").data.seconds == 300
        assert graph.get("n2").data.variable == "user_input"
        assert graph.get("n3").data.buttons[0].id == "btn-0"

    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidNodeError) as exc:
            FlowGraph.from_flow_data(flow([node("n1", "carousel")], []))
        assert exc.value.node_id == "n1"

    def test_too_many_buttons_rejected(self):
        buttons = [{"id": f"b{i}", "title": str(i)} for i in range(4)]
        with pytest.raises(InvalidNodeError):
            FlowGraph.from_flow_data(flow([node("n1", "quickReply", buttons=buttons)], []))

    def test_duplicate_node_id_rejected(self):
        with pytest.raises(InvalidNodeError):
            FlowGraph.from_flow_data(flow([node("n1", "start"), node("n1", "message")], []))

    def test_empty_document(self):
        graph = FlowGraph.from_flow_data(None)
        assert len(graph) == 0
        with pytest.raises(MissingStartError):
            graph.start_node


class TestLookup:
    def test_get_unknown_raises(self, greeting_graph):
        with pytest.raises(UnknownNodeError):
            greeting_graph.get("nope")
        assert greeting_graph.find("nope") is None

    def test_resolve_by_handle(self, greeting_graph):
        assert greeting_graph.resolve_next("node_3", "btn-1") == "node_4"
        assert greeting_graph.resolve_next("node_3", "btn-2") == "node_5"
        assert greeting_graph.resolve_next("node_3", "btn-3") is None

    def test_single_output_accepts_labelled_edge(self):
        graph = FlowGraph.from_flow_data(flow(
            [node("n1", "start"), node("n2", "message")],
            [edge("n1", "n2", "out")],
        ))
        assert graph.resolve_next("n1") == "n2"

    def test_single_output_skips_error_edge(self):
        graph = FlowGraph.from_flow_data(flow(
            [node("n1", "start"), node("n2", "apiCall"), node("n3", "message")],
            [edge("n1", "n2"), edge("n2", "n3", "error")],
        ))
        assert graph.resolve_next("n2") is None
        assert graph.resolve_next("n2", "error") == "n3"

    def test_resolve_any(self, greeting_graph):
        assert greeting_graph.resolve_any("node_3", ("x", "btn-2")) == "node_5"
        assert greeting_graph.resolve_any("node_3", ("x", "y")) is None

    def test_end_node_has_no_next(self, greeting_graph):
        assert greeting_graph.resolve_next("node_4") is None
        assert greeting_graph.outgoing("node_4") == ()


class TestValidation:
    def test_valid_graph(self, greeting_graph):
        assert greeting_graph.issues() == []
        assert greeting_graph.validate(strict=True) == []
        assert greeting_graph.check() == []

    def test_missing_start(self):
        graph = FlowGraph.from_flow_data(flow([node("n1", "message")], []))
        with pytest.raises(MissingStartError):
            graph.validate()

    def test_two_starts(self):
        graph = FlowGraph.from_flow_data(flow([node("n1", "start"), node("n2", "start")], []))
        assert [i.code for i in graph.issues()] == ["missing_start"]

    def test_dangling_edge(self):
        graph = FlowGraph.from_flow_data(flow([node("n1", "start")], [edge("n1", "ghost")]))
        issue = graph.issues()[0]
        assert issue.code == "dangling_edge"
        assert issue.error.node_id == "ghost"
        with pytest.raises(DanglingEdgeError):
            graph.validate()

    def test_duplicate_handle(self):
        graph = FlowGraph.from_flow_data(flow(
            [node("n1", "start"), node("n2", "message"), node("n3", "message")],
            [edge("n1", "n2"), edge("n1", "n3")],
        ))
        with pytest.raises(DuplicateHandleError):
            graph.validate()

    def test_orphan_is_warning_unless_strict(self):
        data = greeting_flow()
        data["nodes"].append(node("node_9", "message"))
        graph = FlowGraph.from_flow_data(data)

        warnings = graph.validate(strict=False)
        assert [w.code for w in warnings] == ["orphan_node"]
        assert warnings[0].to_dict()["severity"] == "warning"
        with pytest.raises(OrphanNodeError):
            graph.validate(strict=True)
        assert [w.error.node_id for w in graph.check()] == ["node_9"]

    def test_check_collects_all_errors(self):
        graph = FlowGraph.from_flow_data(flow(
            [node("n1", "message")],
            [edge("n1", "ghost")],
        ))
        with pytest.raises(GraphValidationError) as exc:
            graph.check()
        assert {e.code for e in exc.value.errors} == {"missing_start", "dangling_edge"}


class TestNodeIdAllocator:
    def test_seeded_past_existing(self, greeting_graph):
        alloc = greeting_graph.id_allocator()
        assert alloc.next_id() == "node_6"
        assert alloc.next_id() == "node_7"

    def test_ignores_foreign_ids(self):
        alloc = NodeIdAllocator.for_graph(["start", "node_x", "node_2"])
        assert alloc.peek == 3

    def test_empty_graph(self):
        assert NodeIdAllocator.for_graph([]).next_id() == "node_0"
