"""Tests for item state models and data lookup."""

from __future__ import annotations

from itemflow.core.models import (
    FlowAggregate,
    Item,
    ItemStatus,
    composite_key,
    lookup_field,
)


class TestItemModel:
    """Tests for the Item wire format."""

    def test_wire_format_is_camel_case(self):
        item = Item(id="i1", current_node_id="a", path_taken=["e1"])
        wire = item.to_wire()

        assert wire["currentNodeId"] == "a"
        assert wire["pathTaken"] == ["e1"]
        assert wire["status"] == "active"
        assert "assignedResponsibilities" in wire

    def test_reads_stored_documents(self):
        item = Item.model_validate(
            {
                "id": "i1",
                "currentNodeId": "b",
                "history": ["a", "a", "b"],
                "pathTaken": None,
                "parallelPaths": {"p": [{"pathId": "e1", "currentNode": "x", "pathIndex": 0}]},
                "assignedResponsibles": {"b": ["ops"]},
                "status": "completed",
            }
        )
        assert item.history == ["a", "b"]
        assert item.path_taken == []
        assert item.parallel_paths["p"][0].current_node == "x"
        assert item.assignments_for("b") == ["ops"]
        assert item.status == ItemStatus.COMPLETED
        assert item.is_completed

    def test_history_helpers_keep_set_semantics(self):
        item = Item(id="i1")
        item.add_history("a")
        item.add_history("a")
        item.add_path("e1", "e2", "e1")

        assert item.history == ["a"]
        assert item.path_taken == ["e1", "e2"]
        assert item.has_completed("a")
        assert item.took_edge("e2")


class TestFlowAggregate:
    """Tests for FlowAggregate item access."""

    def test_replace_item(self, linear_graph):
        aggregate = FlowAggregate(graph=linear_graph, items=[Item(id="i1")])

        aggregate.replace_item(Item(id="i1", current_node_id="b"))
        aggregate.replace_item(Item(id="i2"))

        assert [i.id for i in aggregate.items] == ["i1", "i2"]
        assert aggregate.get_item("i1").current_node_id == "b"
        assert aggregate.get_item("missing") is None

    def test_json_round_trip_keeps_graph(self, parallel_graph):
        aggregate = FlowAggregate(graph=parallel_graph, items=[Item(id="i1")], version=4)
        restored = FlowAggregate.model_validate_json(aggregate.model_dump_json(by_alias=True))

        assert restored.version == 4
        assert restored.graph.node("d").type == "convergence"
        assert restored.items[0].id == "i1"


class TestLookupField:
    """Tests for lookup_field."""

    def test_composite_key(self, linear_graph):
        item = Item(id="i1", data={"a::Comment": "first", "Comment": "latest"})
        assert lookup_field(linear_graph, item, composite_key("a", "Comment")) == "first"

    def test_display_key_uses_node_label(self, linear_graph):
        item = Item(
            id="i1", data={"a::Comment": "from review", "b::Comment": "from approve", "Comment": "x"}
        )
        assert lookup_field(linear_graph, item, "Approve: Comment") == "from approve"
        assert lookup_field(linear_graph, item, "Review: Comment") == "from review"

    def test_plain_label_then_suffix(self, linear_graph):
        item = Item(id="i1", data={"Comment": "plain", "a::Note": "only composite"})
        assert lookup_field(linear_graph, item, "Comment") == "plain"
        assert lookup_field(linear_graph, item, "Note") == "only composite"
        assert lookup_field(linear_graph, item, "Missing") is None
