"""Tests for the completion transition.

Tests cover:
- Item creation from the initial form
- Serial, conditional and parallel completion
- Convergence joins (branch trackers and currentNodeId)
- Validation failures leave the item untouched
- Idempotence and finality
"""

from __future__ import annotations

import pytest

from itemflow.core.errors import (
    FormValidationError,
    InvalidTransitionError,
    NodeNotFoundError,
    PathSelectionRequiredError,
)
from itemflow.core.models import Item, ItemStatus
from itemflow.core.resolver import active_nodes
from itemflow.core.transition import (
    TransitionStatus,
    apply_completion,
    create_item,
    missing_required_fields,
    navigate,
)


def fresh(graph, **fields) -> Item:
    """Item placed on the graph's first node without going through create_item."""
    item = Item(id="item-1", **fields)
    if item.current_node_id is None:
        roots = active_nodes(graph, item)
        item.current_node_id = roots[0] if roots else None
    return item


# =============================================================================
# Creation Tests
# =============================================================================


class TestCreateItem:
    """Tests for create_item."""

    def test_creates_at_first_node_after_initial(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"}, item_id="item-1")

        assert item.id == "item-1"
        assert item.current_node_id == "a"
        assert item.history == []
        assert item.status == ItemStatus.ACTIVE
        assert item.data["Title"] == "Laptop"
        assert item.data["start::Title"] == "Laptop"

    def test_missing_initial_input(self, linear_graph):
        with pytest.raises(FormValidationError) as exc_info:
            create_item(linear_graph, {"Title": "  "})
        assert exc_info.value.missing_fields == ["Title"]
        assert exc_info.value.node_id == "start"

    def test_graph_without_initial_node(self, conditional_graph):
        item = create_item(conditional_graph, {"Origin": "api"})
        assert item.current_node_id == "a"
        assert item.data == {"Origin": "api"}
        assert item.id

    def test_plain_keys_can_be_disabled(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"}, write_plain_keys=False)
        assert item.data == {"start::Title": "Laptop"}


# =============================================================================
# Serial Completion Tests
# =============================================================================


class TestSerialCompletion:
    """Linear flow start -> a -> b -> final."""

    def test_linear_flow_to_completion(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"}, item_id="item-1")

        result = apply_completion(linear_graph, item, "a", {"Comment": "looks fine"})
        assert result.status == TransitionStatus.COMPLETED
        assert result.item.current_node_id == "b"
        assert result.item.history == ["a"]
        assert result.item.path_taken == ["a-b"]
        assert result.taken_edges == ["a-b"]
        assert result.newly_active == ["b"]

        result = apply_completion(linear_graph, result.item, "b")
        assert result.item.current_node_id == "final"
        assert result.item.path_taken == ["a-b", "b-f"]

        result = apply_completion(linear_graph, result.item, "final")
        assert result.status == TransitionStatus.FINALIZED
        assert result.item.status == ItemStatus.COMPLETED
        assert result.item.history == ["a", "b", "final"]
        assert result.newly_active == []

    def test_input_item_not_mutated(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        before = item.model_dump()

        apply_completion(linear_graph, item, "a", {"Comment": "ok"})
        assert item.model_dump() == before

    def test_version_bumped(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        result = apply_completion(linear_graph, item, "a", {"Comment": "ok"})
        assert result.item.version == item.version + 1

    def test_data_merge_keeps_composite_values(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        item = apply_completion(linear_graph, item, "a", {"Comment": "first"}).item
        item = apply_completion(linear_graph, item, "b", {"Comment": "second"}).item

        assert item.data["a::Comment"] == "first"
        assert item.data["b::Comment"] == "second"
        assert item.data["Comment"] == "second"
        assert item.data["start::Title"] == "Laptop"


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidation:
    """Failed validation applies nothing."""

    def test_missing_required_field(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        with pytest.raises(FormValidationError) as exc_info:
            apply_completion(linear_graph, item, "a", {"Comment": "   "})
        assert exc_info.value.missing_fields == ["Comment"]
        assert item.history == []

    def test_checkbox_false_counts_as_present(self, make_graph):
        graph = make_graph(
            [
                {
                    "id": "check",
                    "type": "serial",
                    "inputs": [
                        {"label": "Agreed", "type": "checkbox", "required": True},
                        {"label": "Amount", "type": "number", "required": True},
                    ],
                }
            ],
            [],
        )
        node = graph.node("check")
        assert missing_required_fields(node, {"Agreed": False, "Amount": 0}) == []
        assert missing_required_fields(node, {"Amount": 0}) == ["Agreed"]
        assert missing_required_fields(node, {"Agreed": True, "Amount": ""}) == ["Amount"]

    def test_unknown_node(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        with pytest.raises(NodeNotFoundError):
            apply_completion(linear_graph, item, "ghost")

    def test_inactive_node_rejected(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        with pytest.raises(InvalidTransitionError):
            apply_completion(linear_graph, item, "b")

    def test_convergence_and_initial_not_completable(self, linear_graph, parallel_graph):
        with pytest.raises(InvalidTransitionError):
            apply_completion(parallel_graph, fresh(parallel_graph), "d")
        item = create_item(linear_graph, {"Title": "Laptop"})
        with pytest.raises(InvalidTransitionError):
            apply_completion(linear_graph, item, "start")


# =============================================================================
# Conditional Completion Tests
# =============================================================================


class TestConditionalCompletion:
    """a(conditional) -> b | c."""

    def test_selection_required(self, conditional_graph):
        item = fresh(conditional_graph)
        with pytest.raises(PathSelectionRequiredError) as exc_info:
            apply_completion(conditional_graph, item, "a")
        assert exc_info.value.choices == ["e1", "e2"]

    def test_selection_must_be_an_outgoing_edge(self, conditional_graph):
        item = fresh(conditional_graph)
        with pytest.raises(PathSelectionRequiredError) as exc_info:
            apply_completion(conditional_graph, item, "a", selected_edge_id="e9")
        assert exc_info.value.selected == "e9"

    def test_only_selected_path_taken(self, conditional_graph):
        item = fresh(conditional_graph)
        result = apply_completion(conditional_graph, item, "a", selected_edge_id="e2")

        assert result.item.path_taken == ["e2"]
        assert result.item.current_node_id == "c"
        assert active_nodes(conditional_graph, result.item) == ["c"]

    def test_single_successor_needs_no_selection(self, make_graph):
        graph = make_graph(
            [{"id": "a", "type": "conditional"}, {"id": "b", "type": "serial"}],
            [{"id": "only", "source": "a", "target": "b"}],
        )
        result = apply_completion(graph, fresh(graph), "a")
        assert result.item.path_taken == ["only"]
        assert result.item.current_node_id == "b"

    def test_waits_at_convergence_fed_from_outside(self, make_graph):
        """currentNodeId stays put until every parent of the join is done."""
        graph = make_graph(
            [
                {"id": "r1", "type": "conditional"},
                {"id": "r2", "type": "serial"},
                {"id": "z", "type": "serial"},
                {"id": "j", "type": "convergence"},
                {"id": "f", "type": "final"},
            ],
            [
                {"id": "r1-j", "source": "r1", "target": "j"},
                {"id": "r1-z", "source": "r1", "target": "z"},
                {"id": "r2-j", "source": "r2", "target": "j"},
                {"id": "j-f", "source": "j", "target": "f"},
            ],
        )
        item = fresh(graph)
        assert item.current_node_id == "r1"

        item = apply_completion(graph, item, "r1", selected_edge_id="r1-j").item
        assert item.current_node_id == "r1"
        assert active_nodes(graph, item) == ["r2"]

        result = apply_completion(graph, item, "r2")
        assert result.item.current_node_id == "f"
        assert result.newly_active == ["f"]


# =============================================================================
# Parallel Completion Tests
# =============================================================================


class TestParallelCompletion:
    """a(parallel) -> {b, c} -> d(convergence) -> final."""

    def test_fork_opens_one_tracker_per_edge(self, make_graph):
        graph = make_graph(
            [
                {"id": "p", "type": "parallel"},
                {"id": "x", "type": "serial"},
                {"id": "y", "type": "serial"},
                {"id": "z", "type": "serial"},
            ],
            [
                {"id": "px", "source": "p", "target": "x"},
                {"id": "py", "source": "p", "target": "y"},
                {"id": "pz", "source": "p", "target": "z"},
            ],
        )
        result = apply_completion(graph, fresh(graph), "p")
        trackers = result.item.parallel_paths["p"]

        assert result.item.path_taken == ["px", "py", "pz"]
        assert [t.path_id for t in trackers] == ["px", "py", "pz"]
        assert [t.current_node for t in trackers] == ["x", "y", "z"]
        assert [t.path_index for t in trackers] == [0, 1, 2]
        assert not any(t.completed for t in trackers)
        assert result.newly_active == ["x", "y", "z"]

    def test_fork_and_join(self, parallel_graph):
        item = fresh(parallel_graph)
        assert item.current_node_id == "a"

        item = apply_completion(parallel_graph, item, "a").item
        assert active_nodes(parallel_graph, item) == ["b", "c"]
        assert {t.current_node for t in item.parallel_paths["a"]} == {"b", "c"}

        result = apply_completion(parallel_graph, item, "b")
        item = result.item
        assert "final" not in active_nodes(parallel_graph, item)
        assert result.newly_active == []
        assert [t.current_node for t in item.parallel_paths["a"]] == ["d", "c"]

        result = apply_completion(parallel_graph, item, "c")
        item = result.item
        assert result.newly_active == ["final"]
        assert item.current_node_id == "final"
        assert [t.current_node for t in item.parallel_paths["a"]] == ["final", "final"]
        assert item.path_taken == ["e1", "e2", "e3", "e4"]

        result = apply_completion(parallel_graph, item, "final")
        assert result.item.status == ItemStatus.COMPLETED
        assert all(t.completed for t in result.item.parallel_paths["a"])

    def test_join_feeding_closed_convergence_waits(self, make_graph):
        """Branches stay parked while a later join still waits on an outside parent."""
        graph = make_graph(
            [
                {"id": "start", "type": "initial"},
                {"id": "a", "type": "parallel"},
                {"id": "b", "type": "serial"},
                {"id": "c", "type": "serial"},
                {"id": "d", "type": "convergence"},
                {"id": "s", "type": "serial"},
                {"id": "e", "type": "convergence"},
                {"id": "f", "type": "final"},
            ],
            [
                {"id": "start-a", "source": "start", "target": "a"},
                {"id": "start-s", "source": "start", "target": "s"},
                {"id": "a-b", "source": "a", "target": "b"},
                {"id": "a-c", "source": "a", "target": "c"},
                {"id": "b-d", "source": "b", "target": "d"},
                {"id": "c-d", "source": "c", "target": "d"},
                {"id": "d-e", "source": "d", "target": "e"},
                {"id": "s-e", "source": "s", "target": "e"},
                {"id": "e-f", "source": "e", "target": "f"},
            ],
        )
        assert graph.validate_graph() == []

        item = create_item(graph, item_id="item-1")
        assert item.current_node_id == "a"
        for node_id in ("a", "b", "c"):
            item = apply_completion(graph, item, node_id).item

        assert item.current_node_id == "a"
        assert [t.current_node for t in item.parallel_paths["a"]] == ["d", "d"]
        assert active_nodes(graph, item) == ["s"]

        result = apply_completion(graph, item, "s")
        item = result.item
        assert result.newly_active == ["f"]
        assert item.current_node_id == "f"
        assert item.current_node_id in active_nodes(graph, item)
        assert [t.current_node for t in item.parallel_paths["a"]] == ["f", "f"]

    def test_branch_without_successor_completes(self, make_graph):
        graph = make_graph(
            [
                {"id": "p", "type": "parallel"},
                {"id": "x", "type": "serial"},
                {"id": "y", "type": "serial"},
            ],
            [
                {"id": "px", "source": "p", "target": "x"},
                {"id": "py", "source": "p", "target": "y"},
            ],
        )
        item = apply_completion(graph, fresh(graph), "p").item
        item = apply_completion(graph, item, "x").item

        trackers = {t.path_id: t for t in item.parallel_paths["p"]}
        assert trackers["px"].completed
        assert not trackers["py"].completed


# =============================================================================
# Idempotence and Finality Tests
# =============================================================================


class TestIdempotence:
    """Repeated completions are no-ops."""

    def test_completing_twice_is_a_noop(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        once = apply_completion(linear_graph, item, "a", {"Comment": "ok"}).item

        again = apply_completion(linear_graph, once, "a", {"Comment": "changed"})
        assert again.status == TransitionStatus.ALREADY_COMPLETED
        assert not again.changed
        assert again.item.history == once.history
        assert again.item.data == once.data
        assert again.item.version == once.version

    def test_completed_item_is_final(self, linear_graph):
        item = create_item(linear_graph, {"Title": "Laptop"})
        for node_id, data in (("a", {"Comment": "ok"}), ("b", {}), ("final", {})):
            item = apply_completion(linear_graph, item, node_id, data).item

        result = apply_completion(linear_graph, item, "b")
        assert result.status == TransitionStatus.ALREADY_FINAL
        assert result.item.status == ItemStatus.COMPLETED
        assert result.item.history == item.history


# =============================================================================
# Navigation Tests
# =============================================================================


class TestNavigate:
    """Tests for navigate."""

    def test_navigate_to_active_or_completed(self, parallel_graph):
        item = apply_completion(parallel_graph, fresh(parallel_graph), "a").item

        moved = navigate(parallel_graph, item, "c")
        assert moved.current_node_id == "c"
        assert item.current_node_id == "a"

        back = navigate(parallel_graph, moved, "a")
        assert back.current_node_id == "a"
        assert back.history == item.history

    def test_navigate_to_unreachable_node(self, parallel_graph):
        item = fresh(parallel_graph)
        with pytest.raises(InvalidTransitionError):
            navigate(parallel_graph, item, "final")
