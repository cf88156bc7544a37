"""Completion transition: the item state machine core.

``apply_completion`` takes an item snapshot and returns the next snapshot.
The input item is never modified; on any error nothing is applied.

Transition steps when completing node N:
1. Validation: required inputs present; conditional nodes with several
   successors need a selected edge
2. Data merge: values stored under the plain label and under ``N::label``
3. History update (idempotent)
4. Type-specific effect:
   - FINAL: item status becomes completed
   - PARALLEL: every outgoing edge fires, one branch tracker per edge
   - CONDITIONAL: only the selected edge is taken
   - SERIAL: all next edges are taken
   - A node sitting on an open parallel branch advances that branch's
     pointer; when every branch waits at the same convergence node, all of
     them move past it together
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from itemflow.core.errors import (
    FormValidationError,
    InvalidTransitionError,
    PathSelectionRequiredError,
)
from itemflow.core.graph_schema import FlowGraph, InputType, Node, NodeType
from itemflow.core.models import (
    COMPOSITE_KEY_SEPARATOR,
    Item,
    ItemStatus,
    ParallelPath,
    composite_key,
)
from itemflow.core.resolver import (
    active_nodes,
    find_next_accessible_node,
    first_reachable_node,
    next_actual_nodes,
)

logger = logging.getLogger(__name__)


class TransitionStatus(str, Enum):
    """Result of applying a completion."""

    COMPLETED = "completed"  # Node completed, item still active
    FINALIZED = "finalized"  # Final node completed, item closed
    ALREADY_COMPLETED = "already_completed"  # Node was in history, no-op
    ALREADY_FINAL = "already_final"  # Item was closed before, no-op


@dataclass
class TransitionResult:
    """Next item snapshot plus what changed."""

    item: Item
    status: TransitionStatus
    node_id: str
    taken_edges: list[str] = field(default_factory=list)
    newly_active: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.status in (TransitionStatus.COMPLETED, TransitionStatus.FINALIZED)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def missing_required_fields(node: Node, form_data: Mapping[str, Any]) -> list[str]:
    """Labels of required inputs absent from ``form_data``.

    Checkboxes only need a defined boolean; other fields need a non-blank value.
    """
    missing = []
    for input_field in node.required_inputs:
        value = form_data.get(input_field.label)
        if input_field.type == InputType.CHECKBOX:
            if value is None:
                missing.append(input_field.label)
        elif value is None or (isinstance(value, str) and not value.strip()):
            missing.append(input_field.label)
    return missing


def merge_form_data(
    item: Item,
    node_id: str,
    form_data: Mapping[str, Any],
    separator: str = COMPOSITE_KEY_SEPARATOR,
    write_plain_keys: bool = True,
) -> None:
    """Write submitted values under plain and node-qualified keys (in place)."""
    for label, value in form_data.items():
        if write_plain_keys:
            item.data[label] = value
        item.data[composite_key(node_id, label, separator)] = value


def create_item(
    graph: FlowGraph,
    data: Mapping[str, Any] | None = None,
    item_id: str | None = None,
    separator: str = COMPOSITE_KEY_SEPARATOR,
    write_plain_keys: bool = True,
    now: datetime | None = None,
) -> Item:
    """Create an item positioned on the first node after the initial node.

    The initial node's form is the creation form, so its required inputs are
    validated here. The item starts with an empty history.

    Raises:
        FormValidationError: If required initial inputs are missing.
    """
    data = dict(data or {})
    now = now or _utc_now()
    item = Item(id=item_id or str(uuid.uuid4()), created_at=now, updated_at=now)

    initial = graph.initial_node()
    if initial is None:
        # No creation form: start at the first root
        roots = active_nodes(graph, item)
        item.current_node_id = roots[0] if roots else None
        item.data.update(data)
        if not roots:
            item.status = ItemStatus.COMPLETED
        return item

    missing = missing_required_fields(initial, data)
    if missing:
        raise FormValidationError(initial.id, missing)

    merge_form_data(item, initial.id, data, separator, write_plain_keys)
    first = first_reachable_node(graph, initial.id)
    if first is None:
        item.current_node_id = initial.id
        item.status = ItemStatus.COMPLETED
    else:
        item.current_node_id = first

    logger.info(f"Created item {item.id} at node {item.current_node_id}")
    return item


def navigate(graph: FlowGraph, item: Item, node_id: str) -> Item:
    """Move ``currentNodeId`` to an active or already completed node.

    History and path taken are left untouched.

    Raises:
        InvalidTransitionError: If the node is neither active nor completed.
    """
    graph.node(node_id)
    if node_id not in item.history and node_id not in active_nodes(graph, item):
        raise InvalidTransitionError(
            f"Cannot navigate item '{item.id}' to node '{node_id}': not active or completed"
        )
    moved = item.model_copy(deep=True)
    moved.current_node_id = node_id
    return moved


def apply_completion(
    graph: FlowGraph,
    item: Item,
    node_id: str,
    form_data: Mapping[str, Any] | None = None,
    selected_edge_id: str | None = None,
    separator: str = COMPOSITE_KEY_SEPARATOR,
    write_plain_keys: bool = True,
    now: datetime | None = None,
) -> TransitionResult:
    """Complete ``node_id`` on ``item`` and return the next snapshot.

    Args:
        graph: Published flow graph
        item: Current item snapshot (not modified)
        node_id: Node being completed
        form_data: Submitted field values keyed by input label
        selected_edge_id: Chosen outgoing edge for conditional nodes
        separator: Composite key separator
        write_plain_keys: Also store values under the bare label
        now: Timestamp for ``updatedAt``

    Returns:
        TransitionResult with the new item

    Raises:
        NodeNotFoundError: If the node is not in the graph
        InvalidTransitionError: If the node is a convergence/initial node or not active
        FormValidationError: If required inputs are missing
        PathSelectionRequiredError: If a conditional needs a valid edge selection
    """
    form_data = dict(form_data or {})
    node = graph.node(node_id)

    if item.is_completed:
        logger.info(f"Item {item.id} already completed; ignoring completion of {node_id}")
        return TransitionResult(item.model_copy(deep=True), TransitionStatus.ALREADY_FINAL, node_id)

    if node.type == NodeType.CONVERGENCE:
        raise InvalidTransitionError(f"Convergence node '{node_id}' cannot be completed directly")
    if node.type == NodeType.INITIAL:
        raise InvalidTransitionError(
            f"Initial node '{node_id}' is completed by item creation"
        )

    if node_id in item.history:
        logger.info(f"Node {node_id} already completed on item {item.id}; no-op")
        return TransitionResult(
            item.model_copy(deep=True), TransitionStatus.ALREADY_COMPLETED, node_id
        )

    active_before = active_nodes(graph, item)
    if node_id not in active_before:
        raise InvalidTransitionError(f"Node '{node_id}' is not active on item '{item.id}'")

    # 1. Validation
    missing = missing_required_fields(node, form_data)
    if missing:
        raise FormValidationError(node_id, missing)

    successors = next_actual_nodes(graph, node_id)
    needs_selection = node.type == NodeType.CONDITIONAL and len(successors) > 1
    if needs_selection:
        choices = list(dict.fromkeys(s.via_edge_id for s in successors))
        if selected_edge_id not in choices:
            raise PathSelectionRequiredError(node_id, choices, selected_edge_id)

    updated = item.model_copy(deep=True)

    # 2. Data merge / 3. History
    merge_form_data(updated, node_id, form_data, separator, write_plain_keys)
    updated.add_history(node_id)

    # 4. Type-specific effect
    taken: list[str] = []
    if node.type == NodeType.FINAL:
        updated.status = ItemStatus.COMPLETED
        updated.current_node_id = node_id
        _close_all_branches(updated)
        status = TransitionStatus.FINALIZED
    elif node.type == NodeType.PARALLEL:
        taken = _fork(graph, updated, node_id)
        status = TransitionStatus.COMPLETED
    else:
        if needs_selection:
            taken = [selected_edge_id]
        else:
            taken = list(dict.fromkeys(s.via_edge_id for s in successors))
        updated.add_path(*taken)

        if not _advance_branch(graph, updated, node_id, taken):
            _advance_current(graph, updated, taken)
            _release_parked_joins(graph, updated)
        status = TransitionStatus.COMPLETED

    updated.version += 1
    updated.updated_at = now or _utc_now()

    active_after = active_nodes(graph, updated)
    newly_active = [n for n in active_after if n not in active_before]

    logger.info(
        f"Item {item.id}: completed {node_id} ({node.type}), "
        f"took {taken or 'no edges'}, now active {active_after}"
    )
    return TransitionResult(updated, status, node_id, taken, newly_active)


def _fork(graph: FlowGraph, item: Item, node_id: str) -> list[str]:
    """Fire every outgoing edge of a parallel node and open branch trackers."""
    edges = graph.outgoing(node_id)
    item.parallel_paths[node_id] = [
        ParallelPath(path_id=edge.id, completed=False, current_node=edge.target, path_index=index)
        for index, edge in enumerate(edges)
    ]
    edge_ids = [edge.id for edge in edges]
    item.add_path(*edge_ids)
    return edge_ids


def _advance_current(graph: FlowGraph, item: Item, taken: list[str]) -> None:
    """Point ``currentNodeId`` at the single next node, if it can be entered yet."""
    if len(taken) != 1:
        return
    edge = graph.edge(taken[0])
    if edge is None:
        return
    next_id = find_next_accessible_node(graph, item, edge.target)
    if next_id is not None:
        item.current_node_id = next_id
    else:
        logger.debug(f"Item {item.id}: waiting at convergence '{edge.target}'")


def _find_open_branch(item: Item, node_id: str) -> tuple[str, ParallelPath] | None:
    for fork_id, paths in item.parallel_paths.items():
        for path in paths:
            if not path.completed and path.current_node == node_id:
                return fork_id, path
    return None


def _close_all_branches(item: Item) -> None:
    for paths in item.parallel_paths.values():
        for path in paths:
            path.completed = True


def _advance_branch(graph: FlowGraph, item: Item, node_id: str, taken: list[str]) -> bool:
    """Move the parallel branch that sits on ``node_id`` forward.

    Returns False when the node is not on an open branch.
    """
    found = _find_open_branch(item, node_id)
    if found is None:
        return False
    fork_id, branch = found
    paths = item.parallel_paths[fork_id]

    next_edge = graph.edge(taken[0]) if taken else None
    if next_edge is None:
        branch.completed = True
        logger.debug(f"Item {item.id}: branch {branch.path_id} of {fork_id} finished")
        return True

    target = graph.node(next_edge.target)
    branch.current_node = target.id
    if target.type != NodeType.CONVERGENCE:
        return True

    # Barrier: every branch of this fork parked on (or finished past) the join
    if not all(p.current_node == target.id or p.completed for p in paths):
        logger.debug(f"Item {item.id}: branch {branch.path_id} waiting at {target.id}")
        return True

    if not next_actual_nodes(graph, target.id):
        for path in paths:
            if path.current_node == target.id:
                path.completed = True
        return True

    _release_join(graph, item, fork_id, target.id)
    return True


def _release_join(graph: FlowGraph, item: Item, fork_id: str, join_id: str) -> None:
    """Move branches parked at ``join_id`` to the first node whose barriers all hold.

    Later convergence nodes may still wait on edges from outside the fork; the
    branches then stay parked and ``currentNodeId`` is left alone.
    """
    after = find_next_accessible_node(graph, item, join_id)
    if after is None:
        logger.debug(f"Item {item.id}: {join_id} still waiting on other incoming edges")
        return

    for path in item.parallel_paths[fork_id]:
        if not path.completed and path.current_node == join_id:
            path.current_node = after
    item.current_node_id = after
    logger.info(f"Item {item.id}: all branches of {fork_id} joined at {join_id} -> {after}")


def _release_parked_joins(graph: FlowGraph, item: Item) -> None:
    """Release forks whose open branches all wait at one convergence node.

    Needed when the last missing parent of that join sits outside the fork.
    """
    for fork_id, paths in item.parallel_paths.items():
        parked = {p.current_node for p in paths if not p.completed}
        if len(parked) != 1:
            continue
        join_id = parked.pop()
        node = graph.get_node(join_id)
        if node is not None and node.type == NodeType.CONVERGENCE:
            _release_join(graph, item, fork_id, join_id)
