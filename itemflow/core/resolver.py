"""Graph reachability under partial completion.

Pure functions of ``(graph, item)``:

- ``active_nodes``: nodes currently eligible for completion
- ``can_enter_convergence``: AND-barrier check for convergence nodes
- ``next_actual_nodes``: successors of a node, seeing through convergence nodes
- ``find_next_accessible_node``: first node past convergence nodes whose barrier holds

Ordinary nodes with several parents use OR semantics (any satisfied incoming
edge activates them). Only the ``convergence`` type selects AND semantics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from itemflow.core.errors import GraphInvalidError
from itemflow.core.graph_schema import Edge, FlowGraph, Node, NodeType
from itemflow.core.models import Item

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NextNode:
    """A reachable successor, tagged with the edge that leaves the origin node."""

    node: Node
    via_edge_id: str
    edge_title: str

    @property
    def node_id(self) -> str:
        return self.node.id


def next_actual_nodes(graph: FlowGraph, node_id: str) -> list[NextNode]:
    """Successors of ``node_id`` with convergence nodes made transparent.

    Results found behind a convergence node keep the id and title of the
    original outgoing edge so the caller records the right ``pathTaken`` entry.

    Raises:
        GraphInvalidError: If convergence nodes form a cycle.
    """
    return _next_actual(graph, node_id, frozenset({node_id}))


def _next_actual(graph: FlowGraph, node_id: str, visiting: frozenset[str]) -> list[NextNode]:
    results: list[NextNode] = []
    for edge in graph.outgoing(node_id):
        target = graph.get_node(edge.target)
        if target is None:
            continue
        title = graph.edge_title(edge)

        if target.type == NodeType.CONVERGENCE:
            if target.id in visiting:
                raise GraphInvalidError(
                    f"Cycle through convergence node '{target.id}' reached from '{node_id}'"
                )
            for child in _next_actual(graph, target.id, visiting | {target.id}):
                results.append(NextNode(child.node, edge.id, title))
        else:
            results.append(NextNode(target, edge.id, title))
    return results


def can_enter_convergence(graph: FlowGraph, item: Item, node_id: str) -> bool:
    """True iff every incoming edge of the convergence node has a satisfied source.

    A source is satisfied when it is in ``item.history``. Initial nodes count
    as satisfied (completed by item creation) and an upstream convergence node
    counts when its own barrier holds. Non-convergence nodes are always enterable.

    Raises:
        GraphInvalidError: If convergence nodes feed each other in a cycle.
    """
    return _can_enter(graph, item, node_id, frozenset())


def _can_enter(graph: FlowGraph, item: Item, node_id: str, visiting: frozenset[str]) -> bool:
    node = graph.get_node(node_id)
    if node is None or node.type != NodeType.CONVERGENCE:
        return True
    if node_id in visiting:
        raise GraphInvalidError(f"Cycle through convergence node '{node_id}'")

    visiting = visiting | {node_id}
    for edge in graph.incoming(node_id):
        source = graph.get_node(edge.source)
        if source is None:
            return False
        if source.type == NodeType.CONVERGENCE:
            if not _can_enter(graph, item, source.id, visiting):
                return False
        elif source.type == NodeType.INITIAL:
            continue
        elif source.id not in item.history:
            return False
    return True


def edge_satisfied(graph: FlowGraph, item: Item, edge: Edge) -> bool:
    """Whether ``edge`` currently lets its target become active."""
    parent = graph.get_node(edge.source)
    if parent is None:
        return False
    if parent.type == NodeType.CONVERGENCE:
        return can_enter_convergence(graph, item, parent.id)
    if parent.type == NodeType.INITIAL:
        return True
    if parent.id not in item.history:
        return False
    if parent.type in (NodeType.CONDITIONAL, NodeType.PARALLEL):
        return edge.id in item.path_taken
    return True


def active_nodes(graph: FlowGraph, item: Item) -> list[str]:
    """Node ids currently actionable on ``item``, in graph order.

    Convergence and initial nodes are never active, nor is anything already in
    history. A completed item has no active nodes.
    """
    if item.is_completed:
        return []

    active = []
    for node in graph.nodes:
        if node.type in (NodeType.CONVERGENCE, NodeType.INITIAL):
            continue
        if node.id in item.history:
            continue

        incoming = graph.incoming(node.id)
        if not incoming or any(edge_satisfied(graph, item, edge) for edge in incoming):
            active.append(node.id)

    logger.debug(f"Item {item.id}: active nodes {active}")
    return active


def find_next_accessible_node(graph: FlowGraph, item: Item, node_id: str) -> str | None:
    """Walk past convergence nodes whose barrier holds.

    Returns ``node_id`` itself for ordinary nodes, the first reachable node
    behind an open convergence node, or None while a barrier is still closed.
    """
    return _next_accessible(graph, item, node_id, frozenset())


def _next_accessible(
    graph: FlowGraph, item: Item, node_id: str, visiting: frozenset[str]
) -> str | None:
    node = graph.get_node(node_id)
    if node is None:
        return None
    if node.type != NodeType.CONVERGENCE:
        return node_id
    if node_id in visiting:
        raise GraphInvalidError(f"Cycle through convergence node '{node_id}'")
    if not can_enter_convergence(graph, item, node_id):
        return None

    for edge in graph.outgoing(node_id):
        found = _next_accessible(graph, item, edge.target, visiting | {node_id})
        if found:
            return found
    return None


def first_reachable_node(graph: FlowGraph, node_id: str) -> str | None:
    """First non-convergence successor of ``node_id`` (used to place new items)."""
    successors = next_actual_nodes(graph, node_id)
    return successors[0].node_id if successors else None
