# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the itemflow test suite.

Provides:
- Graph builders for the common flow shapes (linear, conditional, parallel)
- Responsibility groups and actors
- An engine wired to an in-memory store and a recording listener

Engine methods are coroutines; tests drive them with ``asyncio.run``.
"""

from __future__ import annotations

from typing import Any

import pytest

from itemflow.core.assignments import Actor, Group, GroupDirectory, Member
from itemflow.core.config import EngineConfig
from itemflow.core.engine import FlowEngine
from itemflow.core.graph_schema import FlowGraph
from itemflow.core.store import InMemoryAggregateStore


# =============================================================================
# Graph Builders
# =============================================================================


def node(node_id: str, node_type: str = "serial", **extra: Any) -> dict[str, Any]:
    """Node dict owned by the ops group unless overridden."""
    data: dict[str, Any] = {"id": node_id, "type": node_type, "responsibilities": ["ops"]}
    data.update(extra)
    return data


def edge(edge_id: str, source: str, target: str, **extra: Any) -> dict[str, Any]:
    return {"id": edge_id, "source": source, "target": target, **extra}


def build_graph(nodes: list[dict], edges: list[dict], flow_id: str = "flow-1") -> FlowGraph:
    return FlowGraph.model_validate({"id": flow_id, "nodes": nodes, "edges": edges})


@pytest.fixture
def make_graph():
    """Factory fixture: make_graph(nodes, edges, flow_id="flow-1")."""
    return build_graph


@pytest.fixture
def linear_graph() -> FlowGraph:
    """start(initial) -> a -> b -> final.

    The initial form requires a Title; ``a`` requires a Comment.
    """
    return build_graph(
        [
            node("start", "initial", label="Request",
                 inputs=[{"label": "Title", "type": "text", "required": True}]),
            node("a", label="Review",
                 inputs=[{"label": "Comment", "type": "textarea", "required": True}]),
            node("b", label="Approve"),
            node("final", "final", label="Done"),
        ],
        [
            edge("s-a", "start", "a"),
            edge("a-b", "a", "b"),
            edge("b-f", "b", "final"),
        ],
        flow_id="linear",
    )


@pytest.fixture
def conditional_graph() -> FlowGraph:
    """a(conditional) --e1--> b, a --e2--> c."""
    return build_graph(
        [
            node("a", "conditional", label="Decide",
                 outgoingEdgeTitles={"e1": "Approve", "e2": "Reject"}),
            node("b", label="Ship"),
            node("c", label="Return"),
        ],
        [
            edge("e1", "a", "b"),
            edge("e2", "a", "c"),
        ],
        flow_id="conditional",
    )


@pytest.fixture
def parallel_graph() -> FlowGraph:
    """a(parallel) -> {b, c} -> d(convergence) -> final."""
    return build_graph(
        [
            node("a", "parallel", label="Split"),
            node("b", label="Legal"),
            node("c", label="Finance"),
            node("d", "convergence", label="Join"),
            node("final", "final", label="Done"),
        ],
        [
            edge("e1", "a", "b"),
            edge("e2", "a", "c"),
            edge("e3", "b", "d"),
            edge("e4", "c", "d"),
            edge("e5", "d", "final"),
        ],
        flow_id="parallel",
    )


# =============================================================================
# Responsibility Fixtures
# =============================================================================


@pytest.fixture
def groups() -> list[Group]:
    return [
        Group(id="ops", name="Operations", members=[Member(email="alice@example.com")]),
        Group(id="finance", name="Finance", members=[Member(email="carol@example.com", user_id="u-carol")]),
        Group(id="admins", name="Admins", accept_any=True, members=[Member(email="root@example.com")]),
    ]


@pytest.fixture
def directory(groups) -> GroupDirectory:
    return GroupDirectory(groups)


@pytest.fixture
def alice() -> Actor:
    return Actor(mail="alice@example.com")


@pytest.fixture
def bob() -> Actor:
    """Not a member of any group."""
    return Actor(mail="bob@example.com")


@pytest.fixture
def admin() -> Actor:
    return Actor(user_principal_name="ROOT@example.com")


# =============================================================================
# Engine Fixtures
# =============================================================================


class RecordingListener:
    """Listener that records calls and hands out one task ref per node."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None, list[str]]] = []

    def on_transition(self, item, completed_node, newly_active):
        node_ids = [n.id for n in newly_active]
        source = completed_node.id if completed_node is not None else None
        self.calls.append((item.id, source, node_ids))
        return {node_id: f"task-{node_id}" for node_id in node_ids}


@pytest.fixture
def store() -> InMemoryAggregateStore:
    return InMemoryAggregateStore()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def engine(store, directory, listener) -> FlowEngine:
    return FlowEngine(store, directory, listener, EngineConfig(max_conflict_retries=2))
