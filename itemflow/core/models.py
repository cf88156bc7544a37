"""Item state models.

An Item is one running instance of a flow. Transitions never mutate an Item
in place; they work on a deep copy and return it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from itemflow.core.graph_schema import FlowGraph

COMPOSITE_KEY_SEPARATOR = "::"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def composite_key(node_id: str, label: str, separator: str = COMPOSITE_KEY_SEPARATOR) -> str:
    """Node-qualified data key, e.g. ``review::Comment``."""
    return f"{node_id}{separator}{label}"


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class ItemStatus(str, Enum):
    """Lifecycle status of an item."""

    ACTIVE = "active"
    COMPLETED = "completed"


class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ParallelPath(_StateModel):
    """Tracker for one branch of a parallel fork."""

    path_id: str  # Outgoing edge id of the fork
    completed: bool = False
    current_node: str
    path_index: int = 0


class Item(_StateModel):
    """Execution record of one item travelling through a flow."""

    id: str
    data: dict[str, Any] = Field(default_factory=dict)
    current_node_id: str | None = None
    status: ItemStatus = ItemStatus.ACTIVE

    # Set semantics, insertion order kept for display
    history: list[str] = Field(default_factory=list)
    path_taken: list[str] = Field(default_factory=list)

    parallel_paths: dict[str, list[ParallelPath]] = Field(default_factory=dict)

    # Per-item responsibility overrides: node id -> group ids or user ids
    assigned_responsibilities: dict[str, list[str]] = Field(
        default_factory=dict,
        validation_alias=AliasChoices(
            "assignedResponsibilities", "assigned_responsibilities", "assignedResponsibles"
        ),
    )

    version: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("history", "path_taken", mode="before")
    @classmethod
    def _dedupe_lists(cls, v):
        if v is None:
            return []
        return _dedupe([str(x) for x in v])

    @field_validator("parallel_paths", "assigned_responsibilities", "data", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return {} if v is None else v

    @property
    def is_completed(self) -> bool:
        return self.status == ItemStatus.COMPLETED

    def has_completed(self, node_id: str) -> bool:
        return node_id in self.history

    def took_edge(self, edge_id: str) -> bool:
        return edge_id in self.path_taken

    def add_history(self, node_id: str) -> None:
        if node_id not in self.history:
            self.history.append(node_id)

    def add_path(self, *edge_ids: str) -> None:
        for edge_id in edge_ids:
            if edge_id not in self.path_taken:
                self.path_taken.append(edge_id)

    def assignments_for(self, node_id: str) -> list[str]:
        return list(self.assigned_responsibilities.get(node_id) or [])


class FlowAggregate(_StateModel):
    """Whole-flow snapshot exchanged with persistence: graph plus its items."""

    graph: FlowGraph
    items: list[Item] = Field(default_factory=list)
    version: int = 0

    def get_item(self, item_id: str) -> Item | None:
        return next((i for i in self.items if i.id == item_id), None)

    def replace_item(self, item: Item) -> None:
        for index, existing in enumerate(self.items):
            if existing.id == item.id:
                self.items[index] = item
                return
        self.items.append(item)


def lookup_field(
    graph: FlowGraph,
    item: Item,
    key: str,
    separator: str = COMPOSITE_KEY_SEPARATOR,
) -> Any:
    """Resolve a submitted value from ``item.data``.

    Accepts a composite key (``nodeId::label``), a display key
    (``"Node label: Input label"``) or a plain label. Composite entries win
    over plain ones because plain labels collide across nodes.
    Returns None when nothing matches.
    """
    data = item.data
    key = key.strip()
    if separator in key and key in data:
        return data[key]

    if ": " in key:
        node_label, input_label = key.split(": ", 1)
        node = next((n for n in graph.nodes if n.label == node_label), None)
        if node is not None:
            composite = composite_key(node.id, input_label, separator)
            if composite in data:
                return data[composite]
        key = input_label

    if key in data:
        return data[key]

    # Fall back to any node's composite entry for the bare label
    suffix = f"{separator}{key}"
    for data_key, value in data.items():
        if data_key.endswith(suffix):
            return value
    return None
