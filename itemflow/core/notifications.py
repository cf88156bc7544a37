"""Downstream collaborators invoked after a successful transition.

A listener runs after history and path taken are computed and before the
aggregate is persisted. Whatever references it returns (task ids, message
ids) are written back into the item's data under the configured key.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Mapping
from typing import Protocol

from itemflow.core.graph_schema import Node
from itemflow.core.models import Item

logger = logging.getLogger(__name__)


class TransitionListener(Protocol):
    def on_transition(
        self, item: Item, completed_node: Node | None, newly_active: list[Node]
    ) -> Mapping[str, str] | Awaitable[Mapping[str, str] | None] | None:
        """Handle newly active nodes; return ``{node_id: reference}`` to store."""
        ...


class LoggingListener:
    """Listener that only logs which nodes became active."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def on_transition(
        self, item: Item, completed_node: Node | None, newly_active: list[Node]
    ) -> None:
        names = ", ".join(n.display_name for n in newly_active) or "none"
        source = completed_node.display_name if completed_node is not None else "creation"
        self._log.info(f"Item {item.id}: after {source}, now waiting on {names}")
        return None
