"""Optimistic concurrency guard for completions.

Several actors may complete nodes on the same item at once. Before a
completion is computed, the latest persisted item is compared with the
caller's local copy:

- node already in the latest history: stale, nothing to do
- latest ``currentNodeId`` moved: rebase on the latest copy and skip
  notifications (the actor who advanced the item already sent them)
- latest copy is newer but still at the same node (e.g. another parallel
  branch was completed): rebase, notifications stay on
- otherwise: proceed with the local copy

This is check-then-act, not a lock. The aggregate store's version check
closes the remaining window between re-read and write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from itemflow.core.models import Item

logger = logging.getLogger(__name__)


class GuardOutcome(str, Enum):
    """What the guard decided about the local snapshot."""

    PROCEED = "proceed"
    REBASE = "rebase"
    STALE = "stale"


@dataclass
class GuardDecision:
    outcome: GuardOutcome
    base: Item
    notify: bool = True

    @property
    def is_stale(self) -> bool:
        return self.outcome == GuardOutcome.STALE


@dataclass
class StaleStateNotice:
    """Another actor already completed the node; carries the fresh item."""

    item: Item
    node_id: str

    @property
    def message(self) -> str:
        return f"Node '{self.node_id}' was already completed on item '{self.item.id}'"


class OptimisticConcurrencyGuard:
    """Decide which snapshot a completion should be computed from."""

    def check(self, local: Item, latest: Item, node_id: str) -> GuardDecision:
        if node_id in latest.history:
            logger.info(f"Item {latest.id}: node {node_id} already completed by another actor")
            return GuardDecision(GuardOutcome.STALE, latest, notify=False)

        if latest.current_node_id != local.current_node_id:
            logger.warning(
                f"Item {latest.id}: current node moved "
                f"{local.current_node_id} -> {latest.current_node_id}; rebasing without notify"
            )
            return GuardDecision(GuardOutcome.REBASE, latest, notify=False)

        if latest.version > local.version:
            logger.warning(
                f"Item {latest.id}: local copy v{local.version} behind v{latest.version}; rebasing"
            )
            return GuardDecision(GuardOutcome.REBASE, latest, notify=True)

        return GuardDecision(GuardOutcome.PROCEED, local, notify=True)
