"""Flow engine facade.

Ties the pure state machine to its collaborators:

    re-read latest aggregate -> concurrency guard -> authorization
    -> completion transition (validation inside) -> assignment check
    -> listener -> versioned write

Each call works on a fresh snapshot; nothing is cached between calls. Store
calls run in a worker thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from itemflow.core.assignments import Actor, AssignmentDirectory
from itemflow.core.concurrency import (
    GuardOutcome,
    OptimisticConcurrencyGuard,
    StaleStateNotice,
)
from itemflow.core.config import EngineConfig
from itemflow.core.errors import (
    AssignmentRequiredError,
    AuthorizationError,
    ConcurrentModificationError,
    FlowNotFoundError,
    ItemNotFoundError,
)
from itemflow.core.graph_schema import FlowGraph, Node
from itemflow.core.models import FlowAggregate, Item
from itemflow.core.notifications import TransitionListener
from itemflow.core.resolver import active_nodes
from itemflow.core.store import AggregateStore
from itemflow.core.transition import (
    TransitionStatus,
    apply_completion,
    create_item,
    navigate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CompletionStatus(str, Enum):
    """Outcome reported to the caller of ``complete_node``."""

    COMPLETED = "completed"
    FINALIZED = "finalized"
    STALE = "stale"  # Another actor already completed the node
    ALREADY_COMPLETED = "already_completed"
    ALREADY_FINAL = "already_final"


_FROM_TRANSITION = {
    TransitionStatus.COMPLETED: CompletionStatus.COMPLETED,
    TransitionStatus.FINALIZED: CompletionStatus.FINALIZED,
    TransitionStatus.ALREADY_COMPLETED: CompletionStatus.ALREADY_COMPLETED,
    TransitionStatus.ALREADY_FINAL: CompletionStatus.ALREADY_FINAL,
}


@dataclass
class CompletionOutcome:
    item: Item
    status: CompletionStatus
    node_id: str
    newly_active: list[str] = field(default_factory=list)
    notified: bool = False
    rebased: bool = False
    notice: StaleStateNotice | None = None

    @property
    def persisted(self) -> bool:
        return self.status in (CompletionStatus.COMPLETED, CompletionStatus.FINALIZED)


class FlowEngine:
    """
    Workflow-instance engine.

    Collaborators are injected:
    - store: reads and writes whole flow aggregates
    - directory: answers who is responsible for / may act on a node
    - listener: optional downstream hook (task creation, notifications)
    """

    def __init__(
        self,
        store: AggregateStore,
        directory: AssignmentDirectory,
        listener: TransitionListener | None = None,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.directory = directory
        self.listener = listener
        self.config = config or EngineConfig()
        self.guard = OptimisticConcurrencyGuard()

    # ========== Store Helpers ==========

    async def _load(self, flow_id: str) -> FlowAggregate:
        return await asyncio.to_thread(self.store.get_aggregate, flow_id)

    async def _save(self, flow_id: str, aggregate: FlowAggregate) -> int:
        return await asyncio.to_thread(
            self.store.put_aggregate, flow_id, aggregate, aggregate.version
        )

    async def _load_item(self, flow_id: str, item_id: str) -> tuple[FlowAggregate, Item]:
        aggregate = await self._load(flow_id)
        item = aggregate.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id, flow_id)
        return aggregate, item

    async def _with_retries(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Re-run ``operation`` when the versioned write loses a race."""
        attempts = self.config.max_conflict_retries + 1
        attempt = 1
        while True:
            try:
                return await operation()
            except ConcurrentModificationError as e:
                if attempt >= attempts:
                    logger.error(f"Giving up after {attempt} conflicting writes: {e}")
                    raise
                logger.warning(f"Write conflict (attempt {attempt}/{attempts}): {e}; retrying")
                attempt += 1

    # ========== Flows ==========

    async def publish_flow(self, graph: FlowGraph, items: list[Item] | None = None) -> int:
        """Validate a graph and store it as a new aggregate.

        Raises:
            GraphInvalidError: If the graph is malformed.
        """
        graph.ensure_valid()
        aggregate = FlowAggregate(graph=graph, items=list(items or []))
        try:
            current = await self._load(graph.id)
            aggregate.items = current.items if items is None else aggregate.items
            aggregate.version = current.version
        except FlowNotFoundError:
            pass
        version = await self._save(graph.id, aggregate)
        logger.info(f"Published flow {graph.id} (version {version})")
        return version

    async def get_aggregate(self, flow_id: str) -> FlowAggregate:
        return await self._load(flow_id)

    # ========== Queries ==========

    async def active_nodes(self, flow_id: str, item_id: str) -> list[str]:
        aggregate, item = await self._load_item(flow_id, item_id)
        return active_nodes(aggregate.graph, item)

    def user_can_act(self, actor: Actor, graph: FlowGraph, node_id: str, item: Item) -> bool:
        return self.directory.user_can_act(actor, graph.node(node_id), item)

    # ========== Item Lifecycle ==========

    async def create_item(
        self,
        flow_id: str,
        data: Mapping[str, Any] | None = None,
        item_id: str | None = None,
    ) -> Item:
        """Create an item from the initial node's form and persist it."""
        item_id = item_id or str(uuid.uuid4())
        # Listener refs survive a lost write so a retry does not notify twice
        carried: dict[str, Any] = {}

        async def attempt() -> Item:
            aggregate = await self._load(flow_id)
            graph = aggregate.graph
            item = create_item(
                graph,
                data,
                item_id=item_id,
                separator=self.config.composite_key_separator,
                write_plain_keys=self.config.write_plain_keys,
            )
            await self._notify(
                graph, item, graph.initial_node(), active_nodes(graph, item), carried
            )
            aggregate.replace_item(item)
            await self._save(flow_id, aggregate)
            return item

        return await self._with_retries(attempt)

    async def navigate(self, flow_id: str, item_id: str, node_id: str) -> Item:
        """Point the item at an active or completed node."""

        async def attempt() -> Item:
            aggregate, item = await self._load_item(flow_id, item_id)
            moved = navigate(aggregate.graph, item, node_id)
            aggregate.replace_item(moved)
            await self._save(flow_id, aggregate)
            return moved

        return await self._with_retries(attempt)

    async def assign_responsibilities(
        self, flow_id: str, item_id: str, assignments: Mapping[str, list[str]]
    ) -> Item:
        """Merge per-item responsibility overrides (node id -> groups/users)."""

        async def attempt() -> Item:
            aggregate, item = await self._load_item(flow_id, item_id)
            graph = aggregate.graph
            updated = item.model_copy(deep=True)
            for node_id, assignees in assignments.items():
                graph.node(node_id)
                updated.assigned_responsibilities[node_id] = [str(a) for a in assignees]
            aggregate.replace_item(updated)
            await self._save(flow_id, aggregate)
            return updated

        return await self._with_retries(attempt)

    async def complete_node(
        self,
        flow_id: str,
        item_id: str,
        node_id: str,
        actor: Actor,
        form_data: Mapping[str, Any] | None = None,
        selected_edge_id: str | None = None,
        local_item: Item | None = None,
        assignments: Mapping[str, list[str]] | None = None,
    ) -> CompletionOutcome:
        """
        Complete a node on behalf of ``actor``.

        Args:
            flow_id: Flow aggregate id
            item_id: Item being advanced
            node_id: Node to complete
            actor: User performing the action
            form_data: Submitted field values keyed by input label
            selected_edge_id: Chosen edge for conditional nodes
            local_item: The caller's (possibly stale) copy of the item
            assignments: Per-item responsibility overrides to apply first

        Returns:
            CompletionOutcome; status STALE carries the fresh item

        Raises:
            AuthorizationError: Actor may not act on the node
            FormValidationError: Required inputs missing or no path selected
            AssignmentRequiredError: Next nodes have nobody responsible
            InvalidTransitionError: Node is not completable in this state
            PersistenceError: Store read/write failed
        """

        carried: dict[str, Any] = {}

        async def attempt() -> CompletionOutcome:
            return await self._complete_once(
                flow_id,
                item_id,
                node_id,
                actor,
                dict(form_data or {}),
                selected_edge_id,
                local_item,
                assignments,
                carried,
            )

        return await self._with_retries(attempt)

    async def _complete_once(
        self,
        flow_id: str,
        item_id: str,
        node_id: str,
        actor: Actor,
        form_data: dict[str, Any],
        selected_edge_id: str | None,
        local_item: Item | None,
        assignments: Mapping[str, list[str]] | None,
        carried: dict[str, Any],
    ) -> CompletionOutcome:
        aggregate, latest = await self._load_item(flow_id, item_id)
        graph = aggregate.graph
        node = graph.node(node_id)

        decision = self.guard.check(local_item or latest, latest, node_id)
        if decision.outcome == GuardOutcome.STALE:
            return CompletionOutcome(
                item=latest,
                status=CompletionStatus.STALE,
                node_id=node_id,
                notice=StaleStateNotice(latest, node_id),
            )

        base = decision.base
        if assignments:
            base = base.model_copy(deep=True)
            for target_id, assignees in assignments.items():
                graph.node(target_id)
                base.assigned_responsibilities[target_id] = [str(a) for a in assignees]

        if not self.directory.user_can_act(actor, node, base):
            logger.warning(f"Refused {actor.display} on node {node_id} of item {item_id}")
            raise AuthorizationError(actor.display, node_id)

        result = apply_completion(
            graph,
            base,
            node_id,
            form_data,
            selected_edge_id,
            separator=self.config.composite_key_separator,
            write_plain_keys=self.config.write_plain_keys,
        )
        if not result.changed:
            return CompletionOutcome(
                item=result.item,
                status=_FROM_TRANSITION[result.status],
                node_id=node_id,
                rebased=decision.outcome == GuardOutcome.REBASE,
            )

        if self.config.require_assignment:
            pending = [
                n
                for n in result.newly_active
                if self.directory.needs_assignment(result.item, graph.node(n))
            ]
            if pending:
                raise AssignmentRequiredError(pending)

        if decision.notify:
            notified = await self._notify(
                graph, result.item, node, result.newly_active, carried
            )
            notified = notified or any(n in carried for n in result.newly_active)
        else:
            logger.info(f"Item {item_id}: rebased completion of {node_id}, skipping notifications")
            notified = self._carry_refs(result.item, carried)

        aggregate.replace_item(result.item)
        await self._save(flow_id, aggregate)

        return CompletionOutcome(
            item=result.item,
            status=_FROM_TRANSITION[result.status],
            node_id=node_id,
            newly_active=result.newly_active,
            notified=notified,
            rebased=decision.outcome == GuardOutcome.REBASE,
        )

    def _carry_refs(self, item: Item, carried: Mapping[str, Any]) -> bool:
        """Write refs collected by an earlier attempt into ``item`` (in place)."""
        if not carried:
            return False
        key = self.config.task_refs_key
        item.data[key] = {**(item.data.get(key) or {}), **carried}
        return True

    async def _notify(
        self,
        graph: FlowGraph,
        item: Item,
        completed_node: Node | None,
        node_ids: list[str],
        carried: dict[str, Any],
    ) -> bool:
        """Run the listener for nodes without a stored reference yet (in place).

        New refs are also recorded in ``carried`` for retries of the same call.
        """
        self._carry_refs(item, carried)
        if self.listener is None:
            return False

        key = self.config.task_refs_key
        existing = dict(item.data.get(key) or {})
        targets = [graph.node(n) for n in node_ids if n not in existing]
        if not targets:
            return False

        try:
            refs = self.listener.on_transition(item, completed_node, targets)
            if inspect.isawaitable(refs):
                refs = await refs
        except Exception as e:
            logger.error(f"Listener failed for item {item.id}: {e}")
            return False

        if refs:
            new_refs = {str(k): v for k, v in refs.items()}
            carried.update(new_refs)
            existing.update(new_refs)
            item.data[key] = existing
        return True
