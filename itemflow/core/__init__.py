"""Core modules for the itemflow engine."""

from itemflow.core.assignments import Actor, Group, GroupDirectory, Member
from itemflow.core.concurrency import OptimisticConcurrencyGuard, StaleStateNotice
from itemflow.core.config import EngineConfig, load_config
from itemflow.core.engine import CompletionOutcome, CompletionStatus, FlowEngine
from itemflow.core.graph_schema import Edge, FlowGraph, InputField, InputType, NodeType
from itemflow.core.models import FlowAggregate, Item, ItemStatus, ParallelPath
from itemflow.core.resolver import (
    active_nodes,
    can_enter_convergence,
    find_next_accessible_node,
    next_actual_nodes,
)
from itemflow.core.store import InMemoryAggregateStore, JsonFileAggregateStore
from itemflow.core.transition import apply_completion, create_item, navigate

__all__ = [
    "Actor",
    "CompletionOutcome",
    "CompletionStatus",
    "Edge",
    "EngineConfig",
    "FlowAggregate",
    "FlowEngine",
    "FlowGraph",
    "Group",
    "GroupDirectory",
    "InMemoryAggregateStore",
    "InputField",
    "InputType",
    "Item",
    "ItemStatus",
    "JsonFileAggregateStore",
    "Member",
    "NodeType",
    "OptimisticConcurrencyGuard",
    "ParallelPath",
    "StaleStateNotice",
    "active_nodes",
    "apply_completion",
    "can_enter_convergence",
    "create_item",
    "find_next_accessible_node",
    "load_config",
    "navigate",
    "next_actual_nodes",
]
