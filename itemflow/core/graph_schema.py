"""Flow graph schema definitions using Pydantic models.

A flow is published as an immutable directed graph of typed nodes connected
by edges. Node types:

- INITIAL: creation form of an item, implicitly completed when the item is created
- SERIAL: ordinary step with a single way forward
- PARALLEL: fork, every outgoing edge fires at once
- CONDITIONAL: the actor picks exactly one outgoing edge
- CONVERGENCE: passive AND-barrier joining parallel branches
- FINAL: completing it closes the item

Nodes are a discriminated union keyed by ``type`` so each variant only carries
the fields that make sense for it. The wire format uses camelCase names
(``outgoingEdgeTitles``); snake_case is accepted on input as well.
"""

from __future__ import annotations

import json
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import networkx as nx
import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from itemflow.core.errors import GraphInvalidError, NodeNotFoundError


class NodeType(str, Enum):
    """Supported node types in flow graphs"""

    INITIAL = "initial"
    SERIAL = "serial"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    CONVERGENCE = "convergence"
    FINAL = "final"


class InputType(str, Enum):
    """Field types an actor can fill in when completing a node"""

    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    DATE = "date"
    TEXTAREA = "textarea"
    CHECKBOX = "checkbox"


class WireModel(BaseModel):
    """Frozen model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class InputField(WireModel):
    """Field descriptor on a node's form"""

    label: str
    type: InputType = InputType.TEXT
    required: bool = False


class _NodeBase(WireModel):
    """Fields shared by every node variant"""

    id: str
    label: str | None = None
    inputs: list[InputField] = Field(default_factory=list)
    responsibilities: list[str] = Field(default_factory=list)

    # UI metadata (canvas position) kept for round-tripping
    position: dict[str, float] | None = None

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_shape(cls, data: Any) -> Any:
        """Accept the editor shape ``{id, type, position, data: {...}}``.

        Also folds the legacy single ``responsibility`` into ``responsibilities``.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        nested = data.pop("data", None)
        if isinstance(nested, dict):
            for key, value in nested.items():
                data.setdefault(key, value)

        legacy = data.pop("responsibility", None)
        if legacy and not data.get("responsibilities"):
            data["responsibilities"] = [legacy]
        if data.get("responsibilities"):
            data["responsibilities"] = [str(r) for r in data["responsibilities"] if r]
        return data

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)

    @property
    def display_name(self) -> str:
        return self.label or self.id

    @property
    def required_inputs(self) -> list[InputField]:
        return [field for field in self.inputs if field.required]


class InitialNode(_NodeBase):
    type: Literal["initial"] = "initial"


class SerialNode(_NodeBase):
    type: Literal["serial"] = "serial"


class ParallelNode(_NodeBase):
    type: Literal["parallel"] = "parallel"


class ConditionalNode(_NodeBase):
    """Branching node; the actor selects one outgoing edge."""

    type: Literal["conditional"] = "conditional"
    outgoing_edge_titles: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_edge_list(cls, data: Any) -> Any:
        # Editor stores titles as data.edges = [{id, title}]
        if not isinstance(data, dict):
            return data
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        edges = data.get("edges", nested.get("edges"))
        if isinstance(edges, list) and not (
            data.get("outgoingEdgeTitles") or data.get("outgoing_edge_titles")
        ):
            data = dict(data)
            data["outgoingEdgeTitles"] = {
                str(e["id"]): str(e.get("title") or "")
                for e in edges
                if isinstance(e, dict) and e.get("id")
            }
            data.pop("edges", None)
            if nested:
                data["data"] = {k: v for k, v in nested.items() if k != "edges"}
        return data


class ConvergenceNode(_NodeBase):
    type: Literal["convergence"] = "convergence"


class FinalNode(_NodeBase):
    type: Literal["final"] = "final"


Node = Annotated[
    Union[InitialNode, SerialNode, ParallelNode, ConditionalNode, ConvergenceNode, FinalNode],
    Field(discriminator="type"),
]


class Edge(WireModel):
    """Directed edge between nodes"""

    id: str
    source: str
    target: str
    title: str | None = Field(default=None, validation_alias=AliasChoices("title", "label"))


class FlowGraph(WireModel):
    """Complete, published flow definition"""

    id: str = "flow"
    name: str | None = None
    description: str | None = None

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    # ========== Loading ==========

    @classmethod
    def from_file(cls, path: Path | str) -> FlowGraph:
        """Load a flow definition from a YAML or JSON file."""
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                raw = json.load(f)
            else:
                raw = yaml.safe_load(f)
        if not isinstance(raw, dict):
            raise GraphInvalidError(f"{path}: flow definition must be a mapping")
        return cls.model_validate(raw)

    from_yaml = from_file

    # ========== Lookups ==========

    @cached_property
    def _node_index(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    @cached_property
    def _edge_index(self) -> dict[str, Edge]:
        return {edge.id: edge for edge in self.edges}

    @cached_property
    def _outgoing_index(self) -> dict[str, list[Edge]]:
        index: dict[str, list[Edge]] = {}
        for edge in self.edges:
            index.setdefault(edge.source, []).append(edge)
        return index

    @cached_property
    def _incoming_index(self) -> dict[str, list[Edge]]:
        index: dict[str, list[Edge]] = {}
        for edge in self.edges:
            index.setdefault(edge.target, []).append(edge)
        return index

    def get_node(self, node_id: str) -> Node | None:
        return self._node_index.get(node_id)

    def node(self, node_id: str) -> Node:
        """Return the node or raise NodeNotFoundError."""
        try:
            return self._node_index[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id) from None

    def edge(self, edge_id: str) -> Edge | None:
        return self._edge_index.get(edge_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing_index.get(node_id, []))

    def incoming(self, node_id: str) -> list[Edge]:
        return list(self._incoming_index.get(node_id, []))

    def initial_node(self) -> InitialNode | None:
        return next((n for n in self.nodes if n.type == NodeType.INITIAL), None)

    def edge_title(self, edge: Edge) -> str:
        """Display label for an edge.

        Explicit edge title first, then the source conditional's title map,
        then the target node's label.
        """
        if edge.title:
            return edge.title
        source = self.get_node(edge.source)
        if isinstance(source, ConditionalNode) and source.outgoing_edge_titles.get(edge.id):
            return source.outgoing_edge_titles[edge.id]
        target = self.get_node(edge.target)
        return target.display_name if target is not None else edge.target

    # ========== Validation ==========

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

        initial_nodes = [n.id for n in self.nodes if n.type == NodeType.INITIAL]
        if len(initial_nodes) > 1:
            errors.append(f"Multiple initial nodes: {', '.join(initial_nodes)}")

        # Limit cycle enumeration on large graphs
        MAX_CYCLES_TO_REPORT = 20
        G = self._to_networkx()
        try:
            for count, cycle in enumerate(nx.simple_cycles(G), start=1):
                if count > MAX_CYCLES_TO_REPORT:
                    errors.append(f"More than {MAX_CYCLES_TO_REPORT} cycles found")
                    break
                errors.append(f"Cycle detected: {' -> '.join(cycle + cycle[:1])}")
        except nx.NetworkXError as e:
            errors.append(f"Could not perform cycle detection: {e}")

        for node in self.nodes:
            if node.type == NodeType.CONDITIONAL:
                outgoing_ids = {e.id for e in self.outgoing(node.id)}
                for edge_id in node.outgoing_edge_titles:
                    if edge_id not in outgoing_ids:
                        errors.append(
                            f"CONDITIONAL node '{node.id}': title for unknown edge '{edge_id}'"
                        )
            elif node.type == NodeType.CONVERGENCE:
                if len(self.incoming(node.id)) < 2:
                    errors.append(
                        f"CONVERGENCE node '{node.id}' should have at least 2 incoming edges"
                    )

        return errors

    def ensure_valid(self) -> FlowGraph:
        errors = self.validate_graph()
        if errors:
            raise GraphInvalidError(errors)
        return self

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id, type=node.type)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target, id=edge.id)
        return G

    def topological_order(self) -> list[str]:
        """Node ids in dependency order; raises GraphInvalidError on cycles."""
        try:
            return list(nx.topological_sort(self._to_networkx()))
        except nx.NetworkXUnfeasible as e:
            raise GraphInvalidError(f"Graph contains a cycle: {e}") from e
