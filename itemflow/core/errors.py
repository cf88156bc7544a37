"""Exception hierarchy for the flow engine."""

from __future__ import annotations


class FlowEngineError(Exception):
    """Base class for all engine errors."""

    pass


class GraphInvalidError(FlowEngineError):
    """Flow graph is malformed (cycles, dangling edges, duplicate ids)."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(f"Invalid flow graph: {'; '.join(self.errors)}")


class NodeNotFoundError(FlowEngineError):
    """Node id is not part of the flow graph."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found in flow graph")


class ItemNotFoundError(FlowEngineError):
    """Item id is not part of the flow aggregate."""

    def __init__(self, item_id: str, flow_id: str | None = None):
        self.item_id = item_id
        self.flow_id = flow_id
        where = f" in flow '{flow_id}'" if flow_id else ""
        super().__init__(f"Item '{item_id}' not found{where}")


class FormValidationError(FlowEngineError):
    """Required inputs were not supplied when completing a node."""

    def __init__(self, node_id: str, missing_fields: list[str], message: str | None = None):
        self.node_id = node_id
        self.missing_fields = list(missing_fields)
        super().__init__(
            message
            or f"Node '{node_id}' is missing required fields: {', '.join(self.missing_fields)}"
        )


class PathSelectionRequiredError(FormValidationError):
    """A multi-way conditional node was completed without a valid edge selection."""

    def __init__(self, node_id: str, choices: list[str], selected: str | None = None):
        self.choices = list(choices)
        self.selected = selected
        if selected:
            message = (
                f"Edge '{selected}' is not a path out of conditional node '{node_id}'. "
                f"Choose one of: {', '.join(self.choices)}"
            )
        else:
            message = (
                f"Conditional node '{node_id}' requires a path selection. "
                f"Choose one of: {', '.join(self.choices)}"
            )
        super().__init__(node_id, [], message=message)


class InvalidTransitionError(FlowEngineError):
    """Node cannot be completed or navigated to in the item's current state."""

    pass


class AuthorizationError(FlowEngineError):
    """Actor is not allowed to act on the node."""

    def __init__(self, actor: str, node_id: str):
        self.actor = actor
        self.node_id = node_id
        super().__init__(f"'{actor}' is not responsible for node '{node_id}'")


class AssignmentRequiredError(FlowEngineError):
    """Next nodes have no resolvable responsibility.

    The caller must add entries to the item's assignment map for ``node_ids``
    and retry the same completion.
    """

    def __init__(self, node_ids: list[str]):
        self.node_ids = list(node_ids)
        super().__init__(f"Assignment needed for node(s): {', '.join(self.node_ids)}")


class PersistenceError(FlowEngineError):
    """Reading or writing a flow aggregate failed."""

    pass


class ConcurrentModificationError(PersistenceError):
    """Aggregate version changed between read and write."""

    def __init__(self, flow_id: str, expected: int, actual: int):
        self.flow_id = flow_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Flow '{flow_id}' was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )


class ConfigError(FlowEngineError):
    """Engine configuration file is invalid."""

    pass


class FlowNotFoundError(PersistenceError):
    """No aggregate is stored under the flow id."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' not found")
