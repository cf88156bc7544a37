"""Responsibility groups and the "can this actor act on this node" predicate.

Groups are injected into the engine through ``GroupDirectory`` (or any
object implementing ``AssignmentDirectory``); nothing here reads global state.

Resolution order for who may act on a node of an item:
1. Members of any group flagged ``accept_any``
2. The item's per-node override (group ids or user identifiers), if present
3. Otherwise the node's own ``responsibilities`` groups
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from itemflow.core.graph_schema import Node
from itemflow.core.models import Item


def _norm(value: str | None) -> str:
    return str(value or "").strip().lower()


class Member(BaseModel):
    """Group member, identified by email."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    email: str
    name: str | None = None
    user_id: str | None = None


class Group(BaseModel):
    """Responsibility group."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str = ""
    members: list[Member] = Field(default_factory=list)
    accept_any: bool = Field(
        default=False, validation_alias=AliasChoices("acceptAny", "accept_any")
    )

    def has_member(self, identifiers: set[str]) -> bool:
        for member in self.members:
            if _norm(member.email) in identifiers or _norm(member.user_id) in identifiers:
                return True
        return False


@dataclass(frozen=True)
class Actor:
    """The user attempting an action.

    Matched against group members by ``mail`` or ``user_principal_name``
    (case-insensitive); ``user_id`` matches per-item user assignments.
    """

    mail: str | None = None
    user_principal_name: str | None = None
    user_id: str | None = None

    @property
    def identifiers(self) -> set[str]:
        return {
            _norm(v) for v in (self.mail, self.user_principal_name, self.user_id) if _norm(v)
        }

    @property
    def display(self) -> str:
        return self.mail or self.user_principal_name or self.user_id or "<anonymous>"


class AssignmentDirectory(Protocol):
    """Read-only responsibility collaborator consumed by the engine."""

    def responsibilities_of(self, node: Node) -> set[str]: ...

    def assigned_users_of(self, item: Item, node: Node) -> set[str]: ...

    def needs_assignment(self, item: Item, node: Node) -> bool: ...

    def user_can_act(self, actor: Actor, node: Node, item: Item | None = None) -> bool: ...


class GroupDirectory:
    """AssignmentDirectory backed by an in-memory list of groups."""

    def __init__(self, groups: Iterable[Group | dict] = ()):
        self._groups: dict[str, Group] = {}
        for group in groups:
            if not isinstance(group, Group):
                group = Group.model_validate(group)
            self._groups[str(group.id)] = group

    @property
    def groups(self) -> list[Group]:
        return list(self._groups.values())

    def group(self, group_id: str) -> Group | None:
        return self._groups.get(str(group_id))

    def responsibilities_of(self, node: Node) -> set[str]:
        """Group ids configured on the node itself."""
        return {str(g) for g in node.responsibilities}

    def assigned_users_of(self, item: Item, node: Node) -> set[str]:
        """User identifiers responsible for ``node`` on ``item``.

        Per-item overrides take precedence over node-level groups. Override
        entries naming a known group expand to that group's members.
        """
        override = item.assignments_for(node.id)
        if override:
            users: set[str] = set()
            for entry in override:
                group = self.group(entry)
                if group is not None:
                    users.update(m.user_id or m.email for m in group.members)
                else:
                    users.add(str(entry))
            return users

        users = set()
        for group_id in self.responsibilities_of(node):
            group = self.group(group_id)
            if group is not None:
                users.update(m.user_id or m.email for m in group.members)
        return users

    def needs_assignment(self, item: Item, node: Node) -> bool:
        """True when neither the item nor the node names anyone responsible."""
        return not item.assignments_for(node.id) and not self.responsibilities_of(node)

    def user_can_act(self, actor: Actor, node: Node, item: Item | None = None) -> bool:
        identifiers = actor.identifiers
        if not identifiers:
            return False

        if any(g.accept_any and g.has_member(identifiers) for g in self._groups.values()):
            return True

        override = item.assignments_for(node.id) if item is not None else []
        entries = override or sorted(self.responsibilities_of(node))
        for entry in entries:
            group = self.group(entry)
            if group is not None:
                if group.has_member(identifiers):
                    return True
            elif _norm(entry) in identifiers:
                return True
        return False
