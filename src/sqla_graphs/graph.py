"""Object graphs: the caller's nested input and the persisted rows it is compared to."""

from __future__ import annotations

import enum
import itertools
from collections.abc import Iterable, Iterator, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Union

from .errors import DuplicateIdError, InvalidGraphError, UnresolvedReferenceError
from .references import ReferenceTable, references_in
from .registry import EntityDescriptor, Registry, RelationDescriptor


Identity = Union[Any, tuple[Any, ...]]

ID_KEY: Final[str] = "#id"
REF_KEY: Final[str] = "#ref"
DB_REF_KEY: Final[str] = "#dbRef"

_MISSING: Final = object()


class NodeState(str, enum.Enum):
    NEW = "new"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    ABSENT = "absent"


@dataclass(slots=True, eq=False)
class GraphNode:
    """One row of an object graph.

    ``data`` holds plain column values, ``children`` the related nodes keyed
    by relation name and ``extras`` the through-table columns given on a
    many-to-many row.  ``source`` is the caller's mapping; generated keys and
    resolved references are written back into it.
    """

    entity: EntityDescriptor
    source: Mapping[str, Any]
    data: dict[str, Any] = field(default_factory=dict)
    identity: Identity | None = None
    id_label: str | None = None
    ref_label: str | None = None
    db_ref: Identity | None = None
    children: dict[str, list[GraphNode]] = field(default_factory=dict)
    parent: GraphNode | None = None
    relation: RelationDescriptor | None = None
    index: int = 0
    seq: int = 0
    extras: dict[str, Any] = field(default_factory=dict)
    had_identity: bool = False
    current: GraphNode | None = None

    @property
    def relation_path(self) -> str:
        names: list[str] = []
        node: GraphNode | None = self
        while node is not None and node.relation is not None:
            names.append(node.relation.name)
            node = node.parent
        return ".".join(reversed(names))

    @property
    def is_reference(self) -> bool:
        return self.ref_label is not None or self.db_ref is not None

    def identity_values(self) -> dict[str, Any]:
        if self.identity is None:
            return {}

        values = self.identity if len(self.entity.primary_key) > 1 else (self.identity,)
        return dict(zip(self.entity.primary_key, values))

    def row(self) -> dict[str, Any]:
        """Best known column values: persisted row, then input, then identity."""
        out = dict(self.current.data) if self.current is not None else {}
        out.update(self.data)
        out.update(self.identity_values())
        return out

    def key_values(self, columns: Sequence[str]) -> dict[str, Any]:
        row = self.row()
        missing = [column for column in columns if column not in row]
        if missing:
            raise InvalidGraphError(
                f"{self.entity.name} row at {self.relation_path or '<root>'!r} has no value for {missing}"
            )
        return {column: row[column] for column in columns}

    def assign(self, values: Mapping[str, Any]) -> None:
        """Record column values learned while executing and mirror them into ``source``."""
        self.data.update(values)
        if all(self.data.get(key) is not None for key in self.entity.primary_key):
            self.identity = identity_of(self.entity, self.data)

        if isinstance(self.source, MutableMapping):
            self.source.update(values)

    def walk(self) -> Iterator[GraphNode]:
        """Depth-first pre-order iteration over this node and its descendants."""
        stack: list[GraphNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            for children in reversed(list(node.children.values())):
                stack.extend(reversed(children))

    def __repr__(self) -> str:
        label = f" #id={self.id_label!r}" if self.id_label else ""
        return f"<GraphNode {self.entity.name} id={self.identity!r}{label} path={self.relation_path!r}>"


@dataclass(slots=True)
class GraphIndex:
    by_id_label: dict[str, GraphNode] = field(default_factory=dict)
    nodes_by_identity: dict[tuple[str, tuple[str, ...]], list[GraphNode]] = field(default_factory=dict)
    nodes: list[GraphNode] = field(default_factory=list)

    def find(self, entity: str, identity: Identity) -> list[GraphNode]:
        return self.nodes_by_identity.get((entity, identity_key(identity)), [])

    def uses_references(self) -> bool:
        return any(node.ref_label is not None or references_in(node.data) for node in self.nodes)


def identity_of(entity: EntityDescriptor, data: Mapping[str, Any]) -> Identity | None:
    values = tuple(data.get(key) for key in entity.primary_key)
    if not values or any(value is None for value in values):
        return None

    return values[0] if len(values) == 1 else values


def identity_key(identity: Identity) -> tuple[str, ...]:
    """Normalise an identity so ``10`` and ``"10"`` match."""
    values = identity if isinstance(identity, tuple) else (identity,)
    return tuple(str(value) for value in values)


def _as_items(relation: RelationDescriptor, value: Any) -> list[Any]:
    if value is None:
        return []

    if isinstance(value, Mapping):
        return [value]

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        if relation.kind.is_one and len(value) > 1:
            raise InvalidGraphError(f"Relation {relation.name!r} holds a single object, got {len(value)}")
        return list(value)

    raise InvalidGraphError(f"Relation {relation.name!r} expects objects, got {type(value).__name__}")


def _build(
    entity: EntityDescriptor,
    obj: Any,
    registry: Registry,
    counter: Iterator[int],
    *,
    parent: GraphNode | None,
    relation: RelationDescriptor | None,
    index: int,
) -> GraphNode:
    if not isinstance(obj, Mapping):
        raise InvalidGraphError(f"Expected an object for {entity.name}, got {type(obj).__name__}")

    node = GraphNode(entity=entity, source=obj, parent=parent, relation=relation, index=index, seq=next(counter))
    for key, value in obj.items():
        if key == ID_KEY:
            node.id_label = str(value)
        elif key == REF_KEY:
            node.ref_label = str(value)
        elif key == DB_REF_KEY:
            node.db_ref = tuple(value) if isinstance(value, (list, tuple)) else value
        elif key in entity.relations:
            child_relation = entity.relations[key]
            related = registry.entity(child_relation.related_entity)
            node.children[key] = [
                _build(related, item, registry, counter, parent=node, relation=child_relation, index=i)
                for i, item in enumerate(_as_items(child_relation, value))
            ]
        elif relation is not None and key in relation.extra:
            node.extras[key] = value
        elif key.startswith("#"):
            raise InvalidGraphError(f"Unknown special property {key!r} on {entity.name}")
        else:
            node.data[key] = value

    node.identity = node.db_ref if node.db_ref is not None else identity_of(entity, node.data)
    node.had_identity = node.identity is not None
    return node


def build_graph(
    entity: str | type[Any] | EntityDescriptor,
    objects: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    registry: Registry | None = None,
) -> list[GraphNode]:
    """Turn a nested object (or list of objects) into graph nodes.

    Keys naming a declared relation become child slots; everything else is
    a plain attribute.  ``#id`` labels a row for references, ``#ref`` stands
    for another labelled row of the same graph and ``#dbRef`` relates an
    existing row by primary key.

    Raises:
        InvalidGraphError: If the input is not an object or list of objects.
    """
    registry = registry or Registry()
    descriptor = registry.entity(entity)
    if isinstance(objects, Mapping):
        items: list[Any] = [objects]
    elif isinstance(objects, Sequence) and not isinstance(objects, (str, bytes)):
        items = list(objects)
    else:
        raise InvalidGraphError(f"Expected an object or a list of objects, got {type(objects).__name__}")

    counter = itertools.count()
    return [
        _build(descriptor, obj, registry, counter, parent=None, relation=None, index=i)
        for i, obj in enumerate(items)
    ]


def iter_nodes(roots: Iterable[GraphNode]) -> Iterator[GraphNode]:
    for root in roots:
        yield from root.walk()


def index_graph(roots: Iterable[GraphNode], references: ReferenceTable | None = None) -> GraphIndex:
    """Index a graph by ``#id`` label and by identity.

    Every ``#id`` is declared in *references* when given.

    Raises:
        DuplicateIdError: If two nodes share an ``#id`` label.
        UnresolvedReferenceError: If a ``#ref`` names a label that is not declared.
    """
    index = GraphIndex()
    for node in iter_nodes(roots):
        index.nodes.append(node)
        if node.id_label is not None:
            if node.id_label in index.by_id_label:
                raise DuplicateIdError(node.id_label)
            index.by_id_label[node.id_label] = node
            if references is not None:
                references.declare(node.id_label, node)

        if node.identity is not None and not node.is_reference:
            key = (node.entity.name, identity_key(node.identity))
            index.nodes_by_identity.setdefault(key, []).append(node)

    for node in index.nodes:
        if node.ref_label is not None and node.ref_label not in index.by_id_label:
            raise UnresolvedReferenceError(node.ref_label)

        for label, field_name in references_in(node.data):
            if label not in index.by_id_label:
                raise UnresolvedReferenceError(label, field_name)

    return index


def _temporal(value: Any, like: date | time) -> Any:
    if isinstance(value, str):
        try:
            return type(like).fromisoformat(value)
        except ValueError:
            return None
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Compare column values by value rather than by type.

    ``1`` equals ``"1"`` and ``Decimal("1.0")``, a date equals its ISO string
    and JSON-shaped values are compared recursively.
    """
    if left is None or right is None:
        return left is right

    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return left.keys() == right.keys() and all(values_equal(left[key], right[key]) for key in left)

    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(map(values_equal, left, right))

    if left == right:
        return True

    if isinstance(left, (date, time)):
        return _temporal(right, left) == left

    if isinstance(right, (date, time)):
        return _temporal(left, right) == right

    numeric = (int, float, Decimal)
    if isinstance(left, numeric) or isinstance(right, numeric):
        try:
            return Decimal(str(left)) == Decimal(str(right))
        except InvalidOperation:
            return False

    return False


def changed_fields(node: GraphNode, current: GraphNode) -> dict[str, Any]:
    """Fields of *node* whose value differs from the persisted row *current*.

    Only fields present in the input are compared; primary key columns never
    count as a change.
    """
    return {
        key: value
        for key, value in node.data.items()
        if key not in node.entity.primary_key
        and not values_equal(value, current.data.get(key, _MISSING))
    }


def classify(node: GraphNode | None, current: GraphNode | None) -> NodeState:
    """Label an incoming node against its persisted counterpart.

    A persisted node without an incoming counterpart is ``ABSENT``.
    """
    if node is None:
        return NodeState.ABSENT

    if current is None:
        return NodeState.NEW

    return NodeState.CHANGED if changed_fields(node, current) else NodeState.UNCHANGED
