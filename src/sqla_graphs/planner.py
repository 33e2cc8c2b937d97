"""Graph diff and operation planning.

The incoming graph is walked depth-first against the persisted graph.  Every
operation is recorded together with the operations it has to wait for;
a stable topological sort then produces the final order, falling back to
depth-first input order wherever the foreign keys leave a choice.
"""

from __future__ import annotations

import enum
import heapq
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import (
    CyclicGraphError,
    InvalidGraphError,
    NotFoundError,
    ReferenceNotAllowedError,
    UnresolvedReferenceError,
)
from .graph import (
    GraphNode,
    NodeState,
    build_graph,
    changed_fields,
    classify,
    identity_key,
    index_graph,
    values_equal,
)
from .operations import LINKED, Delete, Insert, Operation, OperationPlan, ParentLink, Patch, Relate, Unrelate
from .options import UpsertOptions
from .references import ReferenceTable, references_in
from .registry import EntityDescriptor, Registry, RelationDescriptor, RelationKind


logger = logging.getLogger(__name__)

# (operation kind, id(GraphNode)); resolved to step indexes once planning is done
_Token = tuple[str, int]
GraphInput = Union[Mapping[str, Any], Sequence[Mapping[str, Any]], Sequence[GraphNode]]


class _Action(enum.Enum):
    INSERT = "insert"
    PATCH = "patch"
    RELATE = "relate"


@dataclass(slots=True)
class _Step:
    operation: Operation
    deps: list[_Token] = field(default_factory=list)


@dataclass(slots=True)
class _OwnerChanges:
    """Foreign keys of the owner row changed by its belongs-to-one relations."""

    fields: dict[str, Any] = field(default_factory=dict)
    links: list[tuple[RelationDescriptor, GraphNode]] = field(default_factory=list)
    deps: list[_Token] = field(default_factory=list)


def _writes(node: GraphNode) -> list[_Token]:
    return [("insert", id(node)), ("patch", id(node))]


def _links_to(current: GraphNode | None, relation: RelationDescriptor, target: GraphNode) -> bool:
    """True if the persisted row already points its foreign key at *target*."""
    if current is None or target.identity is None:
        return False

    row = target.row()
    return all(
        column in row and values_equal(current.data.get(owner_column), row[column])
        for owner_column, column in zip(relation.owner_columns, relation.related_columns)
    )


class _Planner:
    __slots__ = ("_options", "_references", "_steps", "_tokens")

    def __init__(self, options: UpsertOptions, references: ReferenceTable) -> None:
        self._options = options
        self._references = references
        self._steps: list[_Step] = []
        self._tokens: dict[_Token, int] = {}

    def _add(self, operation: Operation, token: _Token, deps: list[_Token]) -> _Token:
        self._tokens[token] = len(self._steps)
        self._steps.append(_Step(operation, list(deps)))
        return token

    def _reference_deps(self, values: Any) -> list[_Token]:
        deps: list[_Token] = []
        for label, _ in references_in(values):
            deps.extend(_writes(self._references.node(label)))
        return deps

    # ---- Traversal ----

    def plan(self, incoming: Sequence[GraphNode], existing: Sequence[GraphNode]) -> None:
        current_by_key = {
            identity_key(node.identity): node for node in existing if node.identity is not None
        }
        for node in incoming:
            if node.is_reference:
                raise InvalidGraphError("A root object cannot be a #ref or #dbRef")

            current = current_by_key.get(identity_key(node.identity)) if node.had_identity else None
            if current is not None:
                self._visit(node, current, _Action.PATCH)
            elif self._options.should_insert(node):
                self._visit(node, None, _Action.INSERT)
            elif node.had_identity and not self._options.has("insert_missing", node):
                raise NotFoundError(node.entity.name, node.identity)

    def _visit(self, node: GraphNode, current: GraphNode | None, action: _Action) -> None:
        node.current = current
        owner = _OwnerChanges()

        for name, children in node.children.items():
            relation = node.entity.relations[name]
            if relation.kind is RelationKind.BELONGS_TO_ONE:
                self._plan_relation(node, current, action, relation, children, owner)

        self._plan_own(node, current, action, owner)

        for name, children in node.children.items():
            relation = node.entity.relations[name]
            if relation.kind is not RelationKind.BELONGS_TO_ONE:
                self._plan_relation(node, current, action, relation, children, owner)

    def _plan_own(
        self, node: GraphNode, current: GraphNode | None, action: _Action, owner: _OwnerChanges
    ) -> None:
        entity = node.entity.name
        if action is _Action.INSERT:
            deps = owner.deps + self._reference_deps(node.data)
            link = None
            if node.relation is not None and node.parent is not None:
                link = ParentLink(node.relation.name, node.parent)
                if node.relation.kind.owns_related:
                    deps.append(("insert", id(node.parent)))
            self._add(Insert(entity, dict(node.data), link, node=node), ("insert", id(node)), deps)
            return

        changes: dict[str, Any] = {}
        if self._options.should_patch(node):
            if current is not None:
                if classify(node, current) is NodeState.CHANGED:
                    changes = changed_fields(node, current)
            else:
                changes = {
                    key: value for key, value in node.data.items() if key not in node.entity.primary_key
                }

        changes.update(owner.fields)
        if not changes:
            return

        deps = owner.deps + self._reference_deps(changes)
        if action is _Action.RELATE:
            deps.append(("relate", id(node)))
        self._add(
            Patch(entity, node.identity, changes, node=node, links=tuple(owner.links)),
            ("patch", id(node)),
            deps,
        )

    def _plan_relation(
        self,
        node: GraphNode,
        current: GraphNode | None,
        action: _Action,
        relation: RelationDescriptor,
        children: list[GraphNode],
        owner: _OwnerChanges,
    ) -> None:
        existing_children = current.children.get(relation.name, []) if current is not None else []
        by_key = {identity_key(c.identity): c for c in existing_children if c.identity is not None}
        claimed = {identity_key(c.identity) for c in children if c.had_identity and not c.is_reference}
        matched: set[int] = set()
        new_tokens: list[_Token] = []

        for position, child in enumerate(children):
            existing = None
            if child.is_reference:
                target = self._references.node(child.ref_label) if child.ref_label is not None else child
                linked = by_key.get(identity_key(target.identity)) if target.identity is not None else None
                if linked is not None:
                    matched.add(id(linked))
                    continue
            elif child.had_identity:
                existing = by_key.get(identity_key(child.identity))
            elif self._positional_match(child, position, existing_children):
                candidate = existing_children[position]
                if id(candidate) not in matched and identity_key(candidate.identity) not in claimed:
                    existing = candidate
                    child.assign(candidate.identity_values())

            if existing is not None:
                matched.add(id(existing))
            token = self._plan_child(node, action, relation, child, existing, owner)
            if token is not None:
                new_tokens.append(token)

        removed: list[_Token] = []
        for existing in existing_children:
            if id(existing) not in matched:
                token = self._remove(node, relation, existing, replaced=bool(children), owner=owner)
                if token is not None:
                    removed.append(token)

        if relation.kind is RelationKind.HAS_ONE and removed:
            for token in new_tokens:
                self._steps[self._tokens[token]].deps.extend(removed)

    def _positional_match(
        self, child: GraphNode, position: int, existing_children: list[GraphNode]
    ) -> bool:
        return (
            self._options.match_by_position
            and not child.had_identity
            and not child.is_reference
            and child.id_label is None
            and position < len(existing_children)
            and existing_children[position].identity is not None
        )

    def _plan_child(
        self,
        node: GraphNode,
        action: _Action,
        relation: RelationDescriptor,
        child: GraphNode,
        existing: GraphNode | None,
        owner: _OwnerChanges,
    ) -> _Token | None:
        options = self._options
        if child.is_reference:
            if not options.should_relate(child):
                return None
            return self._relate(node, action, relation, child, owner)

        if existing is not None:
            self._visit(child, existing, _Action.PATCH)
            return None

        if child.had_identity and options.should_relate(child):
            token = self._relate(node, action, relation, child, owner)
            self._visit(child, None, _Action.RELATE)
            return token

        if not options.should_insert(child):
            if child.had_identity and not options.has("insert_missing", child):
                raise NotFoundError(child.entity.name, child.identity, child.relation_path)
            return None

        self._visit(child, None, _Action.INSERT)
        if relation.kind is RelationKind.MANY_TO_MANY:
            return self._relate(node, action, relation, child, owner)

        if relation.kind is RelationKind.BELONGS_TO_ONE:
            self._link_owner(node, action, relation, child, owner)

        return ("insert", id(child))

    def _link_owner(
        self,
        node: GraphNode,
        action: _Action,
        relation: RelationDescriptor,
        target: GraphNode,
        owner: _OwnerChanges,
    ) -> None:
        """Point the foreign key of *node* at *target*."""
        owner.deps.append(("insert", id(target)))
        if action is _Action.INSERT or _links_to(node.current, relation, target):
            return

        owner.fields.update(dict.fromkeys(relation.owner_columns, LINKED))
        owner.links.append((relation, target))

    def _relate(
        self,
        node: GraphNode,
        action: _Action,
        relation: RelationDescriptor,
        child: GraphNode,
        owner: _OwnerChanges,
    ) -> _Token | None:
        target = self._references.node(child.ref_label) if child.ref_label is not None else child
        if relation.kind is RelationKind.BELONGS_TO_ONE:
            self._link_owner(node, action, relation, target, owner)
            return None

        deps: list[_Token] = [("insert", id(node)), ("insert", id(target))]
        return self._add(
            Relate(
                target.entity.name,
                target.identity,
                dict(child.extras),
                node=target,
                relation=relation,
                parent=node,
            ),
            ("relate", id(child)),
            deps,
        )

    def _remove(
        self,
        node: GraphNode,
        relation: RelationDescriptor,
        existing: GraphNode,
        *,
        replaced: bool,
        owner: _OwnerChanges,
    ) -> _Token | None:
        options = self._options
        if relation.kind is RelationKind.BELONGS_TO_ONE:
            delete = options.should_delete(existing)
            if not delete and not options.should_unrelate(existing):
                return None
            if not replaced:
                owner.fields.update(dict.fromkeys(relation.owner_columns))
            if delete:
                return self._delete(existing, [("patch", id(node))])
            return None

        if relation.kind is RelationKind.MANY_TO_MANY:
            if options.has("no_delete", existing) or options.has("no_unrelate", existing):
                return None
            return self._unrelate(node, relation, existing)

        if options.should_unrelate(existing):
            return self._unrelate(node, relation, existing)

        if options.should_delete(existing):
            return self._delete(existing, [])

        return None

    def _unrelate(self, parent: GraphNode, relation: RelationDescriptor, existing: GraphNode) -> _Token:
        return self._add(
            Unrelate(existing.entity.name, existing.identity, node=existing, relation=relation, parent=parent),
            ("remove", id(existing)),
            [],
        )

    def _delete(self, existing: GraphNode, deps: list[_Token]) -> _Token:
        """Delete *existing* after its owned descendants and many-to-many links."""
        deps = list(deps)
        for name, children in existing.children.items():
            relation = existing.entity.relations[name]
            for child in children:
                if relation.kind.owns_related:
                    deps.append(self._delete(child, []))
                elif relation.kind is RelationKind.MANY_TO_MANY:
                    deps.append(self._unrelate(existing, relation, child))

        return self._add(Delete(existing.entity.name, existing.identity, node=existing), ("remove", id(existing)), deps)

    # ---- Ordering ----

    def ordered(self) -> list[Operation]:
        """Topologically sort the steps, ties broken by creation order.

        Raises:
            CyclicGraphError: If some steps wait on each other.
        """
        dependents: list[set[int]] = [set() for _ in self._steps]
        pending = [0] * len(self._steps)
        for index, step in enumerate(self._steps):
            for token in step.deps:
                dep = self._tokens.get(token)
                if dep is not None and index not in dependents[dep]:
                    dependents[dep].add(index)
                    pending[index] += 1

        ready = [index for index, count in enumerate(pending) if count == 0]
        heapq.heapify(ready)
        order: list[int] = []
        while ready:
            index = heapq.heappop(ready)
            order.append(index)
            for dependent in dependents[index]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) < len(self._steps):
            stuck = set(range(len(self._steps))) - set(order)
            raise CyclicGraphError(self._steps[index].operation.entity for index in stuck)

        return [self._steps[index].operation for index in order]

    def check_references(self, operations: list[Operation]) -> None:
        """Resolve labels of rows that are not written and verify every ``#ref`` is readable in order.

        Raises:
            UnresolvedReferenceError: If a reference is read before its row is written.
        """
        written = {
            id(op.node) for op in operations if isinstance(op, (Insert, Patch)) and op.node is not None
        }
        for label in self._references.labels():
            node = self._references.node(label)
            if id(node) not in written and (node.had_identity or node.current is not None):
                self._references.mark_resolved(label, {**node.data, **node.identity_values()})

        available = {label for label in self._references.labels() if self._references.is_resolved(label)}
        for op in operations:
            values = op.data if isinstance(op, Insert) else op.changed_fields if isinstance(op, Patch) else {}
            for label, field_name in references_in(values):
                if label not in available:
                    raise UnresolvedReferenceError(label, field_name, "it is read before its row is written")
            if isinstance(op, (Insert, Patch)) and op.node is not None and op.node.id_label is not None:
                available.add(op.node.id_label)


def _as_nodes(
    entity: EntityDescriptor, graph: GraphInput | None, registry: Registry
) -> list[GraphNode]:
    if graph is None:
        return []

    if isinstance(graph, Sequence) and graph and all(isinstance(item, GraphNode) for item in graph):
        return list(graph)  # type: ignore[arg-type]

    return build_graph(entity, graph, registry)  # type: ignore[arg-type]


def _check_references_allowed(nodes: Sequence[GraphNode]) -> None:
    for root in nodes:
        for node in root.walk():
            if node.ref_label is not None:
                raise ReferenceNotAllowedError(node.ref_label)
            for label, _ in references_in(node.data):
                raise ReferenceNotAllowedError(label)


def plan_graph(
    entity: str | type[Any] | EntityDescriptor,
    existing: GraphInput | None,
    incoming: GraphInput,
    options: UpsertOptions | None = None,
    *,
    registry: Registry | None = None,
) -> OperationPlan:
    """Compute the operations turning the *existing* graph into the *incoming* one.

    Relations the incoming graph does not mention are left alone.  Within a
    mentioned relation, persisted rows missing from the input are deleted
    (or unrelated), matching rows are patched with the fields that differ and
    rows without a match are inserted or related.

    Args:
        entity: Entity of the root objects.
        existing: Persisted graph (as returned by eager loading) or ``None``.
        incoming: Input object(s) or already built graph nodes.
        options: Upsert switches; defaults to :class:`UpsertOptions()`.
        registry: Entity registry; defaults to the global one.

    Returns:
        The ordered :class:`OperationPlan`.

    Raises:
        DuplicateIdError: Two rows declare the same ``#id``.
        UnresolvedReferenceError: A ``#ref`` cannot be satisfied.
        ReferenceNotAllowedError: References are used without ``allow_refs``.
        NotFoundError: A row carries an id that is not part of the persisted graph.
        CyclicGraphError: Rows depend on each other's generated keys.

    Example:
        >>> plan = plan_graph(
        ...     "Person",
        ...     {"id": 1, "pets": [{"id": 10, "name": "Old"}, {"id": 11, "name": "Gone"}]},
        ...     {"id": 1, "pets": [{"id": 10, "name": "Rex"}]},
        ... )
        >>> list(plan)
        [Patch(entity='Pet', identity=10, changed_fields={'name': 'Rex'}), Delete(entity='Pet', identity=11)]
    """
    registry = registry or Registry()
    options = options or UpsertOptions()
    descriptor = registry.entity(entity)

    incoming_nodes = _as_nodes(descriptor, incoming, registry)
    existing_nodes = _as_nodes(descriptor, existing, registry)

    references = ReferenceTable()
    index_graph(incoming_nodes, references)
    if not options.allow_refs:
        _check_references_allowed(incoming_nodes)

    planner = _Planner(options, references)
    planner.plan(incoming_nodes, existing_nodes)
    operations = planner.ordered()
    planner.check_references(operations)

    plan = OperationPlan(operations, references)
    logger.debug("Planned %s for %s: %s", len(plan), descriptor.name, plan.summary())
    return plan
