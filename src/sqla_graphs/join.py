"""Join strategy for eager loading.

The whole relation expression is turned into one statement: every relation
node becomes a subquery (so its modifiers cannot leak into siblings) that is
outer-joined to its parent.  Columns are labelled ``<aliasPath>:<column>``
(root columns keep their names) and :class:`JoinResultParser` folds the flat,
fanned-out rows back into nested objects.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Final

import sqlalchemy as sa

from .datastructures import frozendict
from .expression import ExpressionLike, RelationExpression, parse, validate
from .modifiers import ModifierRegistry
from .registry import EntityDescriptor, Registry, RelationDescriptor, RelationKind
from .tools import RESERVED_PREFIX, ensure_columns


DEFAULT_RECURSION_LIMIT: Final[int] = 7
# Longest identifier PostgreSQL keeps without truncating.
ID_LENGTH_LIMIT: Final[int] = 63
JOIN_CACHE_SIZE: Final[int] = 256


def required_columns(
    entity: EntityDescriptor, relation: RelationDescriptor | None, expression: RelationExpression
) -> tuple[str, ...]:
    """Columns a loaded row of *entity* must carry to be identified and linked.

    That is the primary key, the column(s) joining it to its parent and the
    columns its own child relations join on.
    """
    names = list(entity.primary_key)
    if relation is not None and relation.kind is not RelationKind.MANY_TO_MANY:
        names.extend(relation.related_columns)

    for child in expression.expanded_children().values():
        names.extend(entity.relation(child.relation_name).owner_columns)  # type: ignore[arg-type]

    return tuple(dict.fromkeys(names))


def _on(
    left: sa.FromClause, left_columns: Sequence[str], right: sa.FromClause, right_columns: Sequence[str]
) -> sa.ColumnElement[bool]:
    return sa.and_(*(left.c[a] == right.c[b] for a, b in zip(left_columns, right_columns)))


@dataclass(slots=True, eq=False)
class JoinNode:
    """One relation node of a built join statement.

    ``fields`` maps output keys to result labels; ``keys`` are the labels of
    the primary key columns used to deduplicate fanned-out rows.
    """

    alias: str
    path: str
    entity: EntityDescriptor
    relation: RelationDescriptor | None
    source: sa.Subquery
    fields: dict[str, str] = field(default_factory=dict)
    keys: tuple[str, ...] = ()
    children: list[JoinNode] = field(default_factory=list)

    @property
    def is_one(self) -> bool:
        return self.relation is not None and self.relation.kind.is_one

    def walk(self) -> Iterator[JoinNode]:
        yield self
        for child in self.children:
            yield from child.walk()


class JoinBuilder:
    """Builds the single statement loading an entity and a relation expression.

    Subqueries and join tables are aliased ``_sg0``, ``_sg1``, ...; the
    reserved prefix cannot appear in relation names, so aliases never clash
    with caller-chosen names.  Ordering applied by a modifier is captured in a
    ``row_number()`` column and re-applied, depth first, to the outer
    statement.

    Infinite recursion is unrolled to *recursion_limit* levels.  Columns are
    labelled by alias path; a label longer than ``ID_LENGTH_LIMIT`` falls back
    to the subquery alias, and *minimize* uses the subquery alias throughout.
    """

    __slots__ = (
        "_columns",
        "_counter",
        "_from",
        "_order",
        "entity",
        "minimize",
        "modifiers",
        "recursion_limit",
        "registry",
        "tables",
    )

    def __init__(
        self,
        entity: EntityDescriptor,
        registry: Registry,
        *,
        modifiers: ModifierRegistry | None = None,
        tables: Mapping[str, sa.TableClause] | None = None,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        minimize: bool = False,
    ) -> None:
        self.entity = entity
        self.registry = registry
        self.modifiers = modifiers or ModifierRegistry()
        self.tables = tables or {}
        self.recursion_limit = recursion_limit
        self.minimize = minimize
        self._counter = itertools.count()
        self._columns: list[sa.ColumnElement[Any]] = []
        self._order: list[sa.ColumnElement[Any]] = []
        self._from: sa.FromClause | None = None

    def build(
        self, expression: RelationExpression, query: sa.Select[Any] | None = None
    ) -> tuple[sa.Select[Any], JoinNode]:
        """Build the statement for *expression*.

        Args:
            expression: Parsed relation expression rooted at ``self.entity``.
            query: Optional SELECT of the root table to start from (filters,
                ordering and limits are kept).

        Returns:
            The statement and the root :class:`JoinNode` describing its labels.
        """
        expression = expression.unroll(self.recursion_limit)
        root_query = query if query is not None else sa.select(self._table(self.entity.table))
        root = self._node(self.entity, None, "", root_query, expression)
        if not self._order:
            self._order.extend(root.source.c[name] for name in self.entity.primary_key)

        self._from = root.source
        self._join_children(root, expression)

        statement = sa.select(*self._columns).select_from(self._from).order_by(*self._order)
        return statement, root

    def _table(self, table: sa.TableClause) -> sa.TableClause:
        return self.tables.get(table.name, table)

    def _label(self, path: str, source: sa.FromClause, column: str) -> str:
        if not path:
            return column

        short = f"{source.name}:{column}"  # type: ignore[attr-defined]
        label = short if self.minimize else f"{path}:{column}"
        if len(label) > ID_LENGTH_LIMIT:
            label = short
        if len(label) > ID_LENGTH_LIMIT:
            raise ValueError(f"Column label {label!r} is longer than {ID_LENGTH_LIMIT} characters")

        return label

    def _node(
        self,
        entity: EntityDescriptor,
        relation: RelationDescriptor | None,
        path: str,
        query: sa.Select[Any],
        expression: RelationExpression,
    ) -> JoinNode:
        name = f"{RESERVED_PREFIX}{next(self._counter)}"
        rn_name = f"{name}_rn"
        query = ensure_columns(query, self._table(entity.table), required_columns(entity, relation, expression))

        ordering = query._order_by_clauses  # noqa: SLF001
        if ordering:
            query = query.add_columns(sa.func.row_number().over(order_by=ordering).label(rn_name))

        source = query.subquery(name)
        node = JoinNode(
            alias=expression.alias,
            path=path,
            entity=entity,
            relation=relation,
            source=source,
        )
        for column in source.c:
            if column.name == rn_name:
                continue
            label = self._label(path, source, column.name)
            node.fields[column.name] = label
            self._columns.append(column.label(label))

        node.keys = tuple(node.fields[key] for key in entity.primary_key)
        if ordering:
            self._order.append(source.c[rn_name])

        return node

    def _join_children(self, parent: JoinNode, expression: RelationExpression) -> None:
        for alias, child in expression.children.items():
            relation = parent.entity.relation(child.relation_name)  # type: ignore[arg-type]
            related = self.registry.entity(relation.related_entity)
            path = f"{parent.path}.{alias}" if parent.path else alias

            query = self.modifiers.apply(
                sa.select(self._table(related.table)), (*relation.modify, *child.modifiers), related
            )
            node = self._node(related, relation, path, query, child)

            assert self._from is not None
            if relation.kind is RelationKind.MANY_TO_MANY:
                through = relation.through
                assert through is not None
                link = self._table(through.table).alias(f"{RESERVED_PREFIX}{next(self._counter)}")
                self._from = self._from.outerjoin(
                    link, _on(link, through.owner_columns, parent.source, relation.owner_columns)
                ).outerjoin(
                    node.source, _on(node.source, relation.related_columns, link, through.related_columns)
                )
                for name in relation.extra:
                    label = self._label(path, node.source, name)
                    node.fields[name] = label
                    self._columns.append(link.c[name].label(label))
            else:
                self._from = self._from.outerjoin(
                    node.source, _on(node.source, relation.related_columns, parent.source, relation.owner_columns)
                )

            parent.children.append(node)
            self._join_children(node, child)


class JoinResultParser:
    """Fold the flat rows of a join statement into nested objects.

    A row is materialised once per parent and alias path, keyed by primary
    key.  An all-null key means the outer join found nothing: one-relations
    stay ``None`` and list relations stay empty.
    """

    __slots__ = ("root",)

    def __init__(self, root: JoinNode) -> None:
        self.root = root

    def parse(self, rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        roots: dict[tuple[Any, ...], dict[str, Any]] = {}
        seen: dict[tuple[int, str, tuple[Any, ...]], dict[str, Any]] = {}
        for row in rows:
            key = tuple(row[label] for label in self.root.keys)
            obj = roots.get(key)
            if obj is None:
                obj = roots[key] = self._materialize(self.root, row)

            self._fold(self.root, obj, row, seen)

        return list(roots.values())

    def _materialize(self, node: JoinNode, row: Mapping[str, Any]) -> dict[str, Any]:
        obj = {name: row[label] for name, label in node.fields.items()}
        for child in node.children:
            obj[child.alias] = None if child.is_one else []

        return obj

    def _fold(
        self,
        node: JoinNode,
        obj: dict[str, Any],
        row: Mapping[str, Any],
        seen: dict[tuple[int, str, tuple[Any, ...]], dict[str, Any]],
    ) -> None:
        for child in node.children:
            key = tuple(row[label] for label in child.keys)
            if all(value is None for value in key):
                continue

            slot = (id(obj), child.alias, key)
            child_obj = seen.get(slot)
            if child_obj is None:
                child_obj = seen[slot] = self._materialize(child, row)
                if child.is_one:
                    obj[child.alias] = child_obj
                else:
                    obj[child.alias].append(child_obj)

            self._fold(child, child_obj, row, seen)


@dataclass(slots=True, frozen=True)
class _JoinParams:
    entity: EntityDescriptor
    expression: RelationExpression
    registry: Registry
    modifiers: ModifierRegistry
    tables: frozendict[str, sa.TableClause]
    query: sa.Select[Any] | None
    recursion_limit: int
    minimize: bool


@lru_cache(maxsize=JOIN_CACHE_SIZE)
def _build_join(params: _JoinParams) -> tuple[sa.Select[Any], JoinNode]:
    builder = JoinBuilder(
        params.entity,
        params.registry,
        modifiers=params.modifiers,
        tables=params.tables,
        recursion_limit=params.recursion_limit,
        minimize=params.minimize,
    )
    return builder.build(params.expression, params.query)


def build_join(
    entity: str | type[Any] | EntityDescriptor,
    expression: ExpressionLike,
    *,
    registry: Registry | None = None,
    modifiers: ModifierRegistry | None = None,
    tables: Mapping[str, sa.TableClause] | None = None,
    query: sa.Select[Any] | None = None,
    recursion_limit: int = DEFAULT_RECURSION_LIMIT,
    minimize: bool = False,
) -> tuple[sa.Select[Any], JoinNode]:
    """Build (or fetch from cache) the join statement for *entity* and *expression*.

    Statements rooted at a caller-supplied *query* bypass the cache, since
    select objects hash by identity.

    Raises:
        RelationNotFoundError: If the expression names an undeclared relation.
        InvalidRecursionError: If recursion is used on a relation that is not
            self-referential.
        ValueError: If a column name is too long to label even by subquery alias.

    Example:
        >>> statement, root = build_join(Person, "pets")
        >>> rows = (await session.execute(statement)).mappings().all()
        >>> people = JoinResultParser(root).parse(rows)
    """
    registry = registry or Registry()
    descriptor = registry.entity(entity)
    tree = parse(expression)
    validate(tree, descriptor, registry)

    params = _JoinParams(
        entity=descriptor,
        expression=tree,
        registry=registry,
        modifiers=modifiers or ModifierRegistry(),
        tables=frozendict(tables or {}),
        query=query,
        recursion_limit=recursion_limit,
        minimize=minimize,
    )
    if query is not None:
        return _build_join.__wrapped__(params)

    return _build_join(params)


def join_cache_info() -> Any:
    return _build_join.cache_info()


def join_cache_clear() -> None:
    _build_join.cache_clear()
