"""Eager loading of relation expressions into nested ``dict`` trees."""

from __future__ import annotations

import functools
import logging
import sys
import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal

import sqlalchemy as sa


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

from .expression import ExpressionLike, RelationExpression, parse, validate
from .graph import identity_key, identity_of
from .join import DEFAULT_RECURSION_LIMIT, JoinResultParser, build_join, required_columns
from .modifiers import Modifier, ModifierRegistry
from .parsing import INFINITE
from .queryable import Queryable
from .registry import EntityDescriptor, Registry, RelationDescriptor, RelationKind
from .tools import RESERVED_PREFIX, TableResolver, chunked, ensure_columns, gather_limited, key_in


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE: Final[int] = 10000
DEFAULT_CONCURRENCY: Final[int] = 4

Strategy = Literal["naive", "join"]
_STRATEGIES: Final[tuple[str, ...]] = ("naive", "join")

# (parent key, related row)
FetchedRow = tuple[tuple[Any, ...], dict[str, Any]]


class _ResolveParamsType(TypedDict, total=False):
    strategy: Strategy
    modifiers: ModifierRegistry | Mapping[str, Modifier]
    registry: Registry
    concurrency: int
    batch_size: int
    recursion_limit: int
    minimize: bool


@dataclass(slots=True, frozen=True)
class _ResolveParams:
    strategy: str = "naive"
    modifiers: ModifierRegistry = field(default_factory=ModifierRegistry)
    registry: Registry | None = None
    concurrency: int | None = None
    batch_size: int = DEFAULT_BATCH_SIZE
    recursion_limit: int = DEFAULT_RECURSION_LIMIT
    minimize: bool = False

    @classmethod
    def from_kwargs(cls, **params: Any) -> _ResolveParams:
        strategy = params.get("strategy", "naive")
        if strategy not in _STRATEGIES:
            warnings.warn(
                f"Unknown eager loading strategy {strategy!r}, falling back to 'naive'",
                stacklevel=3,
            )
            params["strategy"] = "naive"

        modifiers = params.get("modifiers")
        if modifiers is not None and not isinstance(modifiers, ModifierRegistry):
            params["modifiers"] = ModifierRegistry(modifiers)
        elif modifiers is None:
            params.pop("modifiers", None)

        return cls(**params)

    def concurrency_for(self, queryable: Queryable) -> int:
        if self.concurrency is not None:
            return self.concurrency
        return getattr(queryable, "concurrency", DEFAULT_CONCURRENCY)


def _parent_key(row: Mapping[str, Any], columns: Sequence[str]) -> tuple[Any, ...] | None:
    key = tuple(row.get(column) for column in columns)
    return None if any(value is None for value in key) else key


def _marker(entity: EntityDescriptor, row: Mapping[str, Any]) -> tuple[str, tuple[str, ...]]:
    return entity.name, identity_key(identity_of(entity, row))


def _unique_keys(rows: Sequence[Mapping[str, Any]], columns: Sequence[str]) -> list[tuple[Any, ...]]:
    keys: dict[tuple[str, ...], tuple[Any, ...]] = {}
    for row in rows:
        key = _parent_key(row, columns)
        if key is not None:
            keys.setdefault(identity_key(key), key)
    return list(keys.values())


class RelationFetcher:
    """Runs the batched per-relation queries of the naive strategy."""

    __slots__ = ("_batch_size", "_modifiers", "_queryable", "_registry", "_tables")

    def __init__(
        self,
        queryable: Queryable,
        registry: Registry,
        *,
        modifiers: ModifierRegistry | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        tables: TableResolver | None = None,
    ) -> None:
        self._queryable = queryable
        self._registry = registry
        self._modifiers = modifiers or ModifierRegistry()
        self._batch_size = batch_size
        self._tables = tables or TableResolver(queryable)

    async def fetch_by_parent_keys(
        self,
        keys: Sequence[tuple[Any, ...]],
        relation: RelationDescriptor,
        modifiers: Sequence[str] = (),
        *,
        columns: Sequence[str] = (),
    ) -> list[FetchedRow]:
        """Load the rows related through *relation* to the parents owning *keys*.

        Keys are values of ``relation.owner_columns``.  Many-to-many rows
        carry the requested through-table ``extra`` columns and come back in
        join order.

        Args:
            keys: Parent key tuples.
            relation: Relation to follow.
            modifiers: Node modifiers, applied after the relation's defaults.
            columns: Columns to select even if a modifier drops them.

        Returns:
            ``(parent key, row)`` pairs, one per related row and parent.
        """
        related = self._registry.entity(relation.related_entity)
        table = await self._tables(related.table)
        query = self._modifiers.apply(sa.select(table), (*relation.modify, *modifiers), related)
        query = ensure_columns(query, table, (*related.primary_key, *columns))

        if relation.kind is RelationKind.MANY_TO_MANY:
            through = relation.through
            assert through is not None
            link = await self._tables(through.table)
            labels = [f"{RESERVED_PREFIX}_key{i}" for i in range(len(through.owner_columns))]
            query = query.join(
                link,
                sa.and_(
                    *(
                        link.c[through_column] == table.c[column]
                        for through_column, column in zip(through.related_columns, relation.related_columns)
                    )
                ),
            ).add_columns(
                *(link.c[column].label(label) for column, label in zip(through.owner_columns, labels)),
                *(link.c[name] for name in relation.extra),
            )
            condition_table, condition_columns = link, through.owner_columns
        else:
            labels = list(relation.related_columns)
            condition_table, condition_columns = table, relation.related_columns

        out: list[FetchedRow] = []
        for chunk in chunked(keys, self._batch_size):
            rows = await self._queryable.run_query(query.where(key_in(condition_table, condition_columns, chunk)))
            logger.debug(
                "Loaded %s %s rows for %s parents of %s",
                len(rows), related.name, len(chunk), relation.owner_entity,
            )
            for row in rows:
                data = dict(row)
                if relation.kind is RelationKind.MANY_TO_MANY:
                    key = tuple(data.pop(label) for label in labels)
                else:
                    key = tuple(data[label] for label in labels)
                out.append((key, data))

        return out


class _NaiveResolver:
    """Breadth-first resolver issuing one batched query per relation and level.

    Sibling relations of a level are loaded concurrently.  Under infinite
    recursion a row that already appears among its own ancestors is not
    expanded again, so cyclic data terminates.
    """

    __slots__ = ("_concurrency", "_fetcher", "_lineage", "_registry")

    def __init__(self, fetcher: RelationFetcher, registry: Registry, concurrency: int) -> None:
        self._fetcher = fetcher
        self._registry = registry
        self._concurrency = concurrency
        # id(row) -> markers of the row and its ancestors along the recursion
        self._lineage: dict[int, frozenset[tuple[str, tuple[str, ...]]]] = {}

    async def run(
        self, entity: EntityDescriptor, rows: list[dict[str, Any]], expression: RelationExpression
    ) -> None:
        level = [(entity, rows, expression)]
        while level:
            loads = [
                functools.partial(self._load, owner, parents, child)
                for owner, parents, node in level
                for child in node.expanded_children().values()
            ]
            results = await gather_limited(loads, self._concurrency)
            level = [result for result in results if result is not None]

    async def _load(
        self, entity: EntityDescriptor, parents: list[dict[str, Any]], expression: RelationExpression
    ) -> tuple[EntityDescriptor, list[dict[str, Any]], RelationExpression] | None:
        relation = entity.relation(expression.relation_name)  # type: ignore[arg-type]
        related = self._registry.entity(relation.related_entity)

        keys = _unique_keys(parents, relation.owner_columns)
        fetched = (
            await self._fetcher.fetch_by_parent_keys(
                keys,
                relation,
                expression.modifiers,
                columns=required_columns(related, relation, expression),
            )
            if keys
            else []
        )

        groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for key, row in fetched:
            groups.setdefault(identity_key(key), []).append(row)

        children: list[dict[str, Any]] = []
        for parent in parents:
            key = _parent_key(parent, relation.owner_columns)
            matched = [dict(row) for row in groups.get(identity_key(key), ())] if key is not None else []
            if relation.kind.is_one:
                parent[expression.alias] = matched[0] if matched else None
            else:
                parent[expression.alias] = matched

            if expression.recursion == INFINITE:
                matched = self._unvisited(related, parent, matched)
            children.extend(matched)

        if not children or not expression.expanded_children():
            return None

        return related, children, expression

    def _unvisited(
        self, entity: EntityDescriptor, parent: dict[str, Any], rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        lineage = self._lineage.get(id(parent)) or frozenset({_marker(entity, parent)})
        out = []
        for row in rows:
            marker = _marker(entity, row)
            if marker not in lineage:
                self._lineage[id(row)] = lineage | {marker}
                out.append(row)
        return out


async def _join_tables(
    resolver: TableResolver, entity: EntityDescriptor, expression: RelationExpression, registry: Registry
) -> dict[str, sa.TableClause]:
    tables = {entity.table_name: await resolver(entity.table)}
    for child in expression.children.values():
        relation = entity.relation(child.relation_name)  # type: ignore[arg-type]
        related = registry.entity(relation.related_entity)
        if relation.through is not None:
            tables[relation.through.table.name] = await resolver(relation.through.table)
        tables.update(await _join_tables(resolver, related, child, registry))
    return tables


async def _run_join(
    queryable: Queryable,
    entity: EntityDescriptor,
    expression: RelationExpression,
    query: sa.Select[Any] | None,
    params: _ResolveParams,
    registry: Registry,
    resolver: TableResolver,
) -> list[dict[str, Any]]:
    unrolled = expression.unroll(params.recursion_limit)
    tables = await _join_tables(resolver, entity, unrolled, registry)
    statement, root = build_join(
        entity,
        unrolled,
        registry=registry,
        modifiers=params.modifiers,
        tables=tables,
        query=query,
        recursion_limit=params.recursion_limit,
        minimize=params.minimize,
    )
    rows = await queryable.run_query(statement)
    logger.debug("Join load of %s returned %s rows", entity.name, len(rows))
    return JoinResultParser(root).parse(rows)


async def resolve(
    queryable: Queryable,
    entity: str | type[Any] | EntityDescriptor,
    root_rows: Sequence[Mapping[str, Any]],
    expression: ExpressionLike,
    **params: Unpack[_ResolveParamsType],
) -> list[dict[str, Any]]:
    """Load *expression* for rows of *entity* that were fetched already.

    Args:
        queryable: Statement runner.
        entity: Entity of the root rows.
        root_rows: Root rows; each must carry the columns its relations join on.
        expression: Relation expression (string, object notation or tree).
        strategy: ``"naive"`` (one query per relation and level, default) or
            ``"join"`` (one statement; root rows are reloaded by primary key).
        modifiers: Call-time named modifiers, overriding entity modifiers.
        registry: Entity registry; defaults to the global one.
        concurrency: Sibling queries in flight; defaults to the queryable's.
        batch_size: Maximum parent keys per query.
        recursion_limit: Levels an infinite recursion is unrolled to by the
            join strategy.
        minimize: Short column labels for the join strategy.

    Returns:
        New dicts for the root rows with related objects under their aliases:
        a dict or ``None`` for belongs-to-one and has-one relations, a list
        otherwise.

    Raises:
        RelationNotFoundError: If the expression names an undeclared relation.
        InvalidRecursionError: On recursion over a non self-referential relation.
        ModifierNotFoundError: If a modifier name is unknown.

    Example:
        >>> people = await resolve(queryable, Person, rows, "[pets, children.^]")
    """
    options = _ResolveParams.from_kwargs(**params)
    registry = options.registry or Registry()
    descriptor = registry.entity(entity)
    tree = parse(expression)
    validate(tree, descriptor, registry)
    resolver = TableResolver(queryable)

    if options.strategy == "join":
        keys = _unique_keys(root_rows, descriptor.primary_key)
        if not keys:
            return []

        table = await resolver(descriptor.table)
        loaded: dict[tuple[str, ...], dict[str, Any]] = {}
        for chunk in chunked(keys, options.batch_size):
            query = sa.select(table).where(key_in(table, descriptor.primary_key, chunk))
            for obj in await _run_join(queryable, descriptor, tree, query, options, registry, resolver):
                loaded[identity_key(_parent_key(obj, descriptor.primary_key))] = obj

        return [
            loaded[marker]
            for row in root_rows
            if (key := _parent_key(row, descriptor.primary_key)) is not None
            and (marker := identity_key(key)) in loaded
        ]

    rows = [dict(row) for row in root_rows]
    fetcher = RelationFetcher(
        queryable, registry, modifiers=options.modifiers, batch_size=options.batch_size, tables=resolver
    )
    await _NaiveResolver(fetcher, registry, options.concurrency_for(queryable)).run(descriptor, rows, tree)
    return rows


async def fetch_graph(
    queryable: Queryable,
    entity: str | type[Any] | EntityDescriptor,
    expression: ExpressionLike = None,
    *,
    query: sa.Select[Any] | None = None,
    **params: Unpack[_ResolveParamsType],
) -> list[dict[str, Any]]:
    """Select root rows of *entity* and eager load *expression* for them.

    Args:
        queryable: Statement runner.
        entity: Root entity.
        expression: Relation expression.
        query: SELECT of the root table to start from; defaults to all rows.
        **params: See :func:`resolve`.

    Returns:
        Root rows as nested dicts.

    Example:
        >>> people = await fetch_graph(
        ...     queryable,
        ...     Person,
        ...     "[pets(by_name), movies]",
        ...     query=sa.select(Person.__table__).where(Person.__table__.c.age > 30),
        ...     modifiers={"by_name": order_by(Pet.__table__.c.name)},
        ...     strategy="join",
        ... )
    """
    options = _ResolveParams.from_kwargs(**params)
    registry = options.registry or Registry()
    descriptor = registry.entity(entity)
    tree = parse(expression)
    validate(tree, descriptor, registry)
    resolver = TableResolver(queryable)

    if options.strategy == "join":
        return await _run_join(queryable, descriptor, tree, query, options, registry, resolver)

    if query is None:
        query = sa.select(await resolver(descriptor.table))

    rows = [dict(row) for row in await queryable.run_query(query)]
    fetcher = RelationFetcher(
        queryable, registry, modifiers=options.modifiers, batch_size=options.batch_size, tables=resolver
    )
    await _NaiveResolver(fetcher, registry, options.concurrency_for(queryable)).run(descriptor, rows, tree)
    return rows
