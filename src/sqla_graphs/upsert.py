from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, TypeVar

import sqlalchemy as sa

from .eager import DEFAULT_BATCH_SIZE, fetch_graph
from .executor import OperationHook, PlanExecutor
from .expression import RelationExpression
from .graph import GraphNode, build_graph
from .operations import OperationPlan
from .options import UpsertOptions
from .planner import plan_graph
from .queryable import Queryable
from .registry import EntityDescriptor, Registry
from .tools import TableResolver, chunked, key_in


logger = logging.getLogger(__name__)

_G = TypeVar("_G", Mapping[str, Any], Sequence[Mapping[str, Any]])


async def fetch_current(
    queryable: Queryable,
    entity: EntityDescriptor,
    nodes: Sequence[GraphNode],
    registry: Registry,
) -> list[GraphNode]:
    """Load the persisted counterpart of *nodes*: identified roots and every relation they mention."""
    keys = [
        node.identity if isinstance(node.identity, tuple) else (node.identity,)
        for node in nodes
        if node.had_identity and not node.is_reference
    ]
    if not keys:
        return []

    table = await TableResolver(queryable)(entity.table)
    expression = RelationExpression.from_graph(nodes)
    rows: list[dict[str, Any]] = []
    for chunk in chunked(keys, DEFAULT_BATCH_SIZE):
        query = sa.select(table).where(key_in(table, entity.primary_key, chunk))
        rows.extend(
            await fetch_graph(queryable, entity, expression, query=query, registry=registry, strategy="naive")
        )

    return build_graph(entity, rows, registry)


async def plan_upsert(
    queryable: Queryable,
    entity: str | type[Any] | EntityDescriptor,
    objects: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    *,
    registry: Registry | None = None,
    **options: Any,
) -> OperationPlan:
    """Compute, without executing, the plan :func:`upsert_graph` would run."""
    registry = registry or Registry()
    descriptor = registry.entity(entity)
    upsert_options = UpsertOptions.from_kwargs(**options)

    nodes = build_graph(descriptor, objects, registry)
    current = await fetch_current(queryable, descriptor, nodes, registry)
    return plan_graph(descriptor, current, nodes, upsert_options, registry=registry)


async def upsert_graph(
    queryable: Queryable,
    entity: str | type[Any] | EntityDescriptor,
    objects: _G,
    *,
    registry: Registry | None = None,
    hooks: Iterable[OperationHook] = (),
    **options: Any,
) -> _G:
    """Make the persisted graph of *objects* look like *objects*.

    Identified roots are loaded together with every relation mentioned
    anywhere in the input, diffed against it and the resulting plan is
    executed in order.  Relations that are not mentioned stay untouched.

    Args:
        queryable: Transaction-scoped statement runner.
        entity: Entity of the root objects.
        objects: An object or a list of objects, possibly nested.
        registry: Entity registry; defaults to the global one.
        hooks: :class:`OperationHook` callbacks.
        **options: :class:`UpsertOptions` flags.

    Returns:
        *objects*, with generated keys and resolved references filled in.

    Raises:
        GraphError: Any planning error, before a statement is issued.
        PlanExecutionError: If a statement fails; earlier statements are not
            rolled back.

    Example:
        >>> await upsert_graph(
        ...     queryable,
        ...     Person,
        ...     {"id": 1, "pets": [{"id": 10, "name": "Rex"}, {"name": "New"}]},
        ...     no_delete=True,
        ... )
    """
    registry = registry or Registry()
    plan = await plan_upsert(queryable, entity, objects, registry=registry, **options)
    await PlanExecutor(queryable, hooks=hooks).execute(plan)
    logger.debug("Upserted %s graph: %s", registry.entity(entity).name, plan.summary())
    return objects


async def insert_graph(
    queryable: Queryable,
    entity: str | type[Any] | EntityDescriptor,
    objects: _G,
    *,
    registry: Registry | None = None,
    hooks: Iterable[OperationHook] = (),
    **options: Any,
) -> _G:
    """Insert a whole new graph; ``#id`` / ``#ref`` may link rows to each other.

    Nothing is read first.  Rows carrying an id are inserted with it, unless
    ``relate`` is given, in which case they are related as existing rows.

    Example:
        >>> await insert_graph(
        ...     queryable,
        ...     Person,
        ...     [
        ...         {"#id": "mom", "name": "Ann"},
        ...         {"name": "Bob", "parent": {"#ref": "mom"}},
        ...     ],
        ... )
    """
    registry = registry or Registry()
    descriptor = registry.entity(entity)
    insert_options = UpsertOptions.insert_only(**options)

    nodes = build_graph(descriptor, objects, registry)
    plan = plan_graph(descriptor, None, nodes, insert_options, registry=registry)
    await PlanExecutor(queryable, hooks=hooks).execute(plan)
    logger.debug("Inserted %s graph: %s", descriptor.name, plan.summary())
    return objects
