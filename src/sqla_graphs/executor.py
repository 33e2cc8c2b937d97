"""Sequential execution of an :class:`OperationPlan`.

Every statement is awaited before the next one is issued.  Generated keys
and substituted reference values are written back into the graph nodes (and
from there into the caller's input objects) so later operations can copy
them into their foreign keys.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

import sqlalchemy as sa

from .errors import GraphError, InvalidGraphError, PlanExecutionError
from .graph import GraphNode
from .operations import LINKED, Delete, Insert, Operation, OperationPlan, Patch, Relate, Unrelate
from .queryable import Queryable
from .references import ReferenceTable
from .registry import RelationDescriptor, RelationKind
from .tools import TableResolver, key_columns, key_equals


logger = logging.getLogger(__name__)


class OperationHook(Protocol):
    """Callbacks run around every executed operation."""

    async def before_operation(self, operation: Operation) -> None: ...

    async def after_operation(self, operation: Operation) -> None: ...


def _linked_values(relation: RelationDescriptor, target: GraphNode) -> dict[str, Any] | None:
    """Owner foreign key values pointing at *target*, or ``None`` if its key is unknown."""
    row = target.row()
    if any(row.get(column) is None for column in relation.related_columns):
        return None

    return {
        owner: row[related] for owner, related in zip(relation.owner_columns, relation.related_columns)
    }


class PlanExecutor:
    """Run the operations of a plan one after another against *queryable*.

    Nothing is rolled back on failure; the caller owns the transaction.
    """

    __slots__ = ("_hooks", "_queryable", "_tables")

    def __init__(self, queryable: Queryable, *, hooks: Iterable[OperationHook] = ()) -> None:
        self._queryable = queryable
        self._hooks = tuple(hooks)
        self._tables = TableResolver(queryable)

    async def execute(self, plan: OperationPlan) -> None:
        """Execute *plan* in order.

        Raises:
            PlanExecutionError: If a statement fails; the cause is chained.
            UnresolvedReferenceError: If a ``#ref`` cannot be substituted.
        """
        for operation in plan:
            for hook in self._hooks:
                await hook.before_operation(operation)

            try:
                await self._run(operation, plan.references)
            except GraphError:
                raise
            except Exception as exc:
                node = operation.node
                table = node.entity.table_name if node is not None else operation.entity
                identity = node.identity if node is not None else None
                raise PlanExecutionError(operation, table, identity) from exc

            for hook in self._hooks:
                await hook.after_operation(operation)

    async def _run(self, operation: Operation, references: ReferenceTable) -> None:
        match operation:
            case Insert():
                await self._insert(operation, references)
            case Patch():
                await self._patch(operation, references)
            case Delete():
                await self._delete(operation)
            case Relate():
                await self._relate(operation, references)
            case Unrelate():
                await self._unrelate(operation)

    async def _insert(self, operation: Insert, references: ReferenceTable) -> None:
        node = operation.node
        assert node is not None
        table = await self._tables(node.entity.table)

        values: dict[str, Any] = references.substitute(operation.data)
        relation = node.relation
        if relation is not None and relation.kind.owns_related and node.parent is not None:
            parent_values = node.parent.key_values(relation.owner_columns)
            values.update(zip(relation.related_columns, parent_values.values()))

        for name, children in node.children.items():
            child_relation = node.entity.relations[name]
            if child_relation.kind is not RelationKind.BELONGS_TO_ONE or not children:
                continue
            child = children[0]
            target = references.node(child.ref_label) if child.ref_label is not None else child
            linked = _linked_values(child_relation, target)
            if linked is not None:
                values.update(linked)

        statement = sa.insert(table).values(values).returning(*key_columns(table, node.entity.primary_key))
        rows = await self._queryable.run_query(statement)
        written = {**values, **(rows[0] if rows else {})}
        node.assign(written)
        if node.id_label is not None:
            references.mark_resolved(node.id_label, written)

        logger.debug("Inserted %s %r", node.entity.name, node.identity)

    async def _patch(self, operation: Patch, references: ReferenceTable) -> None:
        node = operation.node
        assert node is not None
        table = await self._tables(node.entity.table)

        values: dict[str, Any] = references.substitute(operation.changed_fields)
        for relation, target in operation.links:
            linked = _linked_values(relation, target)
            if linked is not None:
                values.update(linked)

        unlinked = [key for key, value in values.items() if value is LINKED]
        if unlinked:
            raise InvalidGraphError(f"No key known for {unlinked} of {node!r}")

        identity = node.identity_values()
        await self._queryable.run_query(sa.update(table).where(key_equals(table, identity)).values(values))
        node.assign(values)
        if node.id_label is not None:
            references.mark_resolved(node.id_label, {**node.data, **identity})

        logger.debug("Patched %s %r: %s", node.entity.name, node.identity, sorted(values))

    async def _delete(self, operation: Delete) -> None:
        node = operation.node
        assert node is not None
        table = await self._tables(node.entity.table)
        await self._queryable.run_query(sa.delete(table).where(key_equals(table, node.identity_values())))
        logger.debug("Deleted %s %r", node.entity.name, node.identity)

    async def _relate(self, operation: Relate, references: ReferenceTable) -> None:
        node, parent, relation = operation.node, operation.parent, operation.relation
        assert node is not None and parent is not None and relation is not None
        owner_values = parent.key_values(relation.owner_columns)

        if relation.kind is RelationKind.MANY_TO_MANY:
            through = relation.through
            assert through is not None
            table = await self._tables(through.table)
            related_values = node.key_values(relation.related_columns)
            values = dict(zip(through.owner_columns, owner_values.values()))
            values.update(zip(through.related_columns, related_values.values()))
            values.update(references.substitute(operation.through_data))
            await self._queryable.run_query(sa.insert(table).values(values))
        else:
            table = await self._tables(node.entity.table)
            values = dict(zip(relation.related_columns, owner_values.values()))
            await self._queryable.run_query(
                sa.update(table).where(key_equals(table, node.identity_values())).values(values)
            )
            node.assign(values)

        logger.debug("Related %s %r to %s %r", node.entity.name, node.identity, parent.entity.name, parent.identity)

    async def _unrelate(self, operation: Unrelate) -> None:
        node, parent, relation = operation.node, operation.parent, operation.relation
        assert node is not None and parent is not None and relation is not None

        if relation.kind is RelationKind.MANY_TO_MANY:
            through = relation.through
            assert through is not None
            table = await self._tables(through.table)
            owner_values = parent.key_values(relation.owner_columns)
            related_values = node.key_values(relation.related_columns)
            condition = {
                **dict(zip(through.owner_columns, owner_values.values())),
                **dict(zip(through.related_columns, related_values.values())),
            }
            await self._queryable.run_query(sa.delete(table).where(key_equals(table, condition)))
        else:
            table = await self._tables(node.entity.table)
            await self._queryable.run_query(
                sa.update(table)
                .where(key_equals(table, node.identity_values()))
                .values(dict.fromkeys(relation.related_columns))
            )

        logger.debug("Unrelated %s %r from %s %r", node.entity.name, node.identity, parent.entity.name, parent.identity)


async def execute_plan(
    queryable: Queryable, plan: OperationPlan, *, hooks: Iterable[OperationHook] = ()
) -> None:
    """Shortcut for ``PlanExecutor(queryable, hooks=hooks).execute(plan)``."""
    await PlanExecutor(queryable, hooks=hooks).execute(plan)
