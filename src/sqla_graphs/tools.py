from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Iterator, Sequence
from itertools import islice
from typing import TYPE_CHECKING, Any, Final, TypeVar

import sqlalchemy as sa


if TYPE_CHECKING:
    from .queryable import Queryable

_R = TypeVar("_R")

RESERVED_PREFIX: Final[str] = "_sg"


def key_columns(table: sa.FromClause, names: Sequence[str]) -> list[sa.ColumnElement[Any]]:
    return [table.c[name] for name in names]


def key_in(
    table: sa.FromClause, names: Sequence[str], keys: Sequence[tuple[Any, ...]]
) -> sa.ColumnElement[bool]:
    """``WHERE (a, b) IN (...)``, collapsed to a plain ``IN`` for single-column keys."""
    columns = key_columns(table, names)
    if len(columns) == 1:
        return columns[0].in_([key[0] for key in keys])

    return sa.tuple_(*columns).in_(keys)


def key_equals(table: sa.FromClause, values: dict[str, Any]) -> sa.ColumnElement[bool]:
    return sa.and_(*(table.c[name] == value for name, value in values.items()))


def ensure_columns(query: sa.Select[Any], table: sa.FromClause, names: Iterable[str]) -> sa.Select[Any]:
    """Add the columns of *table* named in *names* that *query* does not select yet."""
    selected = set(query.selected_columns.keys())
    missing = [name for name in dict.fromkeys(names) if name not in selected]
    return query.add_columns(*key_columns(table, missing)) if missing else query


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a modifier that adds WHERE conditions to a relation's query.

    Example:
        >>> adults = add_conditions(Person.__table__.c.age >= 18)
        >>> modifiers = ModifierRegistry({"adults": adults})
    """

    def _add(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add


def order_by(
    *clauses: sa.ColumnExpressionArgument[Any],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a modifier that orders a relation's rows.

    Ordering survives the join strategy: it is carried through a
    ``row_number()`` column and re-applied to the outer statement.
    """

    def _order(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.order_by(*clauses)

    return _order


def chunked(items: Iterable[_R], size: int) -> Iterator[list[_R]]:
    iterator = iter(items)
    while chunk := list(islice(iterator, size)):
        yield chunk


async def gather_limited(
    factories: Iterable[Callable[[], Awaitable[_R]]], limit: int
) -> list[_R]:
    """Await the coroutines produced by *factories*, at most *limit* at a time.

    Every coroutine runs to completion even when a sibling fails; results
    are then discarded and the first failure (in submission order) is raised.
    """
    semaphore = asyncio.Semaphore(max(limit, 1))

    async def run(factory: Callable[[], Awaitable[_R]]) -> _R:
        async with semaphore:
            return await factory()

    results = await asyncio.gather(*(run(factory) for factory in factories), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result

    return results  # type: ignore[return-value]


class TableResolver:
    """Per-call cache turning column-less table clauses into usable ones.

    Descriptors built from mapped classes already carry full ``sa.Table``
    objects and are returned untouched.  Tables declared by name only
    (``sa.table("persons")``) get their columns from the queryable.
    """

    __slots__ = ("_queryable", "_tables")

    def __init__(self, queryable: Queryable) -> None:
        self._queryable = queryable
        self._tables: dict[str, sa.TableClause] = {}

    async def __call__(self, table: sa.TableClause) -> sa.TableClause:
        if len(table.c):
            return table

        if table.name not in self._tables:
            names = await self._queryable.fetch_columns(table.name)
            self._tables[table.name] = sa.table(
                table.name, *(sa.column(name) for name in names), schema=table.schema
            )

        return self._tables[table.name]
