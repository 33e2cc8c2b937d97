from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession


@runtime_checkable
class Queryable(Protocol):
    """The statement runner every loader and executor works against.

    Implementations are handed in already scoped to a transaction; the engine
    never begins, commits or rolls back anything itself.
    """

    concurrency: int

    async def run_query(self, statement: sa.Executable) -> Sequence[Mapping[str, Any]]: ...

    async def fetch_columns(self, table_name: str) -> Sequence[str]: ...


class SessionQueryable:
    """:class:`Queryable` over a SQLAlchemy ``AsyncSession`` or ``AsyncConnection``.

    A single async connection cannot run statements concurrently, so the
    default concurrency is 1.  Pass a higher value only when the bind hands
    out independent connections.

    Example:
        >>> async with session.begin():
        ...     queryable = SessionQueryable(session)
        ...     people = await fetch_graph(queryable, Person, "pets")
    """

    __slots__ = ("bind", "concurrency")

    def __init__(self, bind: AsyncSession | AsyncConnection, concurrency: int = 1) -> None:
        self.bind = bind
        self.concurrency = concurrency

    async def run_query(self, statement: sa.Executable) -> Sequence[Mapping[str, Any]]:
        result = await self.bind.execute(statement)
        # sessions hand back ORM results for selects, which always carry rows
        if isinstance(result, sa.CursorResult) and not result.returns_rows:
            return []

        return [dict(row) for row in result.mappings()]

    async def fetch_columns(self, table_name: str) -> Sequence[str]:
        connection = await self.bind.connection() if isinstance(self.bind, AsyncSession) else self.bind

        def _columns(sync_connection: sa.Connection) -> list[str]:
            return [column["name"] for column in sa.inspect(sync_connection).get_columns(table_name)]

        return await connection.run_sync(_columns)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} bind={self.bind!r} concurrency={self.concurrency}>"
