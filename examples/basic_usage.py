"""Basic sqla-graphs usage examples.

Demonstrates initialization, relation expressions, modifiers, the join
strategy and graph inserts/upserts.

NOTE: This file is illustrative, it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from sqla_graphs import (
    OperationPlan,
    SessionQueryable,
    add_conditions,
    fetch_graph,
    get_registry,
    init_registry,
    insert_graph,
    plan_upsert,
    upsert_graph,
)

from .models import Author, Base, Genre, Tag


# ── 1. Initialize once at startup ────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Call once: builds the relation registry of every mapped class
    init_registry(get_registry(Base))


# ── 2. Relation expressions ──────────────────────────────────────────


async def get_authors_with_books(session: AsyncSession) -> list[dict[str, Any]]:
    return await fetch_graph(SessionQueryable(session), Author, "books")


async def get_authors_with_everything(session: AsyncSession) -> list[dict[str, Any]]:
    return await fetch_graph(SessionQueryable(session), Author, "[books.[reviews, tags, genre], bio]")


async def get_authors_object_notation(session: AsyncSession) -> list[dict[str, Any]]:
    expression = {"works": {"$relation": "books", "reviews": True}, "bio": True}
    return await fetch_graph(SessionQueryable(session), Author, expression)


# ── 3. Modifiers ─────────────────────────────────────────────────────


async def get_recent_books_with_good_reviews(session: AsyncSession) -> list[dict[str, Any]]:
    # ``recent``, ``by_title`` and ``positive`` are declared on the models
    return await fetch_graph(SessionQueryable(session), Author, "books(recent, by_title).reviews(positive)")


async def get_books_tagged(session: AsyncSession, label: str) -> list[dict[str, Any]]:
    return await fetch_graph(
        SessionQueryable(session),
        Author,
        "books.tags(tagged)",
        modifiers={"tagged": add_conditions(Tag.label == label)},
    )


# ── 4. Extending an existing query ──────────────────────────────────


async def get_named_authors(session: AsyncSession, prefix: str) -> list[dict[str, Any]]:
    base = sa.select(Author.__table__).where(Author.name.startswith(prefix))
    return await fetch_graph(SessionQueryable(session), Author, "books", query=base)


# ── 5. Join strategy ─────────────────────────────────────────────────


async def get_authors_joined(session: AsyncSession) -> list[dict[str, Any]]:
    return await fetch_graph(SessionQueryable(session), Author, "books.reviews", strategy="join")


# ── 6. Recursion ─────────────────────────────────────────────────────


async def get_genre_tree(session: AsyncSession) -> list[dict[str, Any]]:
    roots = sa.select(Genre.__table__).where(Genre.parent_id.is_(None))
    return await fetch_graph(SessionQueryable(session), Genre, "subgenres.^", query=roots)


async def get_genre_ancestors(session: AsyncSession, genre_id: int) -> list[dict[str, Any]]:
    query = sa.select(Genre.__table__).where(Genre.id == genre_id)
    return await fetch_graph(SessionQueryable(session), Genre, "parent.^3", query=query)


# ── 7. Inserting graphs ──────────────────────────────────────────────


async def create_author_with_books(session: AsyncSession) -> dict[str, Any]:
    graph = {
        "#id": "ann",
        "name": "Ann",
        "books": [
            {"title": "#ref{ann.name}'s first", "reviews": [{"stars": 5}], "tags": [{"#dbRef": 1, "position": 0}]},
        ],
        "bio": {"text": "Writes things."},
    }
    result = await insert_graph(SessionQueryable(session), Author, graph)
    await session.commit()
    return result  # type: ignore[return-value]


# ── 8. Upserting graphs ──────────────────────────────────────────────


async def preview_retitle(session: AsyncSession) -> OperationPlan:
    return await plan_upsert(SessionQueryable(session), Author, {"id": 1, "books": [{"id": 10, "title": "Retitled"}]})


async def sync_author_books(session: AsyncSession) -> dict[str, Any]:
    graph = {"id": 1, "books": [{"id": 10, "title": "Retitled"}, {"title": "Sequel"}]}
    result = await upsert_graph(SessionQueryable(session), Author, graph, relate=["books.tags"])
    await session.commit()
    return result  # type: ignore[return-value]
