from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_graphs import (
    Registry,
    SessionQueryable,
    expression_cache_clear,
    get_registry,
    init_registry,
    join_cache_clear,
)

from .models import Base, Movie, Person, Pet, Profile, persons_movies


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_registry() -> None:
    """Initialize the Registry singleton from the test models.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Registry()
    except RuntimeError:
        init_registry(get_registry(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
def queryable(connection: AsyncConnection) -> SessionQueryable:
    return SessionQueryable(connection)


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> dict[str, list[dict[str, Any]]]:
    persons = [
        {"id": 1, "name": "alice", "age": 40, "parent_id": None},
        {"id": 2, "name": "bob", "age": 15, "parent_id": 1},
        {"id": 3, "name": "carol", "age": 19, "parent_id": 1},
        {"id": 4, "name": "dan", "age": 3, "parent_id": 2},
        {"id": 5, "name": "eve", "age": 30, "parent_id": None},
    ]
    pets = [
        {"id": 10, "name": "rex", "species": "dog", "owner_id": 1},
        {"id": 11, "name": "tom", "species": "cat", "owner_id": 1},
        {"id": 12, "name": "nemo", "species": "fish", "owner_id": 2},
        {"id": 13, "name": "ace", "species": "dog", "owner_id": 4},
    ]
    movies = [
        {"id": 100, "title": "Alien"},
        {"id": 101, "title": "Heat"},
        {"id": 102, "title": "Up"},
    ]
    roles = [
        {"person_id": 1, "movie_id": 100, "role": "lead"},
        {"person_id": 1, "movie_id": 101, "role": "extra"},
        {"person_id": 2, "movie_id": 102, "role": "voice"},
        {"person_id": 5, "movie_id": 100, "role": "cameo"},
    ]
    profiles = [
        {"id": 1, "bio": "alice bio", "person_id": 1},
        {"id": 2, "bio": "bob bio", "person_id": 2},
    ]

    # parents first: persons reference each other
    for row in persons:
        await connection.execute(Person.__table__.insert().values(row))
    await connection.execute(Pet.__table__.insert().values(pets))
    await connection.execute(Movie.__table__.insert().values(movies))
    await connection.execute(persons_movies.insert().values(roles))
    await connection.execute(Profile.__table__.insert().values(profiles))

    if connection.dialect.name == "postgresql":
        for table in ("persons", "pets", "movies", "profiles"):
            await connection.execute(
                sa.text(f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), (SELECT MAX(id) FROM {table}))")
            )

    return {
        "persons": persons,
        "pets": pets,
        "movies": movies,
        "roles": roles,
        "profiles": profiles,
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    expression_cache_clear()
    join_cache_clear()


@pytest.fixture
def reset_registry_singleton() -> Iterator[None]:
    saved = Registry._Registry__instance  # type: ignore[attr-defined]
    yield
    Registry._Registry__instance = saved  # type: ignore[attr-defined]
