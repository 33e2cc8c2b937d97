from __future__ import annotations

import itertools
from collections.abc import Mapping, Sequence
from typing import Any

import pytest
import sqlalchemy as sa

from sqla_graphs.errors import InvalidGraphError, PlanExecutionError
from sqla_graphs.executor import PlanExecutor, execute_plan
from sqla_graphs.graph import build_graph
from sqla_graphs.operations import LINKED, Insert, Operation, OperationPlan, Patch
from sqla_graphs.options import UpsertOptions
from sqla_graphs.planner import plan_graph

from ..models import Person, Pet


pytestmark = pytest.mark.anyio


class _RecordingQueryable:
    """Records statements; inserts return increasing ids."""

    concurrency = 1

    def __init__(self, fail: bool = False) -> None:
        self.statements: list[sa.Executable] = []
        self.fail = fail
        self._ids = itertools.count(1)

    async def run_query(self, statement: sa.Executable) -> Sequence[Mapping[str, Any]]:
        if self.fail:
            raise RuntimeError("connection lost")

        self.statements.append(statement)
        if isinstance(statement, sa.Insert):
            return [{"id": next(self._ids)}]
        return []

    async def fetch_columns(self, table_name: str) -> Sequence[str]:
        raise AssertionError("mapped tables carry their columns")

    def params(self, index: int) -> dict[str, Any]:
        return dict(self.statements[index].compile().params)  # type: ignore[attr-defined]


class _Hooks:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    async def before_operation(self, operation: Operation) -> None:
        self.events.append(("before", type(operation).__name__))

    async def after_operation(self, operation: Operation) -> None:
        self.events.append(("after", type(operation).__name__))


class TestInsertExecution:
    async def test_keys_flow_into_references(self) -> None:
        objects: list[dict[str, Any]] = [
            {"name": "bob", "parent": {"#ref": "mom"}},
            {"#id": "mom", "name": "ann"},
        ]
        plan = plan_graph(Person, None, objects, UpsertOptions(allow_refs=True))
        queryable = _RecordingQueryable()
        hooks = _Hooks()
        await execute_plan(queryable, plan, hooks=[hooks])

        assert objects[1]["id"] == 1
        assert objects[0]["id"] == 2
        assert objects[0]["parent_id"] == 1
        assert queryable.params(1) == {"name": "bob", "parent_id": 1}
        assert hooks.events == [("before", "Insert"), ("after", "Insert"), ("before", "Insert"), ("after", "Insert")]

    async def test_template_substitution(self) -> None:
        objects = [{"#id": "mom", "name": "ann"}, {"name": "#ref{mom.name} jr", "age": "#ref{mom.id}"}]
        plan = plan_graph(Person, None, objects, UpsertOptions(allow_refs=True))
        queryable = _RecordingQueryable()
        await PlanExecutor(queryable).execute(plan)

        assert queryable.params(1) == {"name": "ann jr", "age": 1}
        assert plan.references.lookup("mom", "id") == 1

    async def test_child_gets_parent_key(self) -> None:
        objects = {"name": "ann", "pets": [{"name": "rex"}]}
        plan = plan_graph(Person, None, objects)
        await execute_plan(_RecordingQueryable(), plan)

        assert objects["pets"][0] == {"name": "rex", "owner_id": 1, "id": 2}  # type: ignore[index]


class TestUpdateExecution:
    async def test_patch_and_delete_statements(self) -> None:
        plan = plan_graph(
            Person,
            {"id": 1, "pets": [{"id": 10, "name": "Old"}, {"id": 11, "name": "Gone"}]},
            {"id": 1, "pets": [{"id": 10, "name": "Rex"}]},
        )
        queryable = _RecordingQueryable()
        await execute_plan(queryable, plan)
        update, delete = queryable.statements

        assert isinstance(update, sa.Update)
        assert isinstance(delete, sa.Delete)
        assert queryable.params(0) == {"name": "Rex", "id_1": 10}
        assert queryable.params(1) == {"id_1": 11}

    async def test_many_to_many_relate(self) -> None:
        plan = plan_graph(Person, {"id": 1, "movies": []}, {"id": 1, "movies": [{"#dbRef": 102, "role": "voice"}]})
        queryable = _RecordingQueryable()
        await execute_plan(queryable, plan)

        (insert,) = queryable.statements
        assert insert.table.name == "persons_movies"  # type: ignore[attr-defined]
        assert queryable.params(0) == {"person_id": 1, "movie_id": 102, "role": "voice"}

    async def test_has_many_unrelate_clears_key(self) -> None:
        plan = plan_graph(Person, {"id": 1, "pets": [{"id": 10}]}, {"id": 1, "pets": []}, UpsertOptions(unrelate=True))
        queryable = _RecordingQueryable()
        await execute_plan(queryable, plan)

        assert queryable.params(0) == {"owner_id": None, "id_1": 10}


class TestExecutionErrors:
    async def test_statement_failure_is_wrapped(self) -> None:
        plan = plan_graph(Person, None, {"name": "ann"})
        with pytest.raises(PlanExecutionError, match="Insert on table 'persons'") as exc:
            await execute_plan(_RecordingQueryable(fail=True), plan)

        assert isinstance(exc.value.operation, Insert)
        assert exc.value.table == "persons"
        assert isinstance(exc.value.__cause__, RuntimeError)

    async def test_graph_errors_are_not_wrapped(self) -> None:
        (node,) = build_graph(Pet, {"id": 10})
        plan = OperationPlan([Patch("Pet", 10, {"owner_id": LINKED}, node=node)])

        with pytest.raises(InvalidGraphError, match="No key known"):
            await execute_plan(_RecordingQueryable(), plan)

    async def test_hooks_not_called_after_failure(self) -> None:
        hooks = _Hooks()
        with pytest.raises(PlanExecutionError):
            await execute_plan(_RecordingQueryable(fail=True), plan_graph(Person, None, {"name": "x"}), hooks=[hooks])

        assert hooks.events == [("before", "Insert")]
