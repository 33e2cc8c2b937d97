from __future__ import annotations

from typing import Any

import pytest

from sqla_graphs.errors import (
    CyclicGraphError,
    DuplicateIdError,
    InvalidGraphError,
    NotFoundError,
    ReferenceNotAllowedError,
    UnresolvedReferenceError,
)
from sqla_graphs.graph import build_graph
from sqla_graphs.operations import LINKED, Delete, Insert, OperationPlan, ParentLink, Patch, Relate, Unrelate
from sqla_graphs.options import UpsertOptions
from sqla_graphs.planner import plan_graph

from ..models import Person, Pet


REFS = UpsertOptions(allow_refs=True)


def _person(**fields: Any) -> dict[str, Any]:
    return {"id": 1, "name": "alice", **fields}


class TestDiff:
    def test_patch_and_delete(self) -> None:
        plan = plan_graph(
            "Person",
            {"id": 1, "pets": [{"id": 10, "name": "Old"}, {"id": 11, "name": "Gone"}]},
            {"id": 1, "pets": [{"id": 10, "name": "Rex"}]},
        )

        assert list(plan) == [Patch("Pet", 10, {"name": "Rex"}), Delete("Pet", 11)]
        assert plan.summary() == {"Patch": 1, "Delete": 1}

    def test_no_delete(self) -> None:
        plan = plan_graph(
            Person,
            {"id": 1, "pets": [{"id": 10, "name": "Old"}, {"id": 11, "name": "Gone"}]},
            {"id": 1, "pets": [{"id": 10, "name": "Rex"}]},
            UpsertOptions(no_delete=True),
        )
        assert plan == [Patch("Pet", 10, {"name": "Rex"})]

    def test_unmentioned_relations_are_untouched(self) -> None:
        plan = plan_graph(
            Person,
            _person(pets=[{"id": 10, "name": "rex"}], movies=[{"id": 100}]),
            _person(name="alice2"),
        )
        assert plan == [Patch("Person", 1, {"name": "alice2"})]

    def test_identical_graph_plans_nothing(self) -> None:
        graph = _person(
            pets=[{"id": 10, "name": "rex", "species": "dog"}],
            movies=[{"id": 100, "title": "Alien", "role": "lead"}],
            children=[{"id": 2, "name": "bob", "pets": []}],
            profile={"id": 1, "bio": "hi"},
        )
        assert plan_graph(Person, graph, graph) == []

    def test_values_compared_by_value(self) -> None:
        plan = plan_graph(Person, _person(age=40), {"id": "1", "age": "40"})
        assert len(plan) == 0

    def test_nested_changes(self) -> None:
        plan = plan_graph(
            Person,
            _person(children=[{"id": 2, "pets": [{"id": 12, "name": "nemo"}]}]),
            _person(children=[{"id": 2, "pets": [{"id": 12, "name": "Nemo"}, {"name": "new"}]}]),
        )
        assert plan == [Patch("Pet", 12, {"name": "Nemo"}), Insert("Pet", {"name": "new"}, ParentLink("pets"))]

    def test_options_by_relation_path(self) -> None:
        existing = _person(children=[{"id": 2, "pets": [{"id": 12}, {"id": 13}]}], pets=[{"id": 10}])
        incoming = _person(children=[{"id": 2, "pets": [{"id": 12}]}], pets=[])
        plan = plan_graph(Person, existing, incoming, UpsertOptions(no_delete=frozenset({"children.pets"})))

        assert plan == [Delete("Pet", 10)]

    def test_unrelate_instead_of_delete(self) -> None:
        plan = plan_graph(
            Person, _person(pets=[{"id": 10}]), _person(pets=[]), UpsertOptions(unrelate=True)
        )
        assert plan == [Unrelate("Pet", 10)]

    def test_deleting_a_row_deletes_what_it_owns(self) -> None:
        existing = _person(
            children=[{"id": 2, "pets": [{"id": 12}], "movies": [{"id": 102}], "profile": {"id": 2}}]
        )
        plan = plan_graph(Person, existing, _person(children=[]))

        assert plan == [Delete("Pet", 12), Unrelate("Movie", 102), Delete("Profile", 2), Delete("Person", 2)]

    def test_prebuilt_nodes(self) -> None:
        incoming = build_graph(Person, {"name": "new"})
        plan = plan_graph(Person, None, incoming)

        assert plan == [Insert("Person", {"name": "new"})]
        assert plan[0].node is incoming[0]


class TestInsert:
    def test_empty_existing_graph(self) -> None:
        plan = plan_graph(
            Person,
            None,
            {"name": "ann", "pets": [{"name": "rex"}], "movies": [{"title": "Alien"}]},
        )

        assert plan == [
            Insert("Person", {"name": "ann"}),
            Insert("Pet", {"name": "rex"}, ParentLink("pets")),
            Insert("Movie", {"title": "Alien"}, ParentLink("movies")),
            Relate("Movie", None),
        ]
        assert all(isinstance(op, (Insert, Relate)) for op in plan)

    def test_belongs_to_one_is_inserted_first(self) -> None:
        plan = plan_graph(Pet, None, {"name": "rex", "owner": {"name": "ann"}})
        assert plan == [Insert("Person", {"name": "ann"}, ParentLink("owner")), Insert("Pet", {"name": "rex"})]

    def test_missing_root(self) -> None:
        with pytest.raises(NotFoundError) as exc:
            plan_graph(Person, None, {"id": 42, "name": "x"})
        assert exc.value.identity == 42

    def test_missing_child(self) -> None:
        with pytest.raises(NotFoundError, match="relation path 'pets'"):
            plan_graph(Person, _person(pets=[]), _person(pets=[{"id": 99, "name": "x"}]))

    def test_insert_missing(self) -> None:
        plan = plan_graph(
            Person,
            _person(pets=[]),
            _person(pets=[{"id": 99, "name": "x"}]),
            UpsertOptions(insert_missing=True),
        )
        assert plan == [Insert("Pet", {"id": 99, "name": "x"}, ParentLink("pets"))]

    def test_has_one_replacement_waits_for_removal(self) -> None:
        plan = plan_graph(Person, _person(profile={"id": 1, "bio": "old"}), _person(profile={"bio": "new"}))
        assert plan == [Delete("Profile", 1), Insert("Profile", {"bio": "new"}, ParentLink("profile"))]

    def test_match_by_position(self) -> None:
        incoming = _person(pets=[{"name": "Rex"}])
        plan = plan_graph(
            Person, _person(pets=[{"id": 10, "name": "rex"}]), incoming, UpsertOptions(match_by_position=True)
        )

        assert plan == [Patch("Pet", 10, {"name": "Rex"})]
        assert incoming["pets"][0]["id"] == 10


class TestRelate:
    def test_relate_existing_row(self) -> None:
        plan = plan_graph(
            Person,
            _person(pets=[]),
            _person(pets=[{"id": 12, "name": "nemo2"}]),
            UpsertOptions(relate=True),
        )
        assert plan == [Relate("Pet", 12), Patch("Pet", 12, {"name": "nemo2"})]

    def test_many_to_many(self) -> None:
        plan = plan_graph(
            Person,
            _person(movies=[{"id": 100}, {"id": 101}]),
            _person(movies=[{"id": 100}, {"#dbRef": 102, "role": "voice"}]),
        )
        assert plan == [Relate("Movie", 102, {"role": "voice"}), Unrelate("Movie", 101)]

    def test_many_to_many_removal_never_deletes(self) -> None:
        plan = plan_graph(Person, _person(movies=[{"id": 100}]), _person(movies=[]))
        assert plan == [Unrelate("Movie", 100)]

    def test_existing_reference_is_kept(self) -> None:
        plan = plan_graph(Person, _person(movies=[{"id": 100}]), _person(movies=[{"#dbRef": 100}]))
        assert plan == []

    def test_belongs_to_one_set_to_none(self) -> None:
        existing = {"id": 10, "owner_id": 1, "owner": {"id": 1}}
        incoming = {"id": 10, "owner": None}

        assert plan_graph(Pet, existing, incoming, UpsertOptions(unrelate=True)) == [
            Patch("Pet", 10, {"owner_id": None})
        ]
        assert plan_graph(Pet, existing, incoming) == [Patch("Pet", 10, {"owner_id": None}), Delete("Person", 1)]

    def test_belongs_to_one_relinked(self) -> None:
        plan = plan_graph(
            Pet,
            {"id": 10, "owner_id": 1, "owner": {"id": 1}},
            {"id": 10, "owner": {"#dbRef": 2}},
            UpsertOptions(unrelate=True),
        )

        assert plan == [Patch("Pet", 10, {"owner_id": LINKED})]
        (patch,) = plan
        assert isinstance(patch, Patch)
        assert [(relation.name, target.identity) for relation, target in patch.links] == [("owner", 2)]

    def test_belongs_to_one_already_linked(self) -> None:
        plan = plan_graph(Pet, {"id": 10, "owner_id": 1, "owner": {"id": 1}}, {"id": 10, "owner": {"#dbRef": "1"}})
        assert plan == []


class TestReferences:
    def test_refs_need_allow_refs(self) -> None:
        with pytest.raises(ReferenceNotAllowedError, match="mom"):
            plan_graph(Person, None, [{"#id": "mom", "name": "ann"}, {"name": "bob", "parent": {"#ref": "mom"}}])

    def test_referenced_row_is_written_first(self) -> None:
        plan = plan_graph(
            Person, None, [{"name": "bob", "parent": {"#ref": "mom"}}, {"#id": "mom", "name": "ann"}], REFS
        )
        assert plan == [Insert("Person", {"name": "ann"}), Insert("Person", {"name": "bob"})]
        assert "mom" in plan.references

    def test_template_reference_orders_insert(self) -> None:
        plan = plan_graph(
            Person, None, [{"name": "#ref{mom.name} jr"}, {"#id": "mom", "name": "ann"}], REFS
        )
        assert plan == [Insert("Person", {"name": "ann"}), Insert("Person", {"name": "#ref{mom.name} jr"})]

    def test_many_to_many_reference(self) -> None:
        plan = plan_graph(
            Person,
            None,
            {"name": "ann", "movies": [{"#id": "m", "title": "Alien"}], "children": [
                {"name": "bob", "movies": [{"#ref": "m", "role": "extra"}]},
            ]},
            REFS,
        )
        assert [type(op).__name__ for op in plan] == ["Insert", "Insert", "Relate", "Insert", "Relate"]
        assert plan[-1] == Relate("Movie", None, {"role": "extra"})

    def test_duplicate_id(self) -> None:
        with pytest.raises(DuplicateIdError):
            plan_graph(Person, None, [{"#id": "a"}, {"#id": "a"}], REFS)

    def test_unknown_reference(self) -> None:
        with pytest.raises(UnresolvedReferenceError):
            plan_graph(Person, None, {"name": "bob", "parent": {"#ref": "nobody"}}, REFS)

    def test_cycle(self) -> None:
        with pytest.raises(CyclicGraphError) as exc:
            plan_graph(
                Person,
                None,
                [{"#id": "a", "name": "#ref{b.name}"}, {"#id": "b", "name": "#ref{a.name}"}],
                REFS,
            )
        assert exc.value.entities == ("Person",)

    def test_root_reference_rejected(self) -> None:
        with pytest.raises(InvalidGraphError, match="root object"):
            plan_graph(Person, None, {"#dbRef": 1}, REFS)


class TestOperationPlan:
    def test_sequence_protocol(self) -> None:
        plan = OperationPlan([Delete("Pet", 1), Delete("Pet", 2)])

        assert len(plan) == 2
        assert plan[1] == Delete("Pet", 2)
        assert list(plan[:1]) == [Delete("Pet", 1)]
        assert plan == OperationPlan([Delete("Pet", 1), Delete("Pet", 2)])
        assert "Delete(entity='Pet', identity=1)" in repr(plan)
