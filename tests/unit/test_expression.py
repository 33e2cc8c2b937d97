from __future__ import annotations

import pytest

from sqla_graphs.errors import DuplicateAliasError, InvalidRecursionError, ParseError, RelationNotFoundError
from sqla_graphs.expression import (
    RelationExpression,
    expression_cache_clear,
    expression_cache_info,
    parse,
    validate,
)
from sqla_graphs.graph import build_graph
from sqla_graphs.parsing import INFINITE
from sqla_graphs.registry import Registry

from ..models import Person


class TestParseString:
    def test_nested_tree(self) -> None:
        tree = parse("children.[pets, movies.actors]")

        assert tree.is_root
        children = tree.children["children"]
        assert list(children.children) == ["pets", "movies"]
        assert list(children.children["movies"].children) == ["actors"]
        assert children.children["pets"].is_empty

    def test_to_string_is_canonical(self) -> None:
        assert str(parse("children.[ pets ,movies.actors ]")) == "children.[pets, movies.actors]"
        assert str(parse("[pets]")) == "pets"

    def test_alias(self) -> None:
        node = parse("kids:children").children["kids"]

        assert node.relation_name == "children"
        assert node.alias == "kids"
        assert str(parse("kids:children")) == "kids:children"

    def test_same_relation_twice_with_aliases(self) -> None:
        tree = parse("[dogs:pets(dogs), named:pets(by_name)]")
        assert {node.relation_name for node in tree.children.values()} == {"pets"}
        assert tree.children["dogs"].modifiers == ("dogs",)

    def test_duplicate_alias(self) -> None:
        with pytest.raises(DuplicateAliasError) as exc:
            parse("[pets, pets]")
        assert exc.value.alias == "pets"

    def test_empty(self) -> None:
        assert parse("").is_empty
        assert parse(None) == parse("")
        assert parse({}) == RelationExpression()

    def test_already_parsed_is_returned(self) -> None:
        tree = parse("pets")
        assert parse(tree) is tree

    def test_unsupported_type(self) -> None:
        with pytest.raises(TypeError, match="int"):
            parse(5)  # type: ignore[arg-type]


class TestObjectNotation:
    def test_equals_string_form(self) -> None:
        assert parse({"children": {"pets": True, "movies": {"actors": True}}}) == parse(
            "children.[pets, movies.actors]"
        )

    def test_directives(self) -> None:
        obj = {"kids": {"$relation": "children", "$modify": ["adults"], "$recursive": 2, "pets": True}}
        assert parse(obj) == parse("kids:children(adults).[pets, ^2]")

    def test_single_modifier_string(self) -> None:
        assert parse({"pets": {"$modify": "dogs"}}) == parse("pets(dogs)")

    def test_falsy_values_are_skipped(self) -> None:
        assert list(parse({"pets": True, "movies": False}).children) == ["pets"]

    def test_to_object(self) -> None:
        tree = parse("kids:children(adults).[pets, ^]")

        assert tree.to_object() == {
            "kids": {"$relation": "children", "$recursive": True, "$modify": ["adults"], "pets": True}
        }
        assert parse(tree.to_object()) == tree

    def test_invalid_recursive_value(self) -> None:
        with pytest.raises(ParseError, match=r"invalid \$recursive"):
            parse({"children": {"$recursive": "deep"}})

    def test_unknown_directive(self) -> None:
        with pytest.raises(ParseError, match="unknown directive"):
            parse({"pets": {"$limit": 3}})

    def test_reserved_name(self) -> None:
        with pytest.raises(ParseError, match="invalid relation name"):
            parse({"_sg0": True})


class TestRecursion:
    def test_infinite_expands_to_itself(self) -> None:
        node = parse("children.^").children["children"]

        assert node.recursion == INFINITE
        assert node.expanded_children()["children"] is node

    def test_bounded_counts_down(self) -> None:
        node = parse("children.^3").children["children"]
        second = node.expanded_children()["children"]

        assert second.recursion == 2
        assert second.expanded_children()["children"].recursion == 1
        assert "children" not in second.expanded_children()["children"].expanded_children()

    def test_plain_node_expands_to_children(self) -> None:
        node = parse("children.pets").children["children"]
        assert node.expanded_children() is node.children

    def test_unroll_bounded(self) -> None:
        unrolled = parse("children.[pets, ^2]").unroll(7)
        assert unrolled == parse("children.[pets, children.pets]")

    def test_unroll_infinite_uses_limit(self) -> None:
        unrolled = parse("children.^").unroll(3)
        assert unrolled == parse("children.children.children")


class TestMerge:
    def test_union_of_children(self) -> None:
        merged = parse("children.pets").merge(parse("[children.movies, profile]"))
        assert merged == parse("[children.[pets, movies], profile]")

    def test_modifiers_and_recursion(self) -> None:
        merged = parse("children(adults).^2").merge(parse("children(by_name).^"))
        node = merged.children["children"]

        assert node.modifiers == ("adults", "by_name")
        assert node.recursion == INFINITE

    def test_bounded_recursion_keeps_deepest(self) -> None:
        merged = parse("children.^2").merge(parse("children.^4"))
        assert merged.children["children"].recursion == 4


class TestFromGraph:
    def test_covers_every_mentioned_relation(self) -> None:
        nodes = build_graph(
            Person,
            [
                {"id": 1, "pets": [{"id": 10}]},
                {"id": 2, "movies": [], "children": [{"name": "x", "pets": []}]},
            ],
        )
        assert RelationExpression.from_graph(nodes) == parse("[pets, movies, children.pets]")


class TestValidate:
    def test_valid(self) -> None:
        registry = Registry()
        validate(parse("children.[pets.owner, movies.actors, ^]"), registry.entity(Person), registry)

    def test_unknown_relation(self) -> None:
        registry = Registry()
        with pytest.raises(RelationNotFoundError, match="'Pet' has no relation named 'cars'"):
            validate(parse("pets.cars"), registry.entity(Person), registry)

    def test_recursion_needs_self_reference(self) -> None:
        registry = Registry()
        with pytest.raises(InvalidRecursionError) as exc:
            validate(parse("pets.^"), registry.entity(Person), registry)
        assert (exc.value.entity, exc.value.relation) == ("Person", "pets")


class TestExpressionCache:
    def test_string_parse_is_cached(self) -> None:
        expression_cache_clear()
        first = parse("children.pets")
        second = parse("children.pets")

        assert first is second
        info = expression_cache_info()
        assert info.hits == 1
        assert info.misses == 1

    def test_object_notation_is_not_cached(self) -> None:
        expression_cache_clear()
        parse({"pets": True})
        assert expression_cache_info().currsize == 0

    def test_trees_are_hashable(self) -> None:
        assert hash(parse("children.[pets, ^]")) == hash(parse({"children": {"pets": True, "$recursive": True}}))
