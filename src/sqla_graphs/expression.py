"""Relation expressions: which relations of an entity to load or write.

Expressions come in two surface forms that produce the same tree::

    parse("children.[pets(named), movies.actors]")
    parse({"children": {"pets": {"$modify": ["named"]}, "movies": {"actors": True}}})

Trees are immutable and hashable, and parsing a string is cached by the
literal input, so call sites can pass the same expression over and over.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Final, Literal, Union

from .datastructures import frozendict
from .errors import DuplicateAliasError, InvalidRecursionError, ParseError
from .parsing import INFINITE, ParsedNode, RelationParser
from .tools import RESERVED_PREFIX


if TYPE_CHECKING:
    from .graph import GraphNode
    from .registry import EntityDescriptor, Registry

Recursion = Union[int, Literal["infinite"], None]
ExpressionLike = Union[str, Mapping[str, Any], "RelationExpression", None]

EXPRESSION_CACHE_SIZE: Final[int] = 512

_parser = RelationParser()


@dataclass(slots=True, frozen=True)
class RelationExpression:
    """A node of a relation expression tree.

    The root has no ``relation_name``; every other node names the relation
    it follows and the ``alias`` its results are stored under.  ``recursion``
    repeats the node's own relation: ``"infinite"`` until no more rows are
    found, or an integer giving the total number of levels.
    """

    relation_name: str | None = None
    alias: str = ""
    recursion: Recursion = None
    modifiers: tuple[str, ...] = ()
    children: frozendict[str, RelationExpression] = field(default_factory=frozendict)

    @property
    def is_root(self) -> bool:
        return self.relation_name is None

    @property
    def is_empty(self) -> bool:
        return not self.children

    def expanded_children(self) -> frozendict[str, RelationExpression]:
        """Children including the implicit recursive one.

        ``a.^`` yields itself again, ``a.^3`` yields ``a.^2`` and ``a.^1``
        yields nothing extra.
        """
        if self.recursion is None or self.relation_name is None:
            return self.children

        if self.recursion == INFINITE:
            child = self
        elif self.recursion > 1:  # type: ignore[operator]
            child = dataclasses.replace(self, recursion=self.recursion - 1)  # type: ignore[operator]
        else:
            return self.children

        return self.children.copy(**{self.alias: child})

    def unroll(self, limit: int) -> RelationExpression:
        """Return an equivalent tree without recursion markers.

        Infinite recursion is cut after *limit* levels.
        """
        return self._unroll(limit, None)

    def _unroll(self, limit: int, levels: int | None) -> RelationExpression:
        if self.recursion is not None and levels is None:
            levels = limit if self.recursion == INFINITE else self.recursion  # type: ignore[assignment]

        children = {alias: child._unroll(limit, None) for alias, child in self.children.items()}
        if levels is not None and levels > 1:
            children[self.alias] = self._unroll(limit, levels - 1)

        return dataclasses.replace(self, recursion=None, children=frozendict(children))

    def merge(self, other: RelationExpression) -> RelationExpression:
        """Combine two expressions so the result loads everything either one loads."""
        children = dict(self.children)
        for alias, child in other.children.items():
            children[alias] = children[alias].merge(child) if alias in children else child

        modifiers = self.modifiers + tuple(m for m in other.modifiers if m not in self.modifiers)
        return dataclasses.replace(
            self,
            recursion=_merge_recursion(self.recursion, other.recursion),
            modifiers=modifiers,
            children=frozendict(children),
        )

    def to_string(self) -> str:
        if self.is_root:
            return _join_items([child.to_string() for child in self.children.values()])

        label = self.relation_name if self.alias == self.relation_name else f"{self.alias}:{self.relation_name}"
        if self.modifiers:
            label += f"({', '.join(self.modifiers)})"

        items = [child.to_string() for child in self.children.values()]
        if self.recursion is not None:
            items.append("^" if self.recursion == INFINITE else f"^{self.recursion}")

        if not items:
            return label  # type: ignore[return-value]

        return f"{label}.{_join_items(items)}"

    def to_object(self) -> Any:
        """Object notation for this tree (``True`` for plain leaves)."""
        out: dict[str, Any] = {}
        if not self.is_root:
            if self.alias != self.relation_name:
                out["$relation"] = self.relation_name
            if self.recursion is not None:
                out["$recursive"] = True if self.recursion == INFINITE else self.recursion
            if self.modifiers:
                out["$modify"] = list(self.modifiers)

        for alias, child in self.children.items():
            out[alias] = child.to_object()

        if not out and not self.is_root:
            return True

        return out

    def __str__(self) -> str:
        return self.to_string()

    @classmethod
    def from_graph(cls, nodes: Iterable[GraphNode]) -> RelationExpression:
        """Build the expression covering every relation present in a graph."""
        return _from_graph_nodes(nodes, relation_name=None, alias="")


def _join_items(items: list[str]) -> str:
    if not items:
        return ""

    if len(items) == 1:
        return items[0]

    return f"[{', '.join(items)}]"


def _merge_recursion(left: Recursion, right: Recursion) -> Recursion:
    if left is None:
        return right

    if right is None:
        return left

    if INFINITE in (left, right):
        return INFINITE

    return max(left, right)  # type: ignore[type-var]


def _from_graph_nodes(
    nodes: Iterable[GraphNode], *, relation_name: str | None, alias: str
) -> RelationExpression:
    grouped: dict[str, list[GraphNode]] = {}
    for node in nodes:
        for name, children in node.children.items():
            grouped.setdefault(name, []).extend(children)

    children = {
        name: _from_graph_nodes(group, relation_name=name, alias=name)
        for name, group in grouped.items()
    }
    return RelationExpression(relation_name=relation_name, alias=alias, children=frozendict(children))


def _from_parsed(nodes: list[ParsedNode]) -> frozendict[str, RelationExpression]:
    children: dict[str, RelationExpression] = {}
    for node in nodes:
        if node.alias in children:
            raise DuplicateAliasError(node.alias)

        children[node.alias] = RelationExpression(
            relation_name=node.name,
            alias=node.alias,
            recursion=node.recursion,  # type: ignore[arg-type]
            modifiers=tuple(node.modifiers),
            children=_from_parsed(node.children),
        )

    return frozendict(children)


def _check_name(name: str, path: str) -> None:
    if not isinstance(name, str) or not name or name.startswith(RESERVED_PREFIX):
        raise ParseError(path or repr(name), 0, f"invalid relation name {name!r}")


def _from_object(
    obj: Mapping[str, Any], *, relation_name: str | None, alias: str, path: str
) -> RelationExpression:
    recursion: Recursion = None
    modifiers: tuple[str, ...] = ()
    children: dict[str, RelationExpression] = {}

    for key, value in obj.items():
        if key == "$recursive":
            if value is True:
                recursion = INFINITE
            elif isinstance(value, int) and not isinstance(value, bool) and value >= 1:
                recursion = value
            elif value:
                raise ParseError(path, 0, f"invalid $recursive value {value!r}")
        elif key == "$modify":
            modifiers = (value,) if isinstance(value, str) else tuple(value)
        elif key == "$relation":
            _check_name(value, path)
            relation_name = value
        elif key.startswith("$"):
            raise ParseError(path, 0, f"unknown directive {key!r}")
        elif value:
            _check_name(key, path)
            child = value if isinstance(value, Mapping) else {}
            children[key] = _from_object(
                child, relation_name=key, alias=key, path=f"{path}.{key}" if path else key
            )

    return RelationExpression(
        relation_name=relation_name,
        alias=alias,
        recursion=recursion if relation_name is not None else None,
        modifiers=modifiers if relation_name is not None else (),
        children=frozendict(children),
    )


@lru_cache(maxsize=EXPRESSION_CACHE_SIZE)
def _parse_string(text: str) -> RelationExpression:
    return RelationExpression(children=_from_parsed(_parser.parse(text)))


def parse(expression: ExpressionLike) -> RelationExpression:
    """Compile a relation expression into its canonical tree.

    Args:
        expression: Expression string, object notation mapping, an already
            parsed tree, or ``None`` for the empty expression.

    Returns:
        The root :class:`RelationExpression`.

    Raises:
        ParseError: If the string or object notation is malformed.
        DuplicateAliasError: If two siblings share an alias.
        TypeError: For any other input type.

    Example:
        >>> str(parse("children.[pets, movies.actors]"))
        'children.[pets, movies.actors]'
    """
    if expression is None:
        return RelationExpression()

    if isinstance(expression, RelationExpression):
        return expression

    if isinstance(expression, str):
        return _parse_string(expression)

    if isinstance(expression, Mapping):
        return _from_object(expression, relation_name=None, alias="", path="")

    raise TypeError(f"Cannot parse relation expression of type {type(expression).__name__}")


def validate(
    expression: RelationExpression, entity: EntityDescriptor, registry: Registry
) -> None:
    """Check *expression* against the relations declared for *entity*.

    Raises:
        RelationNotFoundError: If a node names an undeclared relation.
        InvalidRecursionError: If a recursive node follows a relation that is
            not self-referential.
    """
    for child in expression.children.values():
        relation = entity.relation(child.relation_name)  # type: ignore[arg-type]
        if child.recursion is not None and not relation.is_self_referential:
            raise InvalidRecursionError(entity.name, relation.name)

        validate(child, registry.entity(relation.related_entity), registry)


def expression_cache_info() -> Any:
    return _parse_string.cache_info()


def expression_cache_clear() -> None:
    _parse_string.cache_clear()
