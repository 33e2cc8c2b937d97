from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from .datastructures import frozendict
from .errors import ModifierNotFoundError


if TYPE_CHECKING:
    from .registry import EntityDescriptor

Modifier = Callable[[sa.Select[Any]], sa.Select[Any]]


class ModifierRegistry:
    """Named query customisations applied to a relation's own query scope.

    Call-time modifiers take precedence over the ones an entity declares.
    Instances are immutable and hashable so they can take part in the join
    strategy's statement cache.
    """

    __slots__ = ("_modifiers",)

    def __init__(self, modifiers: Mapping[str, Modifier] | None = None) -> None:
        self._modifiers: frozendict[str, Modifier] = frozendict(modifiers or {})

    def with_modifiers(self, **modifiers: Modifier) -> ModifierRegistry:
        return ModifierRegistry(self._modifiers.merge(modifiers))

    def resolve(self, name: str, entity: EntityDescriptor) -> Modifier:
        if name in self._modifiers:
            return self._modifiers[name]

        if name in entity.modifiers:
            return entity.modifiers[name]

        raise ModifierNotFoundError(entity.name, name)

    def apply(
        self, query: sa.Select[Any], names: Iterable[str], entity: EntityDescriptor
    ) -> sa.Select[Any]:
        for name in names:
            query = self.resolve(name, entity)(query)

        return query

    def __contains__(self, name: object) -> bool:
        return name in self._modifiers

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ModifierRegistry):
            return self._modifiers == other._modifiers

        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._modifiers)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {sorted(self._modifiers)!r}>"
