from __future__ import annotations

import sys
from collections.abc import Collection
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Union


if sys.version_info >= (3, 11):
    from typing import TypedDict
else:
    from typing_extensions import TypedDict

if TYPE_CHECKING:
    from .graph import GraphNode

# ``True``/``False`` for every relation, or the relation paths
# (``"pets"``, ``"children.movies"``) the flag applies to.
OptionValue = Union[bool, frozenset[str]]


class UpsertOptionsType(TypedDict, total=False):
    relate: bool | Collection[str]
    unrelate: bool | Collection[str]
    insert_missing: bool | Collection[str]
    no_delete: bool | Collection[str]
    no_insert: bool | Collection[str]
    no_update: bool | Collection[str]
    no_relate: bool | Collection[str]
    no_unrelate: bool | Collection[str]
    allow_refs: bool
    match_by_position: bool


@dataclass(slots=True, frozen=True)
class UpsertOptions:
    """Switches for graph upserts.

    Inserts, updates and deletes of rows dropped from a mentioned relation
    are on by default.  Relating existing rows, unrelating instead of
    deleting and inserting rows whose id is not found are opt-in.
    """

    relate: OptionValue = False
    unrelate: OptionValue = False
    insert_missing: OptionValue = False
    no_delete: OptionValue = False
    no_insert: OptionValue = False
    no_update: OptionValue = False
    no_relate: OptionValue = False
    no_unrelate: OptionValue = False
    allow_refs: bool = False
    match_by_position: bool = False

    @classmethod
    def from_kwargs(cls, **options: bool | Collection[str]) -> UpsertOptions:
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise TypeError(f"Unknown upsert options: {', '.join(sorted(unknown))}")

        return cls(**{
            name: value if isinstance(value, bool) else frozenset(value)  # type: ignore[misc]
            for name, value in options.items()
        })

    @classmethod
    def insert_only(cls, **options: bool | Collection[str]) -> UpsertOptions:
        """Options for inserting a whole new graph; references are always allowed."""
        merged = {"allow_refs": True, **options}
        merged.update(no_delete=True, no_update=True, no_unrelate=True, insert_missing=True)
        return cls.from_kwargs(**merged)

    @property
    def is_insert_only(self) -> bool:
        return all(
            value is True
            for value in (self.no_delete, self.no_update, self.no_unrelate, self.insert_missing)
        )

    def has(self, name: str, node: GraphNode) -> bool:
        value: OptionValue = getattr(self, name)
        if isinstance(value, bool):
            return value
        return node.relation_path in value

    def should_relate(self, node: GraphNode) -> bool:
        if node.is_reference:
            return not self.has("no_relate", node)
        return self.has("relate", node) and not self.has("no_relate", node)

    def should_insert(self, node: GraphNode) -> bool:
        if self.has("no_insert", node):
            return False
        return not node.had_identity or self.has("insert_missing", node)

    def should_patch(self, node: GraphNode) -> bool:
        return not self.has("no_update", node)

    def should_unrelate(self, current: GraphNode) -> bool:
        return self.has("unrelate", current) and not self.has("no_unrelate", current)

    def should_delete(self, current: GraphNode) -> bool:
        return not self.has("no_delete", current) and not self.has("unrelate", current)
