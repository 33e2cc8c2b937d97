"""Write operations produced by the planner.

Operations compare by their public fields only (entity, identity and the
values written); the graph nodes and relation they act on ride along as
context for the executor.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Union, overload

from .references import ReferenceTable


if TYPE_CHECKING:
    from .graph import GraphNode, Identity
    from .registry import RelationDescriptor


class _Linked:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<linked>"


# Placeholder for a foreign key copied from a related row at execution time.
LINKED: Final = _Linked()


@dataclass(slots=True, frozen=True)
class ParentLink:
    relation: str
    parent: GraphNode | None = field(default=None, compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class Insert:
    entity: str
    data: dict[str, Any]
    parent_link: ParentLink | None = None
    node: GraphNode | None = field(default=None, compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class Patch:
    entity: str
    identity: Identity
    changed_fields: dict[str, Any]
    node: GraphNode | None = field(default=None, compare=False, repr=False)
    links: tuple[tuple[RelationDescriptor, GraphNode], ...] = field(default=(), compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class Delete:
    entity: str
    identity: Identity
    node: GraphNode | None = field(default=None, compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class Relate:
    entity: str
    identity: Identity | None
    through_data: dict[str, Any] = field(default_factory=dict)
    node: GraphNode | None = field(default=None, compare=False, repr=False)
    relation: RelationDescriptor | None = field(default=None, compare=False, repr=False)
    parent: GraphNode | None = field(default=None, compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class Unrelate:
    entity: str
    identity: Identity
    node: GraphNode | None = field(default=None, compare=False, repr=False)
    relation: RelationDescriptor | None = field(default=None, compare=False, repr=False)
    parent: GraphNode | None = field(default=None, compare=False, repr=False)


Operation = Union[Insert, Patch, Delete, Relate, Unrelate]


class OperationPlan(Sequence[Operation]):
    """Ordered operations plus the reference table they resolve ``#ref`` against."""

    __slots__ = ("_operations", "references")

    def __init__(
        self, operations: Sequence[Operation] = (), references: ReferenceTable | None = None
    ) -> None:
        self._operations: tuple[Operation, ...] = tuple(operations)
        self.references = references if references is not None else ReferenceTable()

    @overload
    def __getitem__(self, index: int) -> Operation: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[Operation]: ...

    def __getitem__(self, index: int | slice) -> Operation | Sequence[Operation]:
        return self._operations[index]

    def __len__(self) -> int:
        return len(self._operations)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self._operations)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, OperationPlan):
            return self._operations == other._operations

        if isinstance(other, (list, tuple)):
            return list(self._operations) == list(other)

        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def summary(self) -> dict[str, int]:
        """Number of operations per operation type."""
        return dict(Counter(type(op).__name__ for op in self._operations))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {list(self._operations)!r}>"
