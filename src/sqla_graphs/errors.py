from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class GraphError(Exception):
    """Base class for every error raised by sqla_graphs."""


class ParseError(GraphError):
    """A relation expression could not be parsed.

    Attributes:
        expression: The full expression text.
        position: Offset of the offending fragment inside *expression*.
        fragment: The text starting at *position*.
    """

    def __init__(self, expression: str, position: int, reason: str = "unexpected input") -> None:
        self.expression = expression
        self.position = position
        self.fragment = expression[position:]
        detail = repr(self.fragment) if self.fragment else "end of input"
        super().__init__(
            f"Invalid relation expression {expression!r}: {reason} at position {position} ({detail})"
        )


class DuplicateAliasError(GraphError):
    def __init__(self, alias: str) -> None:
        self.alias = alias
        super().__init__(f"Duplicate relation alias {alias!r} among siblings")


class InvalidRecursionError(GraphError):
    def __init__(self, entity: str, relation: str) -> None:
        self.entity = entity
        self.relation = relation
        super().__init__(
            f"Relation {entity}.{relation} is not self-referential and cannot be recursive"
        )


class RelationNotFoundError(GraphError):
    def __init__(self, entity: str, relation: str) -> None:
        self.entity = entity
        self.relation = relation
        super().__init__(f"Entity {entity!r} has no relation named {relation!r}")


class ModifierNotFoundError(GraphError):
    def __init__(self, entity: str, modifier: str) -> None:
        self.entity = entity
        self.modifier = modifier
        super().__init__(f"Unknown modifier {modifier!r} for entity {entity!r}")


class DuplicateIdError(GraphError):
    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(f"Duplicate #id label {label!r}")


class CyclicGraphError(GraphError):
    def __init__(self, entities: Iterable[str]) -> None:
        self.entities = tuple(sorted(set(entities)))
        super().__init__(
            "The object graph contains a dependency cycle between "
            + ", ".join(self.entities)
        )


class UnresolvedReferenceError(GraphError):
    def __init__(self, label: str, field: str | None = None, reason: str = "is not declared") -> None:
        self.label = label
        self.field = field
        target = f"#ref{{{label}.{field}}}" if field else f"#ref {label!r}"
        super().__init__(f"Could not resolve {target}: {reason}")


class ReferenceNotAllowedError(GraphError):
    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(f"Reference to {label!r} found but references are disabled, pass allow_refs=True")


class NotFoundError(GraphError):
    """A row carried a primary key that does not exist where the graph says it should."""

    def __init__(self, entity: str, identity: Any, path: str = "") -> None:
        self.entity = entity
        self.identity = identity
        self.path = path
        where = f" (relation path {path!r})" if path else ""
        super().__init__(
            f"{entity} with id {identity!r} not found{where}, "
            "use relate=True or insert_missing=True to attach or create it"
        )


class InvalidGraphError(GraphError):
    """The input is not a valid object graph for the target entity."""


class PlanExecutionError(GraphError):
    """An operation failed while executing a plan.

    The original exception is available as ``__cause__``.  Operations that ran
    before the failing one are not rolled back.
    """

    def __init__(self, operation: Any, table: str, identity: Any) -> None:
        self.operation = operation
        self.table = table
        self.identity = identity
        super().__init__(
            f"{type(operation).__name__} on table {table!r} (id {identity!r}) failed"
        )
