from __future__ import annotations

import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Final

from .errors import DuplicateIdError, UnresolvedReferenceError


if TYPE_CHECKING:
    from .graph import GraphNode


REFERENCE_PATTERN: Final[re.Pattern[str]] = re.compile(r"#ref\{([^.}]+)\.([^}]+)\}")


class _Pending:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<pending>"

    def __bool__(self) -> bool:
        return False


PENDING: Final = _Pending()


def references_in(value: Any) -> list[tuple[str, str]]:
    """Return every ``(label, field)`` pair referenced by ``#ref{label.field}`` in *value*."""
    if isinstance(value, str):
        return REFERENCE_PATTERN.findall(value)

    if isinstance(value, Mapping):
        return [ref for item in value.values() for ref in references_in(item)]

    if isinstance(value, (list, tuple)):
        return [ref for item in value for ref in references_in(item)]

    return []


class ReferenceTable:
    """``#id`` labels of one graph and the field values they resolve to.

    A label is declared while the graph is indexed and resolved exactly once,
    after the labelled row has been written.  Only values known to the
    engine (the row's input fields and its generated keys) can be read, never
    columns fetched from storage.
    """

    __slots__ = ("_nodes", "_resolved")

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}
        self._resolved: dict[str, dict[str, Any]] = {}

    def declare(self, label: str, node: GraphNode) -> None:
        if label in self._nodes:
            raise DuplicateIdError(label)
        self._nodes[label] = node

    def __contains__(self, label: object) -> bool:
        return label in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def labels(self) -> list[str]:
        return list(self._nodes)

    def node(self, label: str) -> GraphNode:
        try:
            return self._nodes[label]
        except KeyError:
            raise UnresolvedReferenceError(label) from None

    def resolve(self, label: str) -> Mapping[str, Any] | _Pending:
        """Return the resolved fields of *label*, or ``PENDING`` if its row is not written yet."""
        if label not in self._nodes:
            raise UnresolvedReferenceError(label)
        return self._resolved.get(label, PENDING)

    def is_resolved(self, label: str) -> bool:
        return label in self._resolved

    def mark_resolved(self, label: str, fields: Mapping[str, Any]) -> None:
        if label not in self._nodes:
            raise UnresolvedReferenceError(label)
        if label in self._resolved:
            raise DuplicateIdError(label)
        self._resolved[label] = dict(fields)

    def lookup(self, label: str, field: str) -> Any:
        fields = self.resolve(label)
        if fields is PENDING:
            raise UnresolvedReferenceError(label, field, "the referenced row has not been written yet")

        value: Any = fields
        for part in field.split("."):
            if not isinstance(value, Mapping) or part not in value:
                raise UnresolvedReferenceError(label, field, "the referenced row has no such field")
            value = value[part]
        return value

    def substitute(self, value: Any) -> Any:
        """Replace every ``#ref{label.field}`` in *value*.

        A string consisting of exactly one reference takes the referenced
        value as is (numbers stay numbers); references embedded in longer
        strings are interpolated.  Dicts and lists are walked recursively.
        """
        if isinstance(value, str):
            match = REFERENCE_PATTERN.fullmatch(value)
            if match is not None:
                return self.lookup(match.group(1), match.group(2))
            return REFERENCE_PATTERN.sub(lambda m: str(self.lookup(m.group(1), m.group(2))), value)

        if isinstance(value, Mapping):
            return {key: self.substitute(item) for key, item in value.items()}

        if isinstance(value, list):
            return [self.substitute(item) for item in value]

        return value
