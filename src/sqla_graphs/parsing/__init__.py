from .lexer import RelationLexer
from .parser import INFINITE, ParsedNode, RelationParser


__all__ = (
    "INFINITE",
    "ParsedNode",
    "RelationLexer",
    "RelationParser",
)
