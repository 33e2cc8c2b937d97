"""LALR parser for the relation expression language.

The grammar, informally::

    expression : branch | "[" item ("," item)* "]"
    branch     : node ("." (branch | "[" item ("," item)* "]" | recursion))?
    item       : branch | recursion
    recursion  : "^" INTEGER?
    node       : (IDENTIFIER ":")? IDENTIFIER ("(" (IDENTIFIER ("," IDENTIFIER)*)? ")")?

The parser only builds a loose tree of :class:`ParsedNode`; turning it into
the canonical immutable expression tree happens in ``sqla_graphs.expression``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import ply.yacc as yacc

from ..errors import ParseError
from ..tools import RESERVED_PREFIX
from .lexer import RelationLexer


INFINITE = "infinite"


@dataclass(slots=True)
class ParsedNode:
    name: str
    alias: str
    position: int
    modifiers: list[str] = field(default_factory=list)
    recursion: int | str | None = None
    children: list[ParsedNode] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class _Recursion:
    depth: int | str
    position: int


class RelationParser:
    """Parser for relation expressions.

    Tables are generated in memory on first use and never written to disk.
    """

    tokens = RelationLexer.tokens
    start = "expression"

    def __init__(self) -> None:
        self._lexer = RelationLexer()
        self._parser: yacc.LRParser | None = None

    def build(self, **kwargs) -> None:  # type: ignore
        self._lexer.build(debug=False, errorlog=yacc.NullLogger())
        kwargs.setdefault("debug", False)
        kwargs.setdefault("write_tables", False)
        kwargs.setdefault("errorlog", yacc.NullLogger())
        kwargs.setdefault("tabmodule", "_sqla_graphs_parsetab")
        self._parser = yacc.yacc(module=self, **kwargs)

    def parse(self, text: str) -> list[ParsedNode]:
        """Parse *text* into the list of top-level relation nodes.

        Raises:
            ParseError: If *text* is not a valid relation expression.
        """
        if self._parser is None:
            self.build()
        assert self._parser is not None

        if not text.strip():
            return []

        return self._parser.parse(text, lexer=self._lexer)

    @property
    def text(self) -> str:
        return self._lexer.text

    # ---- Grammar rules ----

    def p_expression_branch(self, p: yacc.YaccProduction) -> None:
        """expression : branch"""
        p[0] = [p[1]]

    def p_expression_list(self, p: yacc.YaccProduction) -> None:
        """expression : LBRACKET item_list RBRACKET"""
        for item in p[2]:
            if isinstance(item, _Recursion):
                raise ParseError(self.text, item.position, "recursion needs a parent relation")
        p[0] = p[2]

    def p_branch_node(self, p: yacc.YaccProduction) -> None:
        """branch : node"""
        p[0] = p[1]

    def p_branch_child(self, p: yacc.YaccProduction) -> None:
        """branch : node DOT branch"""
        p[1].children.append(p[3])
        p[0] = p[1]

    def p_branch_children(self, p: yacc.YaccProduction) -> None:
        """branch : node DOT LBRACKET item_list RBRACKET"""
        node: ParsedNode = p[1]
        for item in p[4]:
            if isinstance(item, _Recursion):
                self._set_recursion(node, item)
            else:
                node.children.append(item)
        p[0] = node

    def p_branch_recursion(self, p: yacc.YaccProduction) -> None:
        """branch : node DOT recursion"""
        self._set_recursion(p[1], p[3])
        p[0] = p[1]

    def p_item(self, p: yacc.YaccProduction) -> None:
        """item : branch
        | recursion"""
        p[0] = p[1]

    def p_item_list_single(self, p: yacc.YaccProduction) -> None:
        """item_list : item"""
        p[0] = [p[1]]

    def p_item_list_multiple(self, p: yacc.YaccProduction) -> None:
        """item_list : item_list COMMA item"""
        p[1].append(p[3])
        p[0] = p[1]

    def p_recursion_infinite(self, p: yacc.YaccProduction) -> None:
        """recursion : CARET"""
        p[0] = _Recursion(INFINITE, p.lexpos(1))

    def p_recursion_bounded(self, p: yacc.YaccProduction) -> None:
        """recursion : CARET INTEGER"""
        if p[2] < 1:
            raise ParseError(self.text, p.lexpos(2), "recursion depth must be at least 1")
        p[0] = _Recursion(p[2], p.lexpos(1))

    def p_node(self, p: yacc.YaccProduction) -> None:
        """node : label"""
        p[0] = p[1]

    def p_node_no_modifiers(self, p: yacc.YaccProduction) -> None:
        """node : label LPAREN RPAREN"""
        p[0] = p[1]

    def p_node_modifiers(self, p: yacc.YaccProduction) -> None:
        """node : label LPAREN modifier_list RPAREN"""
        p[1].modifiers.extend(p[3])
        p[0] = p[1]

    def p_modifier_list_single(self, p: yacc.YaccProduction) -> None:
        """modifier_list : IDENTIFIER"""
        p[0] = [p[1]]

    def p_modifier_list_multiple(self, p: yacc.YaccProduction) -> None:
        """modifier_list : modifier_list COMMA IDENTIFIER"""
        p[1].append(p[3])
        p[0] = p[1]

    def p_label_name(self, p: yacc.YaccProduction) -> None:
        """label : IDENTIFIER"""
        self._check_name(p[1], p.lexpos(1))
        p[0] = ParsedNode(name=p[1], alias=p[1], position=p.lexpos(1))

    def p_label_alias(self, p: yacc.YaccProduction) -> None:
        """label : IDENTIFIER COLON IDENTIFIER"""
        self._check_name(p[1], p.lexpos(1))
        self._check_name(p[3], p.lexpos(3))
        p[0] = ParsedNode(name=p[3], alias=p[1], position=p.lexpos(1))

    def p_error(self, p: yacc.YaccProduction) -> None:
        if p:
            raise ParseError(self.text, p.lexpos, f"unexpected {p.type}")
        raise ParseError(self.text, len(self.text), "unexpected end of input")

    # ---- Helpers ----

    def _check_name(self, name: str, position: int) -> None:
        if name.startswith(RESERVED_PREFIX):
            raise ParseError(self.text, position, f"names starting with {RESERVED_PREFIX!r} are reserved")

    def _set_recursion(self, node: ParsedNode, recursion: _Recursion) -> None:
        if node.recursion is not None:
            raise ParseError(self.text, recursion.position, "recursion given twice")
        node.recursion = recursion.depth
