"""Lexer for the relation expression language."""

from __future__ import annotations

import ply.lex as lex

from ..errors import ParseError


class RelationLexer:
    """Tokenizer for relation expressions such as ``children.[pets, movies(recent)]``."""

    tokens = [
        "IDENTIFIER",
        "INTEGER",
        "DOT",
        "COMMA",
        "COLON",
        "CARET",
        "LPAREN",
        "RPAREN",
        "LBRACKET",
        "RBRACKET",
    ]

    t_DOT = r"\."
    t_COMMA = r","
    t_COLON = r":"
    t_CARET = r"\^"
    t_LPAREN = r"\("
    t_RPAREN = r"\)"
    t_LBRACKET = r"\["
    t_RBRACKET = r"\]"
    t_ignore = " \t\r\n"

    def __init__(self) -> None:
        self.lexer: lex.Lexer = None  # type: ignore
        self.text = ""

    def t_INTEGER(self, t: lex.LexToken) -> lex.LexToken:
        r"\d+"
        t.value = int(t.value)
        return t

    def t_IDENTIFIER(self, t: lex.LexToken) -> lex.LexToken:
        r"[A-Za-z_$][A-Za-z0-9_$]*"
        return t

    def t_error(self, t: lex.LexToken) -> None:
        raise ParseError(self.text, t.lexpos, f"illegal character {t.value[0]!r}")

    def build(self, **kwargs) -> None:  # type: ignore
        self.lexer = lex.lex(module=self, **kwargs)

    def input(self, data: str) -> None:
        self.text = data
        self.lexer.input(data)

    def token(self) -> lex.LexToken | None:
        return self.lexer.token()

    def tokenize(self, data: str) -> list[lex.LexToken]:
        self.input(data)
        tokens = []
        while True:
            tok = self.token()
            if tok is None:
                break
            tokens.append(tok)
        return tokens
