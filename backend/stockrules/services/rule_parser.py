from __future__ import annotations

import re
from dataclasses import dataclass
from math import isfinite
from typing import List, Optional

from stockrules.services.rule_errors import ParseError
from stockrules.services.rule_expression import (
    BinaryNode,
    CallNode,
    ExprNode,
    IdentNode,
    NumberNode,
    UnaryNode,
    validate_ast,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


_TOKEN_RE = re.compile(
    r"(?P<WS>\s+)|"
    r"(?P<NUMBER>\d+\.\d*|\.\d+|\d+)|"
    r"(?P<IDENT>[A-Za-z_][A-Za-z0-9_]*)|"
    r"(?P<OP>==|!=|>=|<=|\+|-|\*|/|>|<)|"
    r"(?P<LPAREN>\()|"
    r"(?P<RPAREN>\))|"
    r"(?P<COMMA>,)"
)

_KEYWORDS = {"AND", "OR", "NOT"}
_BOOL_LITERALS = {"true": True, "false": False}
_CMP_OPS = {"<", ">", "<=", ">=", "==", "!="}


def _tokenize(expr: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expr):
        match = _TOKEN_RE.match(expr, pos)
        if match is None:
            raise ParseError(
                "Failed to parse expression",
                f"Unexpected character '{expr[pos]}' at position {pos}",
            )
        kind = match.lastgroup or ""
        if kind == "NUMBER" and not isfinite(float(match.group(0))):
            raise ParseError(
                "Failed to parse expression",
                f"Number at position {pos} is out of range",
            )
        if kind != "WS":
            tokens.append(_Token(kind, match.group(0), pos))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self, offset: int = 0) -> Optional[_Token]:
        idx = self.pos + offset
        if idx >= len(self.tokens):
            return None
        return self.tokens[idx]

    def _error(self, message: str) -> ParseError:
        return ParseError(
            "Failed to parse expression", f'{message}. Expression: "{self.text}"'
        )

    def _consume(self, kind: str | None = None, value: str | None = None) -> _Token:
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of expression")
        if kind is not None and tok.kind != kind:
            raise self._error(
                f"Expected {kind} but found '{tok.value}' at position {tok.pos}"
            )
        if value is not None and tok.value != value:
            raise self._error(
                f"Expected '{value}' but found '{tok.value}' at position {tok.pos}"
            )
        self.pos += 1
        return tok

    def _at_keyword(self, word: str) -> bool:
        tok = self._peek()
        return tok is not None and tok.kind == "IDENT" and tok.value == word

    def _at_op(self, *ops: str) -> bool:
        tok = self._peek()
        return tok is not None and tok.kind == "OP" and tok.value in ops

    def parse(self) -> ExprNode:
        expr = self._parse_or()
        tok = self._peek()
        if tok is not None:
            raise self._error(f"Unexpected token '{tok.value}' at position {tok.pos}")
        return expr

    # Grammar:
    # or      := and ('OR' and)*
    # and     := not ('AND' not)*
    # not     := 'NOT' not | cmp
    # cmp     := add (CMP_OP add)?
    # add     := mul (('+'|'-') mul)*
    # mul     := primary (('*'|'/') primary)*
    # primary := '(' or ')' | call | IDENT | NUMBER | 'true' | 'false'
    #          | ('+'|'-') NUMBER | ('+'|'-') primary

    def _parse_or(self) -> ExprNode:
        node = self._parse_and()
        while self._at_keyword("OR"):
            self._consume("IDENT")
            node = BinaryNode("OR", node, self._parse_and())
        return node

    def _parse_and(self) -> ExprNode:
        node = self._parse_not()
        while self._at_keyword("AND"):
            self._consume("IDENT")
            node = BinaryNode("AND", node, self._parse_not())
        return node

    def _parse_not(self) -> ExprNode:
        if self._at_keyword("NOT"):
            self._consume("IDENT")
            return UnaryNode("NOT", self._parse_not())
        return self._parse_cmp()

    def _parse_cmp(self) -> ExprNode:
        left = self._parse_add()
        tok = self._peek()
        if tok is not None and tok.kind == "OP" and tok.value in _CMP_OPS:
            self._consume("OP")
            return BinaryNode(tok.value, left, self._parse_add())
        return left

    def _parse_add(self) -> ExprNode:
        node = self._parse_mul()
        while self._at_op("+", "-"):
            op = self._consume("OP").value
            node = BinaryNode(op, node, self._parse_mul())
        return node

    def _parse_mul(self) -> ExprNode:
        node = self._parse_primary()
        while self._at_op("*", "/"):
            op = self._consume("OP").value
            node = BinaryNode(op, node, self._parse_primary())
        return node

    def _parse_primary(self) -> ExprNode:
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of expression")

        if tok.kind == "NUMBER":
            self._consume("NUMBER")
            return NumberNode(float(tok.value))

        if tok.kind == "OP" and tok.value in {"+", "-"}:
            self._consume("OP")
            nxt = self._peek()
            if nxt is not None and nxt.kind == "NUMBER":
                number = float(self._consume("NUMBER").value)
                return NumberNode(-number if tok.value == "-" else number)
            # Sign on a non-literal parses but is rejected by validation.
            return UnaryNode(tok.value, self._parse_primary())

        if tok.kind == "LPAREN":
            self._consume("LPAREN")
            expr = self._parse_or()
            self._consume("RPAREN")
            return expr

        if tok.kind == "IDENT":
            if tok.value in _KEYWORDS:
                raise self._error(
                    f"Missing operand before '{tok.value}' at position {tok.pos}"
                )
            ident = self._consume("IDENT").value
            nxt = self._peek()
            if nxt is None or nxt.kind != "LPAREN":
                if ident in _BOOL_LITERALS:
                    return NumberNode(_BOOL_LITERALS[ident])
                return IdentNode(ident)

            # Function call: IDENT '(' args ')'. Arity and argument shape are
            # checked by validation so bad vocabulary gets its own error.
            self._consume("LPAREN")
            args: List[ExprNode] = []
            if self._peek() is not None and self._peek().kind != "RPAREN":  # type: ignore[union-attr]
                while True:
                    args.append(self._parse_or())
                    if self._peek() is not None and self._peek().kind == "COMMA":  # type: ignore[union-attr]
                        self._consume("COMMA")
                        continue
                    break
            self._consume("RPAREN")
            return CallNode(ident, args)

        raise self._error(f"Unexpected token '{tok.value}' at position {tok.pos}")


def parse_rule_expression(text: str) -> ExprNode:
    """Parse rule expression text into an AST.

    Only syntax is checked here; unknown functions or properties parse fine
    and are rejected by ``validate_ast`` so callers can tell bad syntax from
    bad vocabulary.
    """

    if not isinstance(text, str):
        raise ParseError("Expression must be a non-empty string")
    trimmed = text.strip()
    if not trimmed:
        raise ParseError("Expression cannot be empty")
    try:
        return _Parser(trimmed).parse()
    except RecursionError:
        raise ParseError(
            "Failed to parse expression", "Expression is nested too deeply"
        ) from None


def compile_rule_expression(text: str, *, numeric_only: bool = False) -> ExprNode:
    """Parse and validate in one step."""

    node = parse_rule_expression(text)
    validate_ast(node, numeric_only=numeric_only)
    return node


__all__ = ["parse_rule_expression", "compile_rule_expression"]
