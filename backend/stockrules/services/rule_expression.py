from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from math import isfinite
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from stockrules.services.indicators import LOOKBACK_MULTIPLIERS
from stockrules.services.rule_errors import ExpressionValidationError, ParseError

VALID_FUNCTIONS: Tuple[str, ...] = ("RSI", "SMA", "EMA", "avgVolume")
VALID_PROPERTIES: Tuple[str, ...] = ("close", "open", "high", "low", "volume", "price")
COMPARISON_OPERATORS: Tuple[str, ...] = ("<", ">", "<=", ">=", "==", "!=")
LOGICAL_OPERATORS: Tuple[str, ...] = ("AND", "OR", "NOT")
ARITHMETIC_OPERATORS: Tuple[str, ...] = ("+", "-", "*", "/")

DEFAULT_LOOKBACK_DAYS = 30
MAX_LOOKBACK_DAYS = 365

_PRECEDENCE: Dict[str, int] = {
    "OR": 1,
    "AND": 2,
    "NOT": 3,
    "<": 4,
    ">": 4,
    "<=": 4,
    ">=": 4,
    "==": 4,
    "!=": 4,
    "+": 5,
    "-": 5,
    "*": 6,
    "/": 6,
}
_ATOM_PRECEDENCE = 7


# -----------------------------------------------------------------------------
# AST nodes
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Node:
    node_type: str

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class NumberNode(Node):
    """Literal operand. Holds a float, or a bool for ``true``/``false``."""

    value: float | bool

    def __init__(self, value: float | bool) -> None:
        object.__setattr__(self, "node_type", "LITERAL")
        object.__setattr__(
            self, "value", value if isinstance(value, bool) else float(value)
        )

    @property
    def is_bool(self) -> bool:
        return isinstance(self.value, bool)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type, "value": self.value}


@dataclass(frozen=True)
class IdentNode(Node):
    name: str

    def __init__(self, name: str) -> None:
        object.__setattr__(self, "node_type", "IDENT")
        object.__setattr__(self, "name", name)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type, "name": self.name}


@dataclass(frozen=True)
class CallNode(Node):
    name: str
    args: Tuple["ExprNode", ...]

    def __init__(self, name: str, args: Sequence["ExprNode"]) -> None:
        object.__setattr__(self, "node_type", "CALL")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "args", tuple(args))

    @property
    def period(self) -> Optional[int]:
        """The literal period argument, when the call has the validated shape."""

        if len(self.args) != 1:
            return None
        arg = self.args[0]
        if not isinstance(arg, NumberNode) or arg.is_bool:
            return None
        if not float(arg.value).is_integer():
            return None
        return int(arg.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "name": self.name,
            "args": [node_to_dict(a) for a in self.args],
        }


@dataclass(frozen=True)
class UnaryNode(Node):
    op: str
    child: "ExprNode"

    def __init__(self, op: str, child: "ExprNode") -> None:
        object.__setattr__(self, "node_type", "UNARY")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "child", child)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "op": self.op,
            "child": node_to_dict(self.child),
        }


@dataclass(frozen=True)
class BinaryNode(Node):
    op: str
    left: "ExprNode"
    right: "ExprNode"

    def __init__(self, op: str, left: "ExprNode", right: "ExprNode") -> None:
        object.__setattr__(self, "node_type", "BINARY")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "left", left)
        object.__setattr__(self, "right", right)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "op": self.op,
            "left": node_to_dict(self.left),
            "right": node_to_dict(self.right),
        }


ExprNode = NumberNode | IdentNode | CallNode | UnaryNode | BinaryNode


@dataclass(frozen=True)
class FunctionRef:
    name: str
    period: int


def node_to_dict(node: ExprNode) -> Dict[str, Any]:
    return node.to_dict()


def node_from_dict(data: Dict[str, Any]) -> ExprNode:
    t = data.get("type")
    if t == "LITERAL":
        value = data.get("value", 0)
        if isinstance(value, bool):
            return NumberNode(value)
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ParseError(f"Invalid literal: {value}") from None
        if not isfinite(number):
            raise ParseError(f"Literal out of range: {value}")
        return NumberNode(number)
    if t == "IDENT":
        return IdentNode(str(data.get("name", "")))
    if t == "CALL":
        return CallNode(
            str(data.get("name", "")),
            [node_from_dict(a) for a in (data.get("args") or [])],
        )
    if t == "UNARY":
        return UnaryNode(
            str(data.get("op", "")), node_from_dict(data.get("child") or {})
        )
    if t == "BINARY":
        return BinaryNode(
            str(data.get("op", "")),
            node_from_dict(data.get("left") or {}),
            node_from_dict(data.get("right") or {}),
        )
    raise ParseError(f"Unknown AST node type '{t}'")


def dumps_ast(node: ExprNode) -> str:
    return json.dumps(node_to_dict(node), default=str)


def loads_ast(raw: str) -> ExprNode:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError("Invalid AST JSON") from exc
    if not isinstance(data, dict):
        raise ParseError("AST JSON must be an object")
    return node_from_dict(data)


def walk(node: ExprNode) -> Iterable[ExprNode]:
    """Pre-order traversal in source order; iterative, so depth is unbounded."""

    stack: List[ExprNode] = [node]
    while stack:
        current = stack.pop()
        yield current
        if isinstance(current, CallNode):
            stack.extend(reversed(current.args))
        elif isinstance(current, UnaryNode):
            stack.append(current.child)
        elif isinstance(current, BinaryNode):
            stack.append(current.right)
            stack.append(current.left)


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------


def _format_number(value: float | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value.is_integer():
        return str(int(value))
    # Positional notation only; the tokenizer has no exponent form.
    return format(Decimal(repr(value)), "f")


def _precedence(node: ExprNode) -> int:
    if isinstance(node, BinaryNode):
        return _PRECEDENCE.get(node.op, _ATOM_PRECEDENCE)
    if isinstance(node, UnaryNode):
        return _PRECEDENCE["NOT"]
    return _ATOM_PRECEDENCE


def _render_operand(child: ExprNode, parent_prec: int, *, right: bool) -> str:
    text = ast_to_string(child)
    if isinstance(child, BinaryNode) and child.op in LOGICAL_OPERATORS:
        return text  # already parenthesised
    child_prec = _precedence(child)
    comparison = parent_prec == _PRECEDENCE["=="]
    if child_prec < parent_prec or (
        child_prec == parent_prec and (right or comparison)
    ):
        return f"({text})"
    return text


def ast_to_string(node: ExprNode) -> str:
    """Render an AST back to expression text that parses to the same tree.

    Logical binaries are always parenthesised, everything else only where
    precedence or associativity would otherwise change the parse.
    """

    if isinstance(node, BinaryNode):
        prec = _PRECEDENCE.get(node.op, _ATOM_PRECEDENCE)
        if node.op in LOGICAL_OPERATORS:
            return f"({ast_to_string(node.left)} {node.op} {ast_to_string(node.right)})"
        left = _render_operand(node.left, prec, right=False)
        right = _render_operand(node.right, prec, right=True)
        return f"{left} {node.op} {right}"
    if isinstance(node, UnaryNode):
        return f"{node.op} {ast_to_string(node.child)}"
    if isinstance(node, CallNode):
        args = ", ".join(ast_to_string(a) for a in node.args)
        return f"{node.name}({args})"
    if isinstance(node, IdentNode):
        return node.name
    if isinstance(node, NumberNode):
        return _format_number(node.value)
    return "[unknown]"


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def _is_numeric(node: ExprNode) -> bool:
    if isinstance(node, NumberNode):
        return not node.is_bool
    if isinstance(node, (IdentNode, CallNode)):
        return True
    if isinstance(node, BinaryNode):
        return node.op in ARITHMETIC_OPERATORS
    return False


def _validate_call(node: CallNode) -> None:
    name = node.name
    if name not in VALID_FUNCTIONS:
        hint = next((f for f in VALID_FUNCTIONS if f.lower() == name.lower()), None)
        if hint is not None:
            raise ExpressionValidationError(
                f"Invalid function: {name}",
                f"Function names are case-sensitive; did you mean {hint}?",
            )
        raise ExpressionValidationError(
            f"Invalid function: {name}",
            f"Valid functions are: {', '.join(VALID_FUNCTIONS)}",
        )
    if len(node.args) != 1:
        raise ExpressionValidationError(
            f"Function {name} requires exactly 1 argument",
            f"Received {len(node.args)} arguments",
        )
    arg = node.args[0]
    if not isinstance(arg, NumberNode) or arg.is_bool:
        raise ExpressionValidationError(
            f"Function {name} argument must be a number",
            "Example: RSI(14), SMA(50), EMA(20)",
        )
    period = float(arg.value)
    if period <= 0 or not period.is_integer():
        raise ExpressionValidationError(
            f"Function {name} period must be a positive integer",
            f"Received: {_format_number(period)}",
        )


def _validate_node(node: ExprNode, numeric_only: bool) -> None:
    if isinstance(node, BinaryNode):
        op = node.op
        # Arithmetic is only legal in quantity expressions.
        allowed = [*COMPARISON_OPERATORS, "AND", "OR"]
        if numeric_only:
            allowed += ARITHMETIC_OPERATORS
        if op not in allowed:
            raise ExpressionValidationError(
                f"Invalid operator: {op}",
                f"Valid operators are: {', '.join(allowed)}",
            )
        if op in ARITHMETIC_OPERATORS and not (
            _is_numeric(node.left) and _is_numeric(node.right)
        ):
            raise ExpressionValidationError(
                f"Operator {op} requires numeric operands",
                f"Got: {ast_to_string(node)}",
            )
        _validate_node(node.left, numeric_only)
        _validate_node(node.right, numeric_only)
        return
    if isinstance(node, UnaryNode):
        if node.op != "NOT":
            raise ExpressionValidationError(
                f"Invalid unary operator: {node.op}",
                "The only unary operator is NOT",
            )
        _validate_node(node.child, numeric_only)
        return
    if isinstance(node, CallNode):
        _validate_call(node)
        return
    if isinstance(node, IdentNode):
        if node.name not in VALID_PROPERTIES:
            raise ExpressionValidationError(
                f"Invalid property: {node.name}",
                f"Valid properties are: {', '.join(VALID_PROPERTIES)}",
            )
        return
    if isinstance(node, NumberNode):
        return
    raise ExpressionValidationError(
        f"Unsupported expression type: {getattr(node, 'node_type', type(node).__name__)}",
        "Expression contains an unsupported construct",
    )


def validate_ast(node: ExprNode, *, numeric_only: bool = False) -> None:
    """Check an AST against the closed rule vocabulary.

    Raises ``ExpressionValidationError`` naming the first offending node.
    Trigger expressions may not use arithmetic. With ``numeric_only``
    (quantity expressions) arithmetic is allowed and comparison, logical
    and ``NOT`` nodes are rejected instead.
    """

    try:
        _validate_node(node, numeric_only)
    except RecursionError:
        raise ExpressionValidationError(
            "Expression is too complex", "Expression is nested too deeply"
        ) from None
    if numeric_only and not _is_numeric(node):
        raise ExpressionValidationError(
            "Quantity expression must be a numeric expression",
            f"Got: {ast_to_string(node)}",
        )


# -----------------------------------------------------------------------------
# Static analyses
# -----------------------------------------------------------------------------


def get_functions(node: ExprNode) -> List[FunctionRef]:
    """Return every ``(name, period)`` call in the tree, in source order."""

    refs: List[FunctionRef] = []
    for n in walk(node):
        if isinstance(n, CallNode):
            period = n.period
            if period is not None:
                refs.append(FunctionRef(n.name, period))
    return refs


def required_lookback_days(node: ExprNode) -> int:
    """Days of history to fetch before the expression can be evaluated."""

    functions = get_functions(node)
    if not functions:
        return DEFAULT_LOOKBACK_DAYS

    max_days = 0
    for ref in functions:
        multiplier = LOOKBACK_MULTIPLIERS.get(ref.name.upper(), 2)
        max_days = max(max_days, ref.period * multiplier)
    if max_days <= 0:
        return DEFAULT_LOOKBACK_DAYS
    return min(max_days, MAX_LOOKBACK_DAYS)


__all__ = [
    "ExprNode",
    "NumberNode",
    "IdentNode",
    "CallNode",
    "UnaryNode",
    "BinaryNode",
    "FunctionRef",
    "VALID_FUNCTIONS",
    "VALID_PROPERTIES",
    "COMPARISON_OPERATORS",
    "LOGICAL_OPERATORS",
    "ARITHMETIC_OPERATORS",
    "DEFAULT_LOOKBACK_DAYS",
    "MAX_LOOKBACK_DAYS",
    "ast_to_string",
    "dumps_ast",
    "get_functions",
    "loads_ast",
    "node_from_dict",
    "node_to_dict",
    "required_lookback_days",
    "validate_ast",
    "walk",
]
