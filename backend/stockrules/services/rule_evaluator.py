from __future__ import annotations

from typing import Optional

from stockrules.services.rule_context import EvaluationContext
from stockrules.services.rule_errors import EvaluationError
from stockrules.services.rule_expression import (
    ARITHMETIC_OPERATORS,
    COMPARISON_OPERATORS,
    BinaryNode,
    CallNode,
    ExprNode,
    IdentNode,
    NumberNode,
    UnaryNode,
)

# Evaluation values: bool, float, or None for "absent" (an indicator that
# did not have enough history).
Value = Optional[bool | float]


def _truthy(value: Value) -> bool:
    if value is None:
        return False
    return bool(value)


def _as_number(value: bool | float) -> float:
    return float(value)


def _strict_equals(left: bool | float, right: bool | float) -> bool:
    # A boolean never equals a number, even 1 == True.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _compare(op: str, left: Value, right: Value) -> bool:
    if left is None or right is None:
        # Absent operands only make "!=" true, and only when one side exists.
        if op == "!=":
            return (left is None) != (right is None)
        return False
    if op == "==":
        return _strict_equals(left, right)
    if op == "!=":
        return not _strict_equals(left, right)
    a = _as_number(left)
    b = _as_number(right)
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    if op == ">=":
        return a >= b
    raise EvaluationError(f"Unsupported operator: {op}")


def _arithmetic(op: str, left: Value, right: Value) -> float:
    # Arithmetic reads an absent operand as 0.
    a = 0.0 if left is None else _as_number(left)
    b = 0.0 if right is None else _as_number(right)
    if op == "/" and b == 0:
        raise EvaluationError("Division by zero")
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        return a / b
    raise EvaluationError(f"Unsupported operator: {op}")


def _binary(op: str, left: Value, right: Value) -> Value:
    if op in COMPARISON_OPERATORS:
        return _compare(op, left, right)
    if op == "AND":
        return _truthy(left) and _truthy(right)
    if op == "OR":
        return _truthy(left) or _truthy(right)
    if op in ARITHMETIC_OPERATORS:
        return _arithmetic(op, left, right)
    raise EvaluationError(f"Unsupported operator: {op}")


def evaluate_node(node: ExprNode, context: EvaluationContext) -> Value:
    """Evaluate one AST node against ``context``.

    Both sides of a binary node are always evaluated, so an error on either
    side surfaces even when the other already decides a logical result.
    """

    if isinstance(node, BinaryNode):
        left = evaluate_node(node.left, context)
        right = evaluate_node(node.right, context)
        return _binary(node.op, left, right)

    if isinstance(node, UnaryNode):
        value = evaluate_node(node.child, context)
        if node.op == "NOT":
            return not _truthy(value)
        raise EvaluationError(f"Unsupported unary operator: {node.op}")

    if isinstance(node, CallNode):
        fn = context.function(node.name)
        if fn is None:
            raise EvaluationError(f"Function {node.name} not found in context")
        period = node.period
        if period is None:
            raise EvaluationError(
                f"Function {node.name} requires a single integer period",
                f"Got {len(node.args)} argument(s)",
            )
        return fn(period)

    if isinstance(node, IdentNode):
        value = context.property_value(node.name)
        if value is None:
            raise EvaluationError(
                f"Property {node.name} not found or not a number",
            )
        return value

    if isinstance(node, NumberNode):
        return node.value

    raise EvaluationError(
        f"Unsupported expression type: {getattr(node, 'node_type', type(node).__name__)}"
    )


def evaluate_trigger(node: ExprNode, context: EvaluationContext) -> bool:
    """Evaluate a rule condition to a trigger decision.

    A numeric result is treated as triggered when non-zero. An absent
    result (e.g. a bare ``RSI(200)`` on short history) is an error.
    """

    try:
        result = evaluate_node(node, context)
    except RecursionError:
        raise EvaluationError(
            "Expression is too complex", "Expression is nested too deeply"
        ) from None
    if isinstance(result, bool):
        return result
    if isinstance(result, float):
        return result != 0
    raise EvaluationError(
        "Expression must evaluate to a boolean or number",
        f"Got {type(result).__name__}: {result}",
    )


__all__ = ["Value", "evaluate_node", "evaluate_trigger"]
