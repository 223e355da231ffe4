from __future__ import annotations

from dataclasses import dataclass
from math import floor, isfinite
from typing import Optional

from stockrules.schemas.rules import QuantityType
from stockrules.services.rule_context import EvaluationContext
from stockrules.services.rule_errors import SizingError
from stockrules.services.rule_evaluator import evaluate_node
from stockrules.services.rule_parser import compile_rule_expression


@dataclass
class SizingResult:
    quantity: int
    raw_quantity: float
    price: float
    total_amount: float


def _parse_number(raw: str) -> Optional[float]:
    try:
        value = float((raw or "").strip())
    except ValueError:
        return None
    if not isfinite(value):
        return None
    return value


def compute_quantity(
    quantity_type: QuantityType,
    quantity_value: str,
    context: EvaluationContext,
    available_cash: float | None = None,
) -> float:
    """Return the (unfloored) share quantity for a triggered rule.

    * FIXED: ``quantity_value`` is the share count.
    * PERCENTAGE: ``available_cash * quantity_value / 100 / price``; the
      percentage must be in ``(0, 100]`` and cash must be supplied.
    * EXPRESSION: ``quantity_value`` is a numeric rule expression evaluated
      against ``context`` (e.g. ``1000 / price``).

    Parse, validation and evaluation errors in an EXPRESSION propagate
    unchanged; everything else raises ``SizingError``.
    """

    if quantity_type == "FIXED":
        quantity = _parse_number(quantity_value)
        if quantity is None or quantity <= 0:
            raise SizingError(
                "Invalid FIXED quantity",
                f"Value must be a positive number, got: {quantity_value}",
            )
        return quantity

    if quantity_type == "PERCENTAGE":
        if available_cash is None:
            raise SizingError(
                "Available cash is required for PERCENTAGE quantity type",
                "Pass available_cash when evaluating the rule",
            )
        percentage = _parse_number(quantity_value)
        if percentage is None or percentage <= 0 or percentage > 100:
            raise SizingError(
                "Invalid PERCENTAGE quantity",
                f"Value must be between 0 and 100, got: {quantity_value}",
            )
        if context.price <= 0:
            raise SizingError(
                "Cannot size a PERCENTAGE order",
                f"Current price must be positive, got: {context.price}",
            )
        amount_to_invest = available_cash * percentage / 100
        return amount_to_invest / context.price

    if quantity_type == "EXPRESSION":
        node = compile_rule_expression(quantity_value, numeric_only=True)
        result = evaluate_node(node, context)
        if result is None:
            raise SizingError(
                "Quantity expression could not be computed",
                "An indicator in the expression has insufficient history",
            )
        if isinstance(result, bool):
            raise SizingError(
                "Quantity expression must evaluate to a number",
                f"Got bool: {result}",
            )
        if not isfinite(result):
            raise SizingError(
                "Quantity expression must evaluate to a finite number",
                f"Got: {result}",
            )
        if result <= 0:
            raise SizingError(
                "Quantity expression must evaluate to a positive number",
                f"Got: {result}",
            )
        return float(result)

    raise SizingError(f"Unsupported quantity type: {quantity_type}")


def size_trade(
    quantity_type: QuantityType,
    quantity_value: str,
    context: EvaluationContext,
    available_cash: float | None = None,
) -> SizingResult:
    """Compute whole-share quantity and notional for a triggered rule.

    The raw quantity is floored; a result of zero shares is an error for
    the rule rather than a silent no-op.
    """

    raw = compute_quantity(quantity_type, quantity_value, context, available_cash)
    quantity = floor(raw)
    if quantity <= 0:
        raise SizingError(
            "Calculated quantity must be positive",
            f"Got {quantity} from calculation",
        )
    return SizingResult(
        quantity=quantity,
        raw_quantity=raw,
        price=context.price,
        total_amount=quantity * context.price,
    )


__all__ = ["SizingResult", "compute_quantity", "size_trade"]
