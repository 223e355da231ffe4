from __future__ import annotations

import logging
import re
from math import isfinite
from typing import Optional, Protocol

import httpx

from stockrules.clients.twelve_data import MarketDataError
from stockrules.schemas.rules import QuantityType, ValidationResult
from stockrules.services.rule_errors import RuleEngineError
from stockrules.services.rule_expression import VALID_FUNCTIONS, VALID_PROPERTIES
from stockrules.services.rule_parser import compile_rule_expression

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(r"^[A-Z]{1,5}$")
_WHITESPACE_RE = re.compile(r"\s+")

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
QUANTITY_TYPES = ("FIXED", "PERCENTAGE", "EXPRESSION")


class SymbolChecker(Protocol):
    def symbol_exists(self, symbol: str) -> bool: ...


def _ok() -> ValidationResult:
    return ValidationResult(is_valid=True)


def _fail(error: str, details: str | None = None) -> ValidationResult:
    return ValidationResult(is_valid=False, error=error, details=details)


def validate_expression(
    text: str, *, numeric_only: bool = False
) -> ValidationResult:
    """Parse and validate ``text`` without raising."""

    try:
        compile_rule_expression(text, numeric_only=numeric_only)
    except RuleEngineError as exc:
        return _fail(exc.message, exc.details)
    return _ok()


def validate_rule_expression(expression: str) -> ValidationResult:
    if not isinstance(expression, str) or not expression:
        return _fail("Expression is required", "Expression must be a non-empty string")
    if not expression.strip():
        return _fail("Expression cannot be empty", "Please provide a valid expression")
    return validate_expression(expression)


def validate_quantity(quantity_type: str, quantity_value: str) -> ValidationResult:
    if quantity_type not in QUANTITY_TYPES:
        return _fail(
            "Invalid quantity type",
            f"Quantity type must be one of: {', '.join(QUANTITY_TYPES)}",
        )
    if not isinstance(quantity_value, str) or not quantity_value:
        return _fail(
            "Quantity value is required", "Quantity value must be a non-empty string"
        )
    trimmed = quantity_value.strip()
    if not trimmed:
        return _fail(
            "Quantity value cannot be empty", "Please provide a valid quantity value"
        )

    if quantity_type == "EXPRESSION":
        result = validate_expression(trimmed, numeric_only=True)
        if not result.is_valid:
            return _fail("Invalid EXPRESSION quantity", result.details or result.error)
        return _ok()

    try:
        value = float(trimmed)
    except ValueError:
        value = float("nan")
    if not isfinite(value):
        return _fail(
            f"Invalid {quantity_type} quantity",
            "Value must be a number (e.g., 10, 25.5)",
        )
    if quantity_type == "FIXED":
        if not value > 0:
            return _fail("Invalid FIXED quantity", "Value must be greater than 0")
        return _ok()
    if not 0 < value <= 100:
        return _fail("Invalid PERCENTAGE quantity", "Value must be between 0 and 100")
    return _ok()


def sanitize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


def sanitize_expression(expression: str) -> str:
    return _WHITESPACE_RE.sub(" ", expression.strip())


def validate_symbol(
    symbol: str, client: Optional[SymbolChecker] = None
) -> ValidationResult:
    """Check symbol format and, when ``client`` is given, that it exists.

    An unreachable provider does not block the rule: the format check alone
    decides the result in that case.
    """

    if not isinstance(symbol, str) or not symbol:
        return _fail("Symbol is required", "Symbol must be a non-empty string")
    cleaned = sanitize_symbol(symbol)
    if not cleaned:
        return _fail(
            "Symbol cannot be empty",
            "Please provide a valid stock symbol (e.g., AAPL, MSFT)",
        )
    if not _SYMBOL_RE.match(cleaned):
        return _fail(
            "Invalid symbol format",
            "Symbol must be 1-5 uppercase letters (e.g., AAPL, MSFT, GOOGL)",
        )
    if client is None:
        return _ok()

    try:
        exists = client.symbol_exists(cleaned)
    except (MarketDataError, httpx.HTTPError) as exc:
        logger.warning(
            "Could not validate symbol %s",
            cleaned,
            extra={"extra": {"symbol": cleaned, "error": str(exc)}},
        )
        return _ok()
    if not exists:
        return _fail(
            "Symbol not found",
            f'Stock symbol "{cleaned}" does not exist or is not supported',
        )
    return _ok()


def validate_rule_name(name: str) -> ValidationResult:
    if not isinstance(name, str) or not name:
        return _fail("Name is required", "Name must be a non-empty string")
    trimmed = name.strip()
    if not trimmed:
        return _fail("Name cannot be empty", "Please provide a rule name")
    if len(trimmed) > MAX_NAME_LENGTH:
        return _fail(
            "Name is too long", f"Name must be {MAX_NAME_LENGTH} characters or less"
        )
    return _ok()


def validate_rule_description(description: str | None) -> ValidationResult:
    if not description:
        return _ok()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        return _fail(
            "Description is too long",
            f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less",
        )
    return _ok()


def validate_rule(
    *,
    expression: str,
    symbol: str,
    quantity_type: QuantityType,
    quantity_value: str,
    client: Optional[SymbolChecker] = None,
) -> ValidationResult:
    """Validate a rule draft: expression, then symbol, then quantity."""

    expr = validate_rule_expression(expression)
    if not expr.is_valid:
        return _fail("Invalid expression", expr.details or expr.error)

    sym = validate_symbol(symbol, client)
    if not sym.is_valid:
        return _fail("Invalid symbol", sym.details or sym.error)

    qty = validate_quantity(quantity_type, quantity_value)
    if not qty.is_valid:
        return _fail("Invalid quantity", qty.details or qty.error)

    return _ok()


def helpful_error_message(error: str) -> str:
    """Append usage hints to common validation errors."""

    lowered = error.lower()
    if "invalid function" in lowered:
        return (
            f"{error}\n\nValid functions are: "
            f"{', '.join(f'{f}(period)' for f in VALID_FUNCTIONS)}\n"
            "Example: RSI(14) < 30"
        )
    if "invalid property" in lowered:
        return (
            f"{error}\n\nValid properties are: {', '.join(VALID_PROPERTIES)}\n"
            "Example: close > SMA(50)"
        )
    if "invalid operator" in lowered:
        return (
            f"{error}\n\nValid operators are:\n"
            "- Comparison: <, >, <=, >=, ==, !=\n"
            "- Logical: AND, OR, NOT\n"
            "- Arithmetic (quantity expressions only): +, -, *, /\n"
            "Example: RSI(14) < 30 AND volume > avgVolume(20)"
        )
    if "symbol not found" in lowered:
        return (
            f"{error}\n\nPlease check that the stock symbol is correct and is "
            "traded on a supported exchange."
        )
    return error


__all__ = [
    "SymbolChecker",
    "helpful_error_message",
    "sanitize_expression",
    "sanitize_symbol",
    "validate_expression",
    "validate_quantity",
    "validate_rule",
    "validate_rule_description",
    "validate_rule_expression",
    "validate_rule_name",
    "validate_symbol",
]
