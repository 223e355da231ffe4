from .market_data import Bar, IndicatorPoint, StockQuote, TimeSeries
from .rules import (
    ActionType,
    BatchStats,
    EvaluationMetadata,
    EvaluationResult,
    QuantityType,
    Rule,
    RuleEvaluation,
    ValidationResult,
)

__all__ = [
    "Bar",
    "TimeSeries",
    "StockQuote",
    "IndicatorPoint",
    "ActionType",
    "QuantityType",
    "Rule",
    "EvaluationMetadata",
    "EvaluationResult",
    "RuleEvaluation",
    "BatchStats",
    "ValidationResult",
]
