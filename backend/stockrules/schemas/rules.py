from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ActionType = Literal["BUY", "SELL"]
QuantityType = Literal["FIXED", "PERCENTAGE", "EXPRESSION"]


class Rule(BaseModel):
    """A user's trading rule. Created and stored outside the engine."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    expression: str
    symbol: str
    action: ActionType = "BUY"
    quantity_type: QuantityType = "FIXED"
    quantity_value: str = "1"
    is_active: bool = True


class EvaluationMetadata(BaseModel):
    evaluated_at: datetime
    symbol: str
    expression: str
    error: Optional[str] = None
    context_values: Dict[str, Any] = Field(default_factory=dict)


class EvaluationResult(BaseModel):
    """Outcome of evaluating one rule against one symbol's history."""

    triggered: bool
    quantity: int = 0
    price: float = 0.0
    total_amount: float = 0.0
    metadata: EvaluationMetadata


class RuleEvaluation(BaseModel):
    rule: Rule
    result: EvaluationResult


class BatchStats(BaseModel):
    total_rules: int = 0
    triggered: int = 0
    not_triggered: int = 0
    errors: int = 0


class ValidationResult(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    details: Optional[str] = None


__all__ = [
    "ActionType",
    "QuantityType",
    "Rule",
    "EvaluationMetadata",
    "EvaluationResult",
    "RuleEvaluation",
    "BatchStats",
    "ValidationResult",
]
