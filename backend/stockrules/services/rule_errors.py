from __future__ import annotations


class RuleEngineError(RuntimeError):
    """Base class for errors raised while parsing or evaluating a rule.

    ``details`` carries the actionable part of the message (the offending
    token, the list of valid names, the computed value) so callers can show
    it separately from the headline.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def describe(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ParseError(RuleEngineError):
    """Raised when an expression is not syntactically well formed."""


class ExpressionValidationError(RuleEngineError):
    """Raised when a well-formed expression uses unknown vocabulary."""


class ContextError(RuleEngineError):
    """Raised when an evaluation context cannot be built from a time series."""


class EvaluationError(RuleEngineError):
    """Raised when an AST cannot be evaluated against a context."""


class SizingError(RuleEngineError):
    """Raised when a triggered rule cannot be turned into a share quantity."""


__all__ = [
    "RuleEngineError",
    "ParseError",
    "ExpressionValidationError",
    "ContextError",
    "EvaluationError",
    "SizingError",
]
