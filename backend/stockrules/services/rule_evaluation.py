from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from stockrules.core.config import get_settings
from stockrules.core.logging import log_with_context
from stockrules.schemas.market_data import TimeSeries
from stockrules.schemas.rules import (
    BatchStats,
    EvaluationMetadata,
    EvaluationResult,
    Rule,
    RuleEvaluation,
)
from stockrules.services.rule_context import build_evaluation_context
from stockrules.services.rule_errors import RuleEngineError
from stockrules.services.rule_evaluator import evaluate_trigger
from stockrules.services.rule_expression import required_lookback_days, validate_ast
from stockrules.services.rule_parser import parse_rule_expression
from stockrules.services.rule_sizing import size_trade

logger = logging.getLogger(__name__)


class HistoricalDataFetcher(Protocol):
    def fetch_historical_data(self, symbol: str, *, limit: int) -> TimeSeries: ...


def _failed_result(rule: Rule, error: str) -> EvaluationResult:
    return EvaluationResult(
        triggered=False,
        metadata=EvaluationMetadata(
            evaluated_at=datetime.now(UTC),
            symbol=rule.symbol,
            expression=rule.expression,
            error=error,
        ),
    )


def evaluate_rule(
    rule: Rule,
    series: TimeSeries,
    available_cash: float | None = None,
) -> EvaluationResult:
    """Evaluate one rule against its symbol's history.

    Never raises for rule-level problems: parse, validation, context,
    evaluation and sizing errors are reported in ``metadata.error``.
    """

    try:
        context = build_evaluation_context(series)
        node = parse_rule_expression(rule.expression)
        validate_ast(node)
        triggered = evaluate_trigger(node, context)

        if not triggered:
            return EvaluationResult(
                triggered=False,
                price=context.price,
                metadata=EvaluationMetadata(
                    evaluated_at=datetime.now(UTC),
                    symbol=rule.symbol,
                    expression=rule.expression,
                    context_values=context.summary(),
                ),
            )

        sizing = size_trade(
            rule.quantity_type, rule.quantity_value, context, available_cash
        )
        return EvaluationResult(
            triggered=True,
            quantity=sizing.quantity,
            price=sizing.price,
            total_amount=sizing.total_amount,
            metadata=EvaluationMetadata(
                evaluated_at=datetime.now(UTC),
                symbol=rule.symbol,
                expression=rule.expression,
                context_values={
                    **context.summary(),
                    "calculated_quantity": sizing.raw_quantity,
                    "rounded_quantity": sizing.quantity,
                },
            ),
        )
    except RuleEngineError as exc:
        logger.warning(
            "Rule evaluation failed",
            extra={
                "extra": {
                    "rule_id": rule.id,
                    "symbol": rule.symbol,
                    "error": exc.describe(),
                }
            },
        )
        return _failed_result(rule, exc.describe())


def batch_evaluate_rules(
    rules: Sequence[Rule],
    series_by_symbol: Mapping[str, TimeSeries],
    available_cash: float | None = None,
) -> List[RuleEvaluation]:
    """Evaluate each rule against the series of its symbol.

    Rules whose symbol has no series are reported as errored; one rule's
    failure never affects another's result.
    """

    results: List[RuleEvaluation] = []
    for rule in rules:
        series = series_by_symbol.get(rule.symbol)
        if series is None:
            result = _failed_result(
                rule, f"No stock data available for {rule.symbol}"
            )
        else:
            try:
                result = evaluate_rule(rule, series, available_cash)
            except Exception as exc:  # one rule never aborts the batch
                logger.warning(
                    "Unexpected error evaluating rule",
                    exc_info=True,
                    extra={"extra": {"rule_id": rule.id, "symbol": rule.symbol}},
                )
                result = _failed_result(
                    rule, f"Unexpected evaluation error: {type(exc).__name__}: {exc}"
                )
        results.append(RuleEvaluation(rule=rule, result=result))
    return results


# -----------------------------------------------------------------------------
# Batch runs: group -> plan -> fetch -> evaluate -> aggregate
# -----------------------------------------------------------------------------


@dataclass
class BatchOutcome:
    evaluations: List[RuleEvaluation] = field(default_factory=list)
    stats: BatchStats = field(default_factory=BatchStats)
    fetch_errors: Dict[str, str] = field(default_factory=dict)
    batch_id: str = ""

    @property
    def triggered(self) -> List[Tuple[Rule, EvaluationResult]]:
        return [
            (e.rule, e.result)
            for e in self.evaluations
            if e.result.triggered and not e.result.metadata.error
        ]


def group_rules_by_symbol(rules: Sequence[Rule]) -> Dict[str, List[Rule]]:
    grouped: Dict[str, List[Rule]] = {}
    for rule in rules:
        grouped.setdefault(rule.symbol, []).append(rule)
    return grouped


def plan_fetch_windows(
    rules_by_symbol: Mapping[str, Sequence[Rule]],
    default_days: int,
) -> Dict[str, int]:
    """Return the number of daily bars to fetch per symbol.

    Each symbol gets the largest lookback any of its rules needs, never less
    than ``default_days``. Unparseable rules do not contribute; they are
    reported when evaluated.
    """

    windows: Dict[str, int] = {}
    for symbol, symbol_rules in rules_by_symbol.items():
        days = default_days
        for rule in symbol_rules:
            try:
                node = parse_rule_expression(rule.expression)
            except RuleEngineError:
                continue
            days = max(days, required_lookback_days(node))
        windows[symbol] = days
    return windows


def _fetch_one(
    fetcher: HistoricalDataFetcher, symbol: str, limit: int
) -> TimeSeries:
    series = fetcher.fetch_historical_data(symbol, limit=limit)
    if not series.values:
        raise RuntimeError("No historical data available")
    return series


def fetch_series(
    fetcher: HistoricalDataFetcher,
    windows: Mapping[str, int],
    *,
    max_workers: int,
    batch_id: str = "",
) -> Tuple[Dict[str, TimeSeries], Dict[str, str]]:
    """Fetch every symbol concurrently; failures are isolated per symbol."""

    fetched: Dict[str, TimeSeries] = {}
    errors: Dict[str, str] = {}
    if not windows:
        return fetched, errors

    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(windows))),
        thread_name_prefix="rule-fetch",
    ) as pool:
        futures = {
            symbol: pool.submit(_fetch_one, fetcher, symbol, limit)
            for symbol, limit in windows.items()
        }
        for symbol, future in futures.items():
            try:
                fetched[symbol] = future.result()
            except Exception as exc:  # any provider failure means "no data"
                errors[symbol] = str(exc) or type(exc).__name__
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Historical data fetch failed",
                    batch_id=batch_id,
                    symbol=symbol,
                    error=errors[symbol],
                )
    return fetched, errors


def run_rule_batch(
    rules: Sequence[Rule],
    fetcher: HistoricalDataFetcher,
    *,
    available_cash: float | None = None,
    cash_provider: Optional[Callable[[], float]] = None,
    symbol: str | None = None,
    max_workers: int | None = None,
    default_days: int | None = None,
) -> BatchOutcome:
    """Evaluate all active rules, fetching each symbol's history once.

    ``cash_provider`` is consulted only when ``available_cash`` is not given
    and at least one rule sizes by PERCENTAGE.
    """

    settings = get_settings()
    batch_id = uuid.uuid4().hex
    outcome = BatchOutcome(batch_id=batch_id)

    active = [r for r in rules if r.is_active]
    if symbol:
        wanted = symbol.strip().upper()
        active = [r for r in active if r.symbol == wanted]
    outcome.stats.total_rules = len(active)
    if not active:
        log_with_context(logger, logging.INFO, "No active rules to evaluate", batch_id=batch_id)
        return outcome

    if (
        available_cash is None
        and cash_provider is not None
        and any(r.quantity_type == "PERCENTAGE" for r in active)
    ):
        available_cash = cash_provider()

    grouped = group_rules_by_symbol(active)
    windows = plan_fetch_windows(
        grouped,
        default_days if default_days is not None else settings.default_lookback_days,
    )
    log_with_context(
        logger,
        logging.INFO,
        "Fetching historical data",
        batch_id=batch_id,
        symbols=len(windows),
        rules=len(active),
    )

    fetched, fetch_errors = fetch_series(
        fetcher,
        windows,
        max_workers=max_workers or settings.fetch_max_workers,
        batch_id=batch_id,
    )
    outcome.fetch_errors = fetch_errors

    evaluations = batch_evaluate_rules(active, fetched, available_cash)
    for evaluation in evaluations:
        result = evaluation.result
        fetch_error = fetch_errors.get(evaluation.rule.symbol)
        if fetch_error is not None:
            result.metadata.error = (
                f"Failed to fetch data for {evaluation.rule.symbol}: {fetch_error}"
            )
        if result.metadata.error:
            outcome.stats.errors += 1
        elif result.triggered:
            outcome.stats.triggered += 1
        else:
            outcome.stats.not_triggered += 1
    outcome.evaluations = evaluations

    log_with_context(
        logger,
        logging.INFO,
        "Rule evaluation complete",
        batch_id=batch_id,
        triggered=outcome.stats.triggered,
        not_triggered=outcome.stats.not_triggered,
        errors=outcome.stats.errors,
    )
    return outcome


__all__ = [
    "BatchOutcome",
    "HistoricalDataFetcher",
    "batch_evaluate_rules",
    "evaluate_rule",
    "fetch_series",
    "group_rules_by_symbol",
    "plan_fetch_windows",
    "run_rule_batch",
]
