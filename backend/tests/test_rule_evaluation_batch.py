from __future__ import annotations

import threading
from datetime import date, timedelta

from stockrules.clients.twelve_data import MarketDataError
from stockrules.schemas.market_data import Bar, TimeSeries
from stockrules.schemas.rules import Rule
from stockrules.services.rule_evaluation import (
    batch_evaluate_rules,
    evaluate_rule,
    group_rules_by_symbol,
    plan_fetch_windows,
    run_rule_batch,
)


def _series(symbol: str, closes: list[float]) -> TimeSeries:
    start = date(2024, 1, 1)
    bars = [
        Bar(
            datetime=(start + timedelta(days=i)).isoformat(),
            open=c,
            high=c,
            low=c,
            close=c,
            volume=1000.0,
        )
        for i, c in enumerate(closes)
    ]
    return TimeSeries(symbol=symbol, values=list(reversed(bars)))


def _rule(rule_id: int, symbol: str, expression: str, **kwargs) -> Rule:
    return Rule(id=rule_id, name=f"rule {rule_id}", symbol=symbol, expression=expression, **kwargs)


class _StubFetcher:
    def __init__(self, data: dict[str, TimeSeries], failing: set[str] | None = None) -> None:
        self.data = data
        self.failing = failing or set()
        self.limits: dict[str, int] = {}
        self._lock = threading.Lock()

    def fetch_historical_data(self, symbol: str, *, limit: int) -> TimeSeries:
        with self._lock:
            self.limits[symbol] = limit
        if symbol in self.failing:
            raise MarketDataError("Twelve Data API error: boom (500)")
        return self.data.get(symbol) or TimeSeries(symbol=symbol, values=[])


def test_evaluate_rule_triggered_fixed() -> None:
    rule = _rule(1, "AAPL", "close > 100", quantity_type="FIXED", quantity_value="10")

    result = evaluate_rule(rule, _series("AAPL", [90.0, 150.0]))

    assert result.triggered is True
    assert result.quantity == 10
    assert result.price == 150.0
    assert result.total_amount == 1500.0
    assert result.metadata.error is None
    assert result.metadata.symbol == "AAPL"
    assert result.metadata.context_values["rounded_quantity"] == 10
    assert result.metadata.evaluated_at.tzinfo is not None


def test_evaluate_rule_not_triggered() -> None:
    rule = _rule(1, "AAPL", "close > 1000")

    result = evaluate_rule(rule, _series("AAPL", [90.0, 150.0]))

    assert result.triggered is False
    assert result.quantity == 0
    assert result.metadata.error is None
    assert result.metadata.context_values["price"] == 150.0


def test_evaluate_rule_reports_errors_instead_of_raising() -> None:
    series = _series("AAPL", [90.0, 150.0])

    parse_failure = evaluate_rule(_rule(1, "AAPL", "close >"), series)
    assert parse_failure.triggered is False
    assert (parse_failure.metadata.error or "").startswith("Failed to parse expression")

    vocab_failure = evaluate_rule(_rule(2, "AAPL", "MACD(12) > 0"), series)
    assert (vocab_failure.metadata.error or "").startswith("Invalid function: MACD")

    sizing_failure = evaluate_rule(
        _rule(3, "AAPL", "close > 1", quantity_type="PERCENTAGE", quantity_value="10"),
        series,
    )
    assert sizing_failure.triggered is False
    assert "Available cash is required" in (sizing_failure.metadata.error or "")

    empty = evaluate_rule(_rule(4, "AAPL", "close > 1"), TimeSeries(symbol="AAPL"))
    assert (empty.metadata.error or "").startswith("No historical data available")


def test_evaluate_rule_percentage_with_cash() -> None:
    rule = _rule(1, "AAPL", "close > 1", quantity_type="PERCENTAGE", quantity_value="25")

    result = evaluate_rule(rule, _series("AAPL", [40.0, 50.0]), available_cash=10000)

    assert result.quantity == 50
    assert result.total_amount == 2500.0


def test_batch_evaluate_rules_isolates_missing_symbols() -> None:
    rules = [
        _rule(1, "AAPL", "close > 100"),
        _rule(2, "MSFT", "close > 100"),
    ]

    results = batch_evaluate_rules(rules, {"AAPL": _series("AAPL", [90.0, 150.0])})

    assert [r.rule.id for r in results] == [1, 2]
    assert results[0].result.triggered is True
    assert results[1].result.metadata.error == "No stock data available for MSFT"


def test_plan_fetch_windows_uses_largest_lookback_with_floor() -> None:
    grouped = group_rules_by_symbol(
        [
            _rule(1, "AAPL", "SMA(100) > 0"),
            _rule(2, "AAPL", "close > 5"),
            _rule(3, "MSFT", "RSI(14) < 30"),
            _rule(4, "MSFT", "close >"),
        ]
    )

    assert plan_fetch_windows(grouped, 100) == {"AAPL": 200, "MSFT": 100}
    assert plan_fetch_windows(grouped, 10) == {"AAPL": 200, "MSFT": 42}


def test_run_rule_batch_isolates_failed_symbol() -> None:
    fetcher = _StubFetcher(
        {"AAPL": _series("AAPL", [float(c) for c in range(140, 151)])},
        failing={"MSFT"},
    )
    rules = [
        _rule(1, "AAPL", "close > 100", quantity_value="10"),
        _rule(2, "AAPL", "close > 1000"),
        _rule(3, "MSFT", "close > 1"),
        _rule(4, "AAPL", "close >"),
    ]

    outcome = run_rule_batch(rules, fetcher, max_workers=2, default_days=100)

    assert outcome.stats.total_rules == 4
    assert outcome.stats.triggered == 1
    assert outcome.stats.not_triggered == 1
    assert outcome.stats.errors == 2
    assert set(outcome.fetch_errors) == {"MSFT"}
    assert outcome.batch_id

    by_id = {e.rule.id: e.result for e in outcome.evaluations}
    assert (by_id[3].metadata.error or "").startswith("Failed to fetch data for MSFT")
    assert by_id[1].quantity == 10
    assert [(rule.id, result.quantity) for rule, result in outcome.triggered] == [(1, 10)]
    assert fetcher.limits == {"AAPL": 100, "MSFT": 100}


def test_run_rule_batch_treats_empty_series_as_fetch_failure() -> None:
    fetcher = _StubFetcher({})

    outcome = run_rule_batch([_rule(1, "AAPL", "close > 1")], fetcher, default_days=50)

    assert outcome.stats.errors == 1
    assert "No historical data available" in outcome.fetch_errors["AAPL"]
    assert fetcher.limits == {"AAPL": 50}


def test_run_rule_batch_filters_inactive_and_symbol() -> None:
    fetcher = _StubFetcher(
        {
            "AAPL": _series("AAPL", [1.0, 2.0]),
            "MSFT": _series("MSFT", [1.0, 2.0]),
        }
    )
    rules = [
        _rule(1, "AAPL", "close > 1"),
        _rule(2, "AAPL", "close > 1", is_active=False),
        _rule(3, "MSFT", "close > 1"),
    ]

    outcome = run_rule_batch(rules, fetcher, symbol=" aapl ")

    assert outcome.stats.total_rules == 1
    assert [e.rule.id for e in outcome.evaluations] == [1]
    assert set(fetcher.limits) == {"AAPL"}


def test_run_rule_batch_without_active_rules_fetches_nothing() -> None:
    fetcher = _StubFetcher({})

    outcome = run_rule_batch([_rule(1, "AAPL", "close > 1", is_active=False)], fetcher)

    assert outcome.stats.total_rules == 0
    assert outcome.evaluations == []
    assert fetcher.limits == {}


def test_cash_provider_only_called_for_percentage_rules() -> None:
    fetcher = _StubFetcher({"AAPL": _series("AAPL", [40.0, 50.0])})
    calls: list[int] = []

    def cash() -> float:
        calls.append(1)
        return 10000.0

    run_rule_batch([_rule(1, "AAPL", "close > 1")], fetcher, cash_provider=cash)
    assert calls == []

    outcome = run_rule_batch(
        [
            _rule(1, "AAPL", "close > 1", quantity_type="PERCENTAGE", quantity_value="25"),
            _rule(2, "AAPL", "close > 1", quantity_type="PERCENTAGE", quantity_value="10"),
        ],
        fetcher,
        cash_provider=cash,
    )
    assert calls == [1]
    assert [r.quantity for _, r in outcome.triggered] == [50, 20]


def test_run_rule_batch_survives_hostile_expressions() -> None:
    fetcher = _StubFetcher(
        {
            "AAPL": _series("AAPL", [90.0, 150.0]),
            "MSFT": _series("MSFT", [90.0, 150.0]),
        }
    )
    huge = "1" + "0" * 200
    rules = [
        _rule(1, "AAPL", "close > 1", quantity_type="EXPRESSION", quantity_value=f"{huge} * {huge}"),
        _rule(2, "AAPL", "(" * 3000 + "close > 1" + ")" * 3000),
        _rule(3, "AAPL", " AND ".join(["close > 1"] * 5000)),
        _rule(4, "MSFT", "close > 100", quantity_value="5"),
    ]

    outcome = run_rule_batch(rules, fetcher, default_days=30)

    by_id = {e.rule.id: e.result for e in outcome.evaluations}
    assert (by_id[1].metadata.error or "").startswith(
        "Quantity expression must evaluate to a finite number"
    )
    assert (by_id[2].metadata.error or "").startswith("Failed to parse expression")
    assert (by_id[3].metadata.error or "").startswith("Expression is too complex")
    assert by_id[4].triggered is True
    assert by_id[4].quantity == 5
    assert outcome.stats.errors == 3


def test_unexpected_exception_fails_only_its_rule(monkeypatch) -> None:
    from stockrules.services import rule_evaluation

    real_evaluate = rule_evaluation.evaluate_rule

    def flaky(rule, series, available_cash=None):
        if rule.id == 1:
            raise ValueError("cannot convert float NaN to integer")
        return real_evaluate(rule, series, available_cash)

    monkeypatch.setattr(rule_evaluation, "evaluate_rule", flaky)
    series = _series("AAPL", [90.0, 150.0])

    results = batch_evaluate_rules(
        [_rule(1, "AAPL", "close > 1"), _rule(2, "AAPL", "close > 100")],
        {"AAPL": series},
    )

    assert [r.rule.id for r in results] == [1, 2]
    assert results[0].result.triggered is False
    assert (results[0].result.metadata.error or "").startswith(
        "Unexpected evaluation error: ValueError"
    )
    assert results[1].result.triggered is True
