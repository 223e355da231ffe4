from __future__ import annotations

from datetime import date, timedelta

import pytest

from stockrules.schemas.market_data import Bar, TimeSeries
from stockrules.services.rule_context import build_evaluation_context
from stockrules.services.rule_errors import ContextError


def _series(closes: list[float], *, symbol: str = "TEST") -> TimeSeries:
    start = date(2024, 1, 1)
    bars = [
        Bar(
            datetime=(start + timedelta(days=i)).isoformat(),
            open=c - 1,
            high=c + 2,
            low=c - 2,
            close=c,
            volume=1000.0 + i,
        )
        for i, c in enumerate(closes)
    ]
    return TimeSeries(symbol=symbol, values=list(reversed(bars)))


def test_properties_come_from_newest_bar() -> None:
    ctx = build_evaluation_context(_series([10.0, 11.0, 12.0]))

    assert ctx.symbol == "TEST"
    assert ctx.datetime == "2024-01-03"
    assert ctx.close == 12.0
    assert ctx.price == ctx.close
    assert ctx.open == 11.0
    assert ctx.high == 14.0
    assert ctx.low == 10.0
    assert ctx.volume == 1002.0
    assert ctx.property_value("price") == 12.0
    assert ctx.property_value("vwap") is None


def test_functions_are_bound_to_full_series() -> None:
    ctx = build_evaluation_context(_series([1.0, 2.0, 3.0, 4.0, 5.0]))

    assert ctx.SMA(3) == pytest.approx(4.0)
    assert ctx.EMA(3) == pytest.approx(4.0)
    assert ctx.avgVolume(2) == pytest.approx(1003.5)
    assert ctx.RSI(2) == pytest.approx(100.0)
    assert ctx.RSI(200) is None

    fn = ctx.function("SMA")
    assert fn is not None and fn(5) == pytest.approx(3.0)
    assert ctx.function("MACD") is None


def test_invalid_period_warns_and_returns_none(caplog: pytest.LogCaptureFixture) -> None:
    ctx = build_evaluation_context(_series([1.0, 2.0, 3.0]))

    with caplog.at_level("WARNING", logger="stockrules.services.rule_context"):
        assert ctx.SMA(0) is None
        assert ctx.RSI(-2) is None

    assert "Invalid SMA period: 0" in caplog.text
    assert "Invalid RSI period: -2" in caplog.text


def test_empty_series_is_a_context_error() -> None:
    with pytest.raises(ContextError) as exc_info:
        build_evaluation_context(TimeSeries(symbol="TEST", values=[]))

    assert exc_info.value.message == "No historical data available"


def test_non_finite_newest_bar_is_a_context_error() -> None:
    series = _series([1.0, 2.0])
    broken = series.values[0].model_copy(update={"close": float("nan")})
    series = TimeSeries(symbol="TEST", values=[broken, *series.values[1:]])

    with pytest.raises(ContextError) as exc_info:
        build_evaluation_context(series)

    assert exc_info.value.message == "Invalid data point"
    assert "close" in (exc_info.value.details or "")


def test_building_context_does_not_touch_input() -> None:
    series = _series([1.0, 2.0, 3.0])
    before = series.model_dump()

    build_evaluation_context(series)

    assert series.model_dump() == before


def test_summary_feeds_metadata() -> None:
    ctx = build_evaluation_context(_series([10.0, 11.0]))

    assert ctx.summary() == {
        "symbol": "TEST",
        "datetime": "2024-01-02",
        "price": 11.0,
        "volume": 1001.0,
        "open": 10.0,
        "high": 13.0,
        "low": 9.0,
    }
