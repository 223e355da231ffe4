from __future__ import annotations

import logging
from math import isfinite
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from stockrules.schemas.market_data import IndicatorPoint, TimeSeries

logger = logging.getLogger(__name__)

_NAN = float("nan")

# History multiple fetched per indicator period. RSI and EMA get extra bars
# so their recursive smoothing has converged by the latest bar.
LOOKBACK_MULTIPLIERS: Dict[str, int] = {
    "RSI": 3,
    "EMA": 3,
    "SMA": 2,
    "AVGVOLUME": 2,
    "AVG_VOLUME": 2,
}


def required_data_points(indicator: str, period: int) -> int:
    multiplier = LOOKBACK_MULTIPLIERS.get((indicator or "").upper())
    if multiplier is None:
        return 100
    return period * multiplier


def _valid_period(period: int) -> bool:
    return isinstance(period, int) and not isinstance(period, bool) and period > 0


def _insufficient(name: str, needed: int, got: int) -> None:
    logger.warning(
        "Insufficient data for %s calculation",
        name,
        extra={"extra": {"indicator": name, "needed": needed, "got": got}},
    )


# -----------------------------------------------------------------------------
# Series (one value per input bar, NaN until the warmup window is filled)
# -----------------------------------------------------------------------------


def sma_series(values: Sequence[float], period: int) -> list[float]:
    n = len(values)
    out = [_NAN] * n
    if not _valid_period(period) or n < period:
        return out
    window_sum = sum(values[:period])
    out[period - 1] = window_sum / period
    for i in range(period, n):
        window_sum += values[i] - values[i - period]
        out[i] = window_sum / period
    return out


def ema_series(values: Sequence[float], period: int) -> list[float]:
    """EMA with ``k = 2 / (period + 1)``, seeded by the SMA of the first window."""

    n = len(values)
    out = [_NAN] * n
    if not _valid_period(period) or n < period:
        return out
    k = 2.0 / (period + 1.0)
    ema = sum(values[:period]) / period
    out[period - 1] = ema
    for i in range(period, n):
        ema = values[i] * k + ema * (1 - k)
        out[i] = ema
    return out


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # Flat window (no gains, no losses) reads as neutral.
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi_series(values: Sequence[float], period: int) -> list[float]:
    """Wilder's RSI.

    - The first ``period`` day-over-day deltas seed the average gain/loss
      with a plain mean; the first RSI value lands on bar index ``period``.
    - Subsequent averages are Wilder-smoothed:
      ``avg = (prev_avg * (period - 1) + current) / period``.
    """

    n = len(values)
    out = [_NAN] * n
    if not _valid_period(period) or n < period + 1:
        return out

    gains: List[float] = []
    losses: List[float] = []
    for prev, curr in zip(values[:-1], values[1:], strict=False):
        delta = curr - prev
        gains.append(delta if delta > 0 else 0.0)
        losses.append(-delta if delta < 0 else 0.0)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    out[period] = _rsi_from_averages(avg_gain, avg_loss)
    for i in range(period, len(gains)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i + 1] = _rsi_from_averages(avg_gain, avg_loss)
    return out


def _last_finite(series: Sequence[float]) -> Optional[float]:
    if not series:
        return None
    v = series[-1]
    if not isfinite(v):
        return None
    return float(v)


# -----------------------------------------------------------------------------
# Latest value (None on insufficient data or an invalid period)
# -----------------------------------------------------------------------------


def sma(values: Sequence[float], period: int) -> Optional[float]:
    if not _valid_period(period):
        return None
    if len(values) < period:
        _insufficient("SMA", period, len(values))
        return None
    return sum(values[-period:]) / period


def ema(values: Sequence[float], period: int) -> Optional[float]:
    if not _valid_period(period):
        return None
    if len(values) < period:
        _insufficient("EMA", period, len(values))
        return None
    return _last_finite(ema_series(values, period))


def rsi(values: Sequence[float], period: int) -> Optional[float]:
    if not _valid_period(period):
        return None
    if len(values) < period + 1:
        _insufficient("RSI", period + 1, len(values))
        return None
    return _last_finite(rsi_series(values, period))


def average_volume(volumes: Sequence[float], period: int) -> Optional[float]:
    if not _valid_period(period):
        return None
    if len(volumes) < period:
        _insufficient("avgVolume", period, len(volumes))
        return None
    return sum(volumes[-period:]) / period


# -----------------------------------------------------------------------------
# Inputs and date-aligned history
# -----------------------------------------------------------------------------


def _field_points(series: TimeSeries, field: str) -> List[Tuple[str, float]]:
    points: List[Tuple[str, float]] = []
    for bar in series.oldest_first():
        value = float(getattr(bar, field))
        if isfinite(value):
            points.append((bar.datetime, value))
    return points


def closing_prices(series: TimeSeries) -> List[float]:
    """Finite closes, oldest first."""

    return [v for _, v in _field_points(series, "close")]


def volumes(series: TimeSeries) -> List[float]:
    """Finite volumes, oldest first."""

    return [v for _, v in _field_points(series, "volume")]


def _history(
    series: TimeSeries,
    field: str,
    period: int,
    compute: Callable[[Sequence[float], int], list[float]],
) -> List[IndicatorPoint]:
    points = _field_points(series, field)
    values = compute([v for _, v in points], period)
    return [
        IndicatorPoint(datetime=dt, value=float(v))
        for (dt, _), v in zip(points, values, strict=True)
        if isfinite(v)
    ]


def rsi_history(series: TimeSeries, period: int = 14) -> List[IndicatorPoint]:
    return _history(series, "close", period, rsi_series)


def sma_history(series: TimeSeries, period: int = 50) -> List[IndicatorPoint]:
    return _history(series, "close", period, sma_series)


def ema_history(series: TimeSeries, period: int = 20) -> List[IndicatorPoint]:
    return _history(series, "close", period, ema_series)


def average_volume_history(
    series: TimeSeries, period: int = 20
) -> List[IndicatorPoint]:
    return _history(series, "volume", period, sma_series)


__all__ = [
    "LOOKBACK_MULTIPLIERS",
    "required_data_points",
    "sma",
    "ema",
    "rsi",
    "average_volume",
    "sma_series",
    "ema_series",
    "rsi_series",
    "closing_prices",
    "volumes",
    "rsi_history",
    "sma_history",
    "ema_history",
    "average_volume_history",
]
