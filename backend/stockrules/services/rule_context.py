from __future__ import annotations

import logging
from math import isfinite
from typing import Any, Callable, Dict, Optional, Tuple

from stockrules.schemas.market_data import Bar, TimeSeries
from stockrules.services import indicators
from stockrules.services.rule_errors import ContextError

logger = logging.getLogger(__name__)

IndicatorFn = Callable[[int], Optional[float]]

_BAR_FIELDS = ("close", "open", "high", "low", "volume")


class EvaluationContext:
    """Read-only view of one symbol's history for a single evaluation.

    Scalar properties come from the most recent bar; ``price`` aliases
    ``close``. Indicator functions are bound to the full series.
    """

    __slots__ = ("symbol", "datetime", "_properties", "_closes", "_volumes", "_functions")

    def __init__(
        self,
        *,
        symbol: str,
        current: Bar,
        closes: Tuple[float, ...],
        volumes: Tuple[float, ...],
    ) -> None:
        self.symbol = symbol
        self.datetime = current.datetime
        self._properties: Dict[str, float] = {
            "close": float(current.close),
            "open": float(current.open),
            "high": float(current.high),
            "low": float(current.low),
            "volume": float(current.volume),
            "price": float(current.close),
        }
        self._closes = closes
        self._volumes = volumes
        self._functions: Dict[str, IndicatorFn] = {
            "RSI": self._bind("RSI", indicators.rsi, closes),
            "SMA": self._bind("SMA", indicators.sma, closes),
            "EMA": self._bind("EMA", indicators.ema, closes),
            "avgVolume": self._bind("avgVolume", indicators.average_volume, volumes),
        }

    @staticmethod
    def _bind(
        name: str,
        fn: Callable[[Tuple[float, ...], int], Optional[float]],
        values: Tuple[float, ...],
    ) -> IndicatorFn:
        def _call(period: int) -> Optional[float]:
            if isinstance(period, bool) or not isinstance(period, int) or period <= 0:
                logger.warning(
                    "Invalid %s period: %s",
                    name,
                    period,
                    extra={"extra": {"indicator": name, "period": period}},
                )
                return None
            return fn(values, period)

        return _call

    @property
    def close(self) -> float:
        return self._properties["close"]

    @property
    def open(self) -> float:
        return self._properties["open"]

    @property
    def high(self) -> float:
        return self._properties["high"]

    @property
    def low(self) -> float:
        return self._properties["low"]

    @property
    def volume(self) -> float:
        return self._properties["volume"]

    @property
    def price(self) -> float:
        return self._properties["price"]

    def property_value(self, name: str) -> Optional[float]:
        return self._properties.get(name)

    def function(self, name: str) -> Optional[IndicatorFn]:
        return self._functions.get(name)

    def RSI(self, period: int) -> Optional[float]:  # noqa: N802
        return self._functions["RSI"](period)

    def SMA(self, period: int) -> Optional[float]:  # noqa: N802
        return self._functions["SMA"](period)

    def EMA(self, period: int) -> Optional[float]:  # noqa: N802
        return self._functions["EMA"](period)

    def avgVolume(self, period: int) -> Optional[float]:  # noqa: N802
        return self._functions["avgVolume"](period)

    def summary(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "datetime": self.datetime,
            "price": self.price,
            "volume": self.volume,
            "open": self.open,
            "high": self.high,
            "low": self.low,
        }


def build_evaluation_context(series: TimeSeries) -> EvaluationContext:
    """Build the context for the newest bar of ``series``.

    ``series.values`` is newest-first. Raises ``ContextError`` when the
    series is empty or its newest bar has a non-finite price/volume field.
    """

    if not series.values:
        raise ContextError(
            "No historical data available", "Historical data is empty or undefined"
        )

    current = series.values[0]
    bad = [f for f in _BAR_FIELDS if not isfinite(float(getattr(current, f)))]
    if bad:
        raise ContextError(
            "Invalid data point",
            f"Data point is missing required numeric fields: {', '.join(bad)}",
        )

    return EvaluationContext(
        symbol=series.symbol,
        current=current,
        closes=tuple(indicators.closing_prices(series)),
        volumes=tuple(indicators.volumes(series)),
    )


__all__ = ["EvaluationContext", "IndicatorFn", "build_evaluation_context"]
