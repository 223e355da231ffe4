from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Bar(BaseModel):
    """Single daily bar as delivered by the market data provider."""

    model_config = ConfigDict(frozen=True)

    datetime: str  # YYYY-MM-DD
    open: float
    high: float
    low: float
    close: float
    volume: float


class TimeSeries(BaseModel):
    """Daily history for one symbol.

    ``values`` is newest-first, which is the order the provider returns.
    Indicator math works on the reversed (oldest-first) view.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    currency: str = "USD"
    exchange: str = ""
    values: List[Bar] = Field(default_factory=list)

    def oldest_first(self) -> List[Bar]:
        return list(reversed(self.values))


class StockQuote(BaseModel):
    symbol: str
    name: str = ""
    exchange: str = ""
    currency: str = "USD"
    price: float
    open: float
    high: float
    low: float
    previous_close: float
    volume: float
    timestamp: float
    change: float = 0.0
    percent_change: float = 0.0


class IndicatorPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    datetime: str
    value: Optional[float] = None


__all__ = ["Bar", "TimeSeries", "StockQuote", "IndicatorPoint"]
