from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, date, datetime
from typing import Any, Callable, Dict, Optional

import httpx

from stockrules.core.config import Settings, get_settings
from stockrules.schemas.market_data import Bar, StockQuote, TimeSeries

logger = logging.getLogger(__name__)

MAX_OUTPUT_SIZE = 5000


class MarketDataError(RuntimeError):
    """Raised when market data cannot be fetched from the provider."""

    retryable = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class RateLimitExceededError(MarketDataError):
    """Raised when the daily request budget is spent.

    The local daily counter raises a non-retryable instance; a 429 from the
    provider is retried.
    """


class SymbolNotFoundError(MarketDataError):
    """Raised when the provider does not know the requested symbol."""

    retryable = False


class InvalidApiKeyError(MarketDataError):
    retryable = False


def _utc_today() -> date:
    return datetime.now(UTC).date()


class DailyRateLimiter:
    """Per-UTC-day request counter shared by one client's callers.

    ``check`` runs before a request and ``record`` after the provider
    answered, so requests that never reached the provider are not counted.
    """

    def __init__(
        self, daily_limit: int, *, today: Callable[[], date] = _utc_today
    ) -> None:
        self.daily_limit = daily_limit
        self._today = today
        self._lock = threading.Lock()
        self._day = today()
        self._calls = 0

    def _roll(self) -> None:
        today = self._today()
        if today != self._day:
            self._day = today
            self._calls = 0

    def check(self) -> None:
        with self._lock:
            self._roll()
            if self._calls >= self.daily_limit:
                raise RateLimitExceededError(
                    f"Rate limit exceeded. {self._calls}/{self.daily_limit} calls used today.",
                    retryable=False,
                )

    def record(self) -> None:
        with self._lock:
            self._roll()
            self._calls += 1

    @property
    def calls_today(self) -> int:
        with self._lock:
            self._roll()
            return self._calls

    def remaining(self) -> int:
        with self._lock:
            self._roll()
            return max(0, self.daily_limit - self._calls)


def _to_float(value: Any) -> float:
    # Provider sends numbers as strings; unparseable fields become NaN and are
    # dropped downstream.
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


class TwelveDataClient:
    """Daily bars and quotes from the Twelve Data REST API."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.twelvedata.com",
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        timeout_seconds: float = 30,
        rate_limiter: DailyRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self.rate_limiter = rate_limiter or DailyRateLimiter(800)
        self._sleep = sleep
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, **overrides: Any
    ) -> "TwelveDataClient":
        s = settings or get_settings()
        kwargs: Dict[str, Any] = {
            "api_key": s.twelve_data_api_key,
            "base_url": s.twelve_data_base_url,
            "max_retries": s.twelve_data_max_retries,
            "retry_delay_seconds": s.twelve_data_retry_delay_seconds,
            "timeout_seconds": s.twelve_data_timeout_seconds,
            "rate_limiter": DailyRateLimiter(s.twelve_data_daily_limit),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _safe_json(resp: httpx.Response) -> Optional[Any]:
        try:
            return resp.json()
        except ValueError:
            return None

    @staticmethod
    def _truncate(text: str, limit: int = 300) -> str:
        t = (text or "").strip()
        if len(t) <= limit:
            return t
        return f"{t[:limit]}..."

    def _error_for(self, status_code: int, data: Any, text: str) -> MarketDataError:
        message = ""
        code: Any = status_code
        if isinstance(data, dict):
            message = str(data.get("message") or "")
            code = data.get("code") or status_code
        message = message or self._truncate(text) or "Unknown error"
        full = f"Twelve Data API error: {message} ({code})"

        lowered = message.lower()
        if "api key" in lowered or code == 401:
            return InvalidApiKeyError(full)
        if code == 404 or "symbol not found" in lowered or "invalid symbol" in lowered:
            return SymbolNotFoundError(full)
        if code == 429 or "rate limit" in lowered:
            return RateLimitExceededError("Rate limit exceeded by API")
        return MarketDataError(full)

    def _request_once(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        self.rate_limiter.check()
        try:
            resp = self._client.get(
                f"{self.base_url}{path}",
                params={**params, "apikey": self.api_key or ""},
            )
        except httpx.HTTPError as exc:
            raise MarketDataError(f"Twelve Data request failed: {exc}") from exc
        self.rate_limiter.record()

        data = self._safe_json(resp)
        if resp.status_code >= 400 or (
            isinstance(data, dict) and data.get("status") == "error"
        ):
            raise self._error_for(resp.status_code, data, resp.text)
        if not isinstance(data, dict):
            raise MarketDataError("Invalid Twelve Data response (expected JSON object).")
        return data

    def _request(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        if not self.api_key:
            raise InvalidApiKeyError("Twelve Data API key is not configured")

        last_error: MarketDataError | None = None
        for attempt in range(1, self.max_retries + 1):
            logger.debug(
                "Twelve Data request",
                extra={"extra": {"path": path, "attempt": attempt, **params}},
            )
            try:
                return self._request_once(path, params)
            except MarketDataError as exc:
                if not exc.retryable:
                    raise
                last_error = exc

            logger.warning(
                "Twelve Data request failed",
                extra={
                    "extra": {
                        "path": path,
                        "attempt": attempt,
                        "max_retries": self.max_retries,
                        "error": str(last_error),
                    }
                },
            )
            if attempt < self.max_retries:
                self._sleep(self.retry_delay_seconds * attempt)

        raise last_error or MarketDataError("All Twelve Data request attempts failed")

    def fetch_historical_data(
        self,
        symbol: str,
        *,
        limit: int = 100,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> TimeSeries:
        """Daily bars for ``symbol``, newest first."""

        sym = symbol.strip().upper()
        params = {
            "symbol": sym,
            "interval": "1day",
            "outputsize": str(max(1, min(limit, MAX_OUTPUT_SIZE))),
        }
        if start_date:
            params["start_date"] = start_date
        if end_date:
            params["end_date"] = end_date

        data = self._request("/time_series", params)
        meta = data.get("meta") or {}
        bars = [
            Bar(
                datetime=str(point.get("datetime") or ""),
                open=_to_float(point.get("open")),
                high=_to_float(point.get("high")),
                low=_to_float(point.get("low")),
                close=_to_float(point.get("close")),
                volume=_to_float(point.get("volume")),
            )
            for point in data.get("values") or []
            if isinstance(point, dict)
        ]
        return TimeSeries(
            symbol=str(meta.get("symbol") or sym),
            currency=str(meta.get("currency") or "USD"),
            exchange=str(meta.get("exchange") or ""),
            values=bars,
        )

    def fetch_quote(self, symbol: str) -> StockQuote:
        sym = symbol.strip().upper()
        data = self._request("/quote", {"symbol": sym})
        return StockQuote(
            symbol=str(data.get("symbol") or sym),
            name=str(data.get("name") or ""),
            exchange=str(data.get("exchange") or ""),
            currency=str(data.get("currency") or "USD"),
            price=_to_float(data.get("close")),
            open=_to_float(data.get("open")),
            high=_to_float(data.get("high")),
            low=_to_float(data.get("low")),
            previous_close=_to_float(data.get("previous_close")),
            volume=_to_float(data.get("volume")),
            timestamp=_to_float(data.get("timestamp") or time.time()),
            change=_to_float(data.get("change") or 0),
            percent_change=_to_float(data.get("percent_change") or 0),
        )

    def symbol_exists(self, symbol: str) -> bool:
        """True when the provider returns a quote; other failures propagate."""

        try:
            self.fetch_quote(symbol)
        except SymbolNotFoundError:
            return False
        return True


__all__ = [
    "MAX_OUTPUT_SIZE",
    "DailyRateLimiter",
    "InvalidApiKeyError",
    "MarketDataError",
    "RateLimitExceededError",
    "SymbolNotFoundError",
    "TwelveDataClient",
]
