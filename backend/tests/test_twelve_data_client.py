from __future__ import annotations

from datetime import date
from typing import Callable

import httpx
import pytest

from stockrules.clients.twelve_data import (
    DailyRateLimiter,
    InvalidApiKeyError,
    MarketDataError,
    RateLimitExceededError,
    SymbolNotFoundError,
    TwelveDataClient,
)
from stockrules.core.config import Settings

_TIME_SERIES = {
    "meta": {"symbol": "AAPL", "currency": "USD", "exchange": "NASDAQ"},
    "values": [
        {
            "datetime": "2024-01-03",
            "open": "101.0",
            "high": "103.5",
            "low": "100.0",
            "close": "102.25",
            "volume": "1200",
        },
        {
            "datetime": "2024-01-02",
            "open": "99.0",
            "high": "101.0",
            "low": "98.5",
            "close": "100.5",
            "volume": "1100",
        },
    ],
    "status": "ok",
}


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    limiter: DailyRateLimiter | None = None,
    sleeps: list[float] | None = None,
    api_key: str | None = "test-key",
) -> TwelveDataClient:
    recorded = sleeps if sleeps is not None else []
    return TwelveDataClient(
        api_key=api_key,
        base_url="https://api.example.test",
        max_retries=3,
        retry_delay_seconds=1.0,
        rate_limiter=limiter or DailyRateLimiter(800),
        transport=httpx.MockTransport(handler),
        sleep=recorded.append,
    )


def test_fetch_historical_data_parses_bars() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_TIME_SERIES)

    client = _client(handler)
    series = client.fetch_historical_data("aapl", limit=10000, start_date="2024-01-01")
    client.close()

    assert series.symbol == "AAPL"
    assert series.exchange == "NASDAQ"
    assert [b.datetime for b in series.values] == ["2024-01-03", "2024-01-02"]
    assert series.values[0].close == 102.25
    assert series.values[0].volume == 1200.0

    params = seen[0].url.params
    assert seen[0].url.path == "/time_series"
    assert params["symbol"] == "AAPL"
    assert params["interval"] == "1day"
    assert params["outputsize"] == "5000"
    assert params["start_date"] == "2024-01-01"
    assert params["apikey"] == "test-key"


def test_fetch_quote() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/quote"
        return httpx.Response(
            200,
            json={
                "symbol": "AAPL",
                "name": "Apple Inc",
                "exchange": "NASDAQ",
                "close": "150.5",
                "open": "149",
                "high": "151",
                "low": "148",
                "previous_close": "148.5",
                "volume": "1000000",
                "timestamp": 1704300000,
                "change": "2.0",
                "percent_change": "1.35",
            },
        )

    quote = _client(handler).fetch_quote("AAPL")

    assert quote.price == 150.5
    assert quote.previous_close == 148.5
    assert quote.percent_change == pytest.approx(1.35)


def test_transient_errors_are_retried_with_linear_backoff() -> None:
    calls = {"n": 0}
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(500, text="upstream unavailable")
        return httpx.Response(200, json=_TIME_SERIES)

    series = _client(handler, sleeps=sleeps).fetch_historical_data("AAPL")

    assert len(series.values) == 2
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_gives_up_after_max_retries() -> None:
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"code": 429, "message": "rate limit reached", "status": "error"})

    with pytest.raises(RateLimitExceededError):
        _client(handler, sleeps=sleeps).fetch_historical_data("AAPL")
    assert sleeps == [1.0, 2.0]


def test_unknown_symbol_is_not_retried() -> None:
    calls = {"n": 0}
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(
            200,
            json={"code": 404, "message": "Symbol not found: ZZZZ", "status": "error"},
        )

    with pytest.raises(SymbolNotFoundError):
        _client(handler, sleeps=sleeps).fetch_historical_data("ZZZZ")
    assert calls["n"] == 1
    assert sleeps == []


def test_invalid_api_key_is_not_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(401, json={"code": 401, "message": "Invalid API key", "status": "error"})

    with pytest.raises(InvalidApiKeyError):
        _client(handler).fetch_quote("AAPL")
    assert calls["n"] == 1


def test_missing_api_key_fails_before_any_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("unexpected request")

    with pytest.raises(InvalidApiKeyError):
        _client(handler, api_key=None).fetch_quote("AAPL")


def test_transport_errors_become_market_data_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(MarketDataError) as exc_info:
        _client(handler).fetch_quote("AAPL")
    assert "connection refused" in str(exc_info.value)


def test_local_daily_limit_blocks_requests() -> None:
    calls = {"n": 0}
    limiter = DailyRateLimiter(1)

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, json=_TIME_SERIES)

    client = _client(handler, limiter=limiter)
    client.fetch_historical_data("AAPL")
    assert limiter.remaining() == 0

    with pytest.raises(RateLimitExceededError):
        client.fetch_historical_data("AAPL")
    assert calls["n"] == 1


def test_rate_limiter_resets_each_utc_day() -> None:
    today = {"d": date(2024, 1, 1)}
    limiter = DailyRateLimiter(2, today=lambda: today["d"])

    limiter.check()
    limiter.record()
    limiter.record()
    assert limiter.remaining() == 0
    with pytest.raises(RateLimitExceededError):
        limiter.check()

    today["d"] = date(2024, 1, 2)
    assert limiter.remaining() == 2
    assert limiter.calls_today == 0
    limiter.check()


def test_symbol_exists() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["symbol"] == "AAPL":
            return httpx.Response(200, json={"symbol": "AAPL", "close": "1"})
        return httpx.Response(400, json={"code": 400, "message": "Invalid symbol", "status": "error"})

    client = _client(handler)
    assert client.symbol_exists("AAPL") is True
    assert client.symbol_exists("ZZZZ") is False


def test_from_settings() -> None:
    settings = Settings(
        twelve_data_api_key="abc",
        twelve_data_base_url="https://api.example.test/",
        twelve_data_daily_limit=5,
        twelve_data_max_retries=2,
    )

    client = TwelveDataClient.from_settings(settings)

    assert client.api_key == "abc"
    assert client.base_url == "https://api.example.test"
    assert client.max_retries == 2
    assert client.rate_limiter.daily_limit == 5
    client.close()
