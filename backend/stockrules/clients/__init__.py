from .twelve_data import (
    DailyRateLimiter,
    InvalidApiKeyError,
    MarketDataError,
    RateLimitExceededError,
    SymbolNotFoundError,
    TwelveDataClient,
)

__all__ = [
    "TwelveDataClient",
    "DailyRateLimiter",
    "MarketDataError",
    "RateLimitExceededError",
    "SymbolNotFoundError",
    "InvalidApiKeyError",
]
