"""Valuation layer - Base currency to USD resolution."""

from smart_wallet_tracker.valuation.cache import (
    InMemoryPriceCache,
    PriceCache,
    RedisPriceCache,
)
from smart_wallet_tracker.valuation.resolver import (
    STABLE_SYMBOLS,
    UnsupportedBaseTokenError,
    Valuation,
    ValuationError,
    ValuationResolver,
    ValuationUnavailableError,
)
from smart_wallet_tracker.valuation.sources import (
    BinanceKlinesSource,
    BinanceTickerSource,
    CoinGeckoRangeSource,
    JupiterPriceSource,
    PriceSource,
    PriceSourceError,
    default_sources,
)

__all__ = [
    "BinanceKlinesSource",
    "BinanceTickerSource",
    "CoinGeckoRangeSource",
    "InMemoryPriceCache",
    "JupiterPriceSource",
    "PriceCache",
    "PriceSource",
    "PriceSourceError",
    "RedisPriceCache",
    "STABLE_SYMBOLS",
    "UnsupportedBaseTokenError",
    "Valuation",
    "ValuationError",
    "ValuationResolver",
    "ValuationUnavailableError",
    "default_sources",
]
