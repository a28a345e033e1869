"""HTTP price sources for SOL/USD.

Each source answers "what was SOL/USD at this timestamp" (or, for the ticker
fallback, "right now") and wraps every transport or decoding problem in
:class:`PriceSourceError` so the resolver can fall through to the next one.
"""

from __future__ import annotations

import functools
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from smart_wallet_tracker.ingestor.models import SOL_MINT

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 3.0
BINANCE_SYMBOL = "SOLUSDT"
COINGECKO_COIN_ID = "solana"
# Half-width of the CoinGecko range query around the trade timestamp.
COINGECKO_RANGE_SECONDS = 600


class PriceSourceError(Exception):
    """Raised when a price source cannot produce a usable price."""


def _positive_price(value: Any, *, source: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PriceSourceError(f"{source}: unparseable price {value!r}") from e
    if not price.is_finite() or price <= 0:
        raise PriceSourceError(f"{source}: non-positive price {value!r}")
    return price


def _decodes_response(
    fetch: Callable[[PriceSource, datetime], Awaitable[Decimal]],
) -> Callable[[PriceSource, datetime], Awaitable[Decimal]]:
    """Report an unexpected response shape as :class:`PriceSourceError`."""

    @functools.wraps(fetch)
    async def wrapper(self: PriceSource, timestamp: datetime) -> Decimal:
        try:
            return await fetch(self, timestamp)
        except (AttributeError, LookupError, TypeError, ValueError) as e:
            raise PriceSourceError(f"{self.name}: unexpected response: {type(e).__name__}: {e}") from e

    return wrapper


class PriceSource(ABC):
    """Base class for an httpx-backed price source."""

    name: str = "source"
    historical: bool = True

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        try:
            resp = await self._get_client().get(path, params=params, timeout=self._timeout)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise PriceSourceError(f"{self.name}: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise PriceSourceError(f"{self.name}: invalid JSON: {e}") from e

    @abstractmethod
    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        """Return the SOL/USD price at (or nearest to) ``timestamp``."""

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class BinanceKlinesSource(PriceSource):
    """1-minute kline close for the minute containing the trade."""

    name = "binance"

    @_decodes_response
    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        minute_ms = int(timestamp.timestamp()) // 60 * 60 * 1000
        data = await self._get_json(
            "/api/v3/klines",
            {"symbol": BINANCE_SYMBOL, "interval": "1m", "limit": 1, "endTime": minute_ms + 59_999},
        )
        if not isinstance(data, list) or not data or not isinstance(data[0], list) or len(data[0]) < 5:
            raise PriceSourceError(f"{self.name}: no kline for {timestamp.isoformat()}")
        # Kline array: [open_time, open, high, low, close, ...]
        return _positive_price(data[0][4], source=self.name)


class JupiterPriceSource(PriceSource):
    """Aggregator quote for the SOL mint."""

    name = "jupiter"

    @_decodes_response
    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        data = await self._get_json("/price/v3", {"ids": SOL_MINT})
        if not isinstance(data, dict):
            raise PriceSourceError(f"{self.name}: unexpected response type")
        entry = data.get(SOL_MINT)
        nested = data.get("data")
        # v2 responses nest under "data"
        if entry is None and isinstance(nested, dict):
            entry = nested.get(SOL_MINT)
        if not isinstance(entry, dict):
            raise PriceSourceError(f"{self.name}: SOL mint missing from response")
        return _positive_price(entry.get("usdPrice", entry.get("price")), source=self.name)


class CoinGeckoRangeSource(PriceSource):
    """Nearest point of ``market_chart/range`` around the trade timestamp."""

    name = "coingecko"

    @_decodes_response
    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        ts = int(timestamp.timestamp())
        data = await self._get_json(
            f"/api/v3/coins/{COINGECKO_COIN_ID}/market_chart/range",
            {"vs_currency": "usd", "from": ts - COINGECKO_RANGE_SECONDS, "to": ts + COINGECKO_RANGE_SECONDS},
        )
        points = data.get("prices") if isinstance(data, dict) else None
        if not points:
            raise PriceSourceError(f"{self.name}: empty range around {timestamp.isoformat()}")
        target_ms = ts * 1000
        valid = [p for p in points if isinstance(p, list) and len(p) >= 2 and isinstance(p[0], (int, float))]
        if not valid:
            raise PriceSourceError(f"{self.name}: malformed price points")
        nearest = min(valid, key=lambda p: abs(p[0] - target_ms))
        return _positive_price(nearest[1], source=self.name)


class BinanceTickerSource(PriceSource):
    """Current spot ticker; only meaningful when history is unavailable."""

    name = "binance_ticker"
    historical = False

    @_decodes_response
    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        data = await self._get_json("/api/v3/ticker/price", {"symbol": BINANCE_SYMBOL})
        if not isinstance(data, dict) or "price" not in data:
            raise PriceSourceError(f"{self.name}: ticker response has no price")
        return _positive_price(data["price"], source=self.name)


def default_sources(
    *,
    binance_base_url: str,
    jupiter_base_url: str,
    coingecko_base_url: str,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> list[PriceSource]:
    """Ordered SOL/USD source chain: history first, live ticker last."""
    return [
        BinanceKlinesSource(binance_base_url, timeout=timeout),
        JupiterPriceSource(jupiter_base_url, timeout=timeout),
        CoinGeckoRangeSource(coingecko_base_url, timeout=timeout),
        BinanceTickerSource(binance_base_url, timeout=timeout),
    ]
