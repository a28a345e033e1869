"""Valuation resolver: base-currency amounts to USD.

Stablecoin bases resolve 1:1 without a network call. SOL/WSOL walk an ordered
source chain; the first finite positive price wins and its source name is
stamped on the result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from smart_wallet_tracker.valuation.cache import InMemoryPriceCache, PriceCache, minute_bucket
from smart_wallet_tracker.valuation.sources import PriceSource, PriceSourceError

logger = logging.getLogger(__name__)

STABLE_SYMBOLS = frozenset({"USDC", "USDT", "USDH", "USDL", "UXD"})
SOL_SYMBOLS = frozenset({"SOL", "WSOL"})


class ValuationError(Exception):
    """Base exception for valuation failures."""


class ValuationUnavailableError(ValuationError):
    """Raised when every price source failed; the caller should retry later."""


class UnsupportedBaseTokenError(ValuationError):
    """Raised for base tokens the resolver has no price chain for."""


@dataclass(frozen=True)
class Valuation:
    """USD valuation of a trade with provenance."""

    amount_base_usd: Decimal
    price_usd_per_token: Decimal
    base_usd_price: Decimal
    source: str
    # Start of the minute the base price was resolved for.
    timestamp: datetime


class ValuationResolver:
    """Resolves base-currency amounts to USD through a fallback chain."""

    def __init__(
        self,
        sources: list[PriceSource],
        *,
        cache: PriceCache | None = None,
        source_timeout_seconds: float = 3.0,
    ) -> None:
        self._sources = list(sources)
        self._cache: PriceCache = cache or InMemoryPriceCache()
        self._source_timeout = source_timeout_seconds

    @property
    def source_names(self) -> list[str]:
        return [s.name for s in self._sources]

    async def valuate(
        self,
        base_token: str,
        amount_base_raw: Decimal,
        amount_token: Decimal,
        price_base_per_token_raw: Decimal,
        timestamp: datetime,
    ) -> Valuation:
        """Value a trade's base leg in USD at its own timestamp.

        Raises:
            UnsupportedBaseTokenError: If the base token has no price chain.
            ValuationUnavailableError: If every SOL price source failed.
        """
        symbol = base_token.upper()
        if symbol in STABLE_SYMBOLS:
            base_price, source = Decimal(1), "stable"
        elif symbol in SOL_SYMBOLS:
            base_price, source = await self.resolve_sol_usd(timestamp)
        else:
            raise UnsupportedBaseTokenError(f"No price chain for base token {base_token!r}")

        amount_base_usd = amount_base_raw * base_price
        if amount_token > 0:
            price_usd_per_token = amount_base_usd / amount_token
        else:
            price_usd_per_token = price_base_per_token_raw * base_price
        return Valuation(
            amount_base_usd=amount_base_usd,
            price_usd_per_token=price_usd_per_token,
            base_usd_price=base_price,
            source=source,
            timestamp=datetime.fromtimestamp(minute_bucket(timestamp), tz=UTC),
        )

    async def resolve_sol_usd(self, timestamp: datetime) -> tuple[Decimal, str]:
        """Walk the source chain for SOL/USD at ``timestamp``."""
        minute = minute_bucket(timestamp)
        failures: list[str] = []
        for source in self._sources:
            cached = await self._cache.get(source.name, minute)
            if cached is not None:
                return cached, source.name
            try:
                price = await asyncio.wait_for(source.fetch_sol_usd(timestamp), timeout=self._source_timeout)
            except TimeoutError:
                failures.append(f"{source.name}: timeout")
                logger.debug("Price source %s timed out", source.name)
                continue
            except PriceSourceError as e:
                failures.append(str(e))
                logger.debug("Price source %s failed: %s", source.name, e)
                continue
            await self._cache.set(source.name, minute, price)
            if failures:
                logger.info("SOL/USD resolved via %s after %d failures", source.name, len(failures))
            return price, source.name

        raise ValuationUnavailableError(
            f"All SOL/USD sources failed at {timestamp.isoformat()}: " + "; ".join(failures)
        )

    async def aclose(self) -> None:
        for source in self._sources:
            await source.aclose()
