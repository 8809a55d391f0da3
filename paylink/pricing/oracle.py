"""
USD price oracle with a per-token TTL cache and stale/fallback policy

Lookup order on ``get_usd_price``:
1. fresh cache entry (age < TTL) → returned, no network
2. fetch from the price source (bounded by a timeout) → cache refreshed
3. fetch failed/timed out → last cached value, even if expired, marked stale
4. nothing ever cached → fixed fallback price from FeeConfig, marked stale

Price failures never escape the oracle unless a token has neither a cached
value nor a configured fallback.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

import structlog

from paylink.errors import PriceUnavailable
from paylink.fees.config import FeeConfigProvider

logger = structlog.get_logger()

PriceSource = Callable[[str], Awaitable[Decimal]]


@dataclass(frozen=True)
class PriceReading:
    """A USD price and when it was obtained"""
    price: Decimal
    fetched_at: float
    stale: bool = False

    @property
    def as_of(self) -> datetime:
        return datetime.fromtimestamp(self.fetched_at, tz=timezone.utc)


class PriceOracle:
    """Process-wide price cache shared by concurrent quote operations"""

    def __init__(
        self,
        source: PriceSource,
        config: FeeConfigProvider,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self._source = source
        self._config = config
        self._timeout = timeout_seconds
        self._clock = clock
        self._cache: Dict[str, PriceReading] = {}

    @property
    def ttl_seconds(self) -> int:
        return self._config.current().price_cache_ttl_seconds

    def _is_fresh(self, reading: PriceReading) -> bool:
        return (self._clock() - reading.fetched_at) < self.ttl_seconds

    def cached(self, token: str) -> Optional[PriceReading]:
        """Most recent cached reading without touching the network"""
        reading = self._cache.get(token.upper())
        if reading is None:
            return None
        if self._is_fresh(reading):
            return reading
        return PriceReading(price=reading.price, fetched_at=reading.fetched_at, stale=True)

    def reference_price(self, token: str) -> PriceReading:
        """Cached reading, or the configured fallback marked stale"""
        reading = self.cached(token)
        if reading is not None:
            return reading
        return self._fallback(token)

    async def get_usd_price(self, token: str) -> PriceReading:
        key = token.upper()
        reading = self._cache.get(key)
        if reading is not None and self._is_fresh(reading):
            return reading

        try:
            price = await self._fetch(key)
        except PriceUnavailable as e:
            if reading is not None:
                logger.warning(
                    "price_stale_cache_used",
                    token=key,
                    price=str(reading.price),
                    age_seconds=round(self._clock() - reading.fetched_at, 1),
                    error=e.message,
                )
                return PriceReading(price=reading.price, fetched_at=reading.fetched_at, stale=True)
            return self._fallback(key)

        fresh = PriceReading(price=price, fetched_at=self._clock())
        self._cache = {**self._cache, key: fresh}
        logger.debug("price_fetched", token=key, price=str(price))
        return fresh

    async def _fetch(self, token: str) -> Decimal:
        try:
            price = await asyncio.wait_for(self._source(token), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise PriceUnavailable(f"Price fetch for {token} timed out") from e
        except PriceUnavailable:
            raise
        except Exception as e:
            raise PriceUnavailable(f"Price fetch for {token} failed: {e}") from e

        price = Decimal(str(price))
        if not price.is_finite() or price <= 0:
            raise PriceUnavailable(f"Price source returned an invalid price for {token}: {price}")
        return price

    def _fallback(self, token: str) -> PriceReading:
        price = self._config.current().fallback_price_for(token)
        if price is None:
            raise PriceUnavailable(
                f"No price available for {token}",
                details={"token": token},
            )
        logger.warning("price_fallback_used", token=token.upper(), price=str(price))
        return PriceReading(price=price, fetched_at=self._clock(), stale=True)

    def cache_info(self) -> Dict[str, dict]:
        """Diagnostics snapshot of the cache"""
        now = self._clock()
        return {
            token: {
                "price": str(reading.price),
                "as_of": reading.as_of.isoformat(),
                "age_seconds": round(now - reading.fetched_at, 1),
                "stale": not self._is_fresh(reading),
            }
            for token, reading in self._cache.items()
        }
