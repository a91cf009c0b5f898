"""
Price oracle: where the settlement core gets option quotes.

Quotes are treated as untrusted and possibly stale. The core never invents
prices; whatever implementation is plugged in decides what the mark is.
"""

from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Protocol
import json
import logging

from redis.asyncio import Redis

from tradearena.core.config import settings

logger = logging.getLogger(__name__)


class PriceOracle(Protocol):
    async def get_price(self, symbol: str) -> Optional[int]:
        """Latest price in paise, or None when no quote is available"""
        ...


class StaticPriceOracle:
    """Fixed quote table. Used as the fallback and for deterministic tests."""

    def __init__(self, prices: Optional[Mapping[str, int]] = None):
        self.prices: dict[str, int] = {k.upper(): v for k, v in (prices or {}).items()}

    def set_price(self, symbol: str, price: int) -> None:
        self.prices[symbol.upper()] = price

    async def get_price(self, symbol: str) -> Optional[int]:
        return self.prices.get(symbol.upper())


class RedisPriceOracle:
    """
    Reads quotes cached by the market data feed.

    Key layout: price:{source}:{SYMBOL} -> JSON {"price": <rupees>, ...}
    Sources are tried in configured order.
    """

    def __init__(self, redis: Redis, sources: Optional[list[str]] = None, fallback: Optional[PriceOracle] = None):
        self.redis = redis
        self.sources = sources or settings.PRICE_SOURCES
        self.fallback = fallback

    async def get_price(self, symbol: str) -> Optional[int]:
        for source in self.sources:
            key = f"{settings.PRICE_KEY_PREFIX}:{source}:{symbol.upper()}"
            data = await self.redis.get(key)
            if not data:
                continue
            try:
                parsed = json.loads(data)
                price = parsed.get("price") or parsed.get("p")
                if price is None:
                    continue
                return to_paise(price)
            except (ValueError, AttributeError, InvalidOperation) as e:
                logger.warning(f"Invalid price format in Redis for {key}: {e}")
                continue

        if self.fallback:
            return await self.fallback.get_price(symbol)
        logger.warning(f"Price unavailable for {symbol}")
        return None


def to_paise(rupees) -> int:
    """Quoted rupee price -> integer paise (truncated)"""
    return int(Decimal(str(rupees)) * 100)
