"""
Liquidation Sentinel Core: Price Cache

Short-TTL cache over the keeper price API (``/prices/tickers``). Prices are
per token base unit in 1e30 scale, the format the margin protocol's Reader
expects, with a min/max band.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.exceptions import TransientRpcError
from core.models import USD_SCALE, PriceTuple

logger = logging.getLogger(__name__)

PRICE_DECIMALS = 30


def parse_price(value: Any) -> int:
    """
    Parse an API price into a 30-decimal integer.

    Integer strings are already scaled; decimal strings ("1.2345") are scaled
    up by padding the fraction to 30 digits.
    """
    text = str(value).strip()
    if not text:
        raise ValueError("empty price")
    if "." not in text:
        return int(text)
    whole, fraction = text.split(".", 1)
    fraction = (fraction + "0" * PRICE_DECIMALS)[:PRICE_DECIMALS]
    return int(whole or "0") * 10 ** PRICE_DECIMALS + int(fraction or "0")


class PriceCache:
    """
    Refreshed at most once per TTL; callers refresh once per cycle.

    A failed refresh serves the previous prices (flagged ``stale``) while they
    are younger than ``max_stale_seconds``; past that it raises.
    """

    def __init__(self, tickers_url: str, ttl_seconds: float = 10.0, timeout_seconds: float = 10.0,
                 max_stale_seconds: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.tickers_url = tickers_url
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.max_stale_seconds = max_stale_seconds
        self.stale = False
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._prices: Dict[str, PriceTuple] = {}
        self._symbols: Dict[str, str] = {}
        self._fetched_at: Optional[float] = None

    @property
    def prices(self) -> Dict[str, PriceTuple]:
        return dict(self._prices)

    def is_fresh(self) -> bool:
        return (
            self._fetched_at is not None
            and bool(self._prices)
            and (self._clock() - self._fetched_at) < self.ttl_seconds
        )

    def age(self) -> Optional[float]:
        if self._fetched_at is None:
            return None
        return self._clock() - self._fetched_at

    def get(self, token: str) -> Optional[PriceTuple]:
        return self._prices.get(token.lower())

    def usd_price(self, token: str, decimals: int) -> Decimal:
        """Mid price in USD per whole token."""
        price = self.get(token)
        if price is None:
            raise KeyError(f"no price for token {token}")
        return Decimal(price.mid * 10 ** decimals) / Decimal(USD_SCALE)

    async def refresh(self, force: bool = False) -> Dict[str, PriceTuple]:
        if not force and self.is_fresh():
            return self.prices

        try:
            prices = self._parse(await self._fetch())
        except TransientRpcError as e:
            age = self.age()
            if not self._prices or age is None or age > self.max_stale_seconds:
                raise
            self.stale = True
            logger.warning(f"Price refresh failed, serving prices from {age:.1f}s ago: {e}")
            return self.prices

        self._prices = prices
        self._fetched_at = self._clock()
        self.stale = False
        logger.debug(f"Refreshed {len(prices)} token prices")
        return self.prices

    def _parse(self, tickers: List[Dict[str, Any]]) -> Dict[str, PriceTuple]:
        prices: Dict[str, PriceTuple] = {}
        for ticker in tickers:
            try:
                token = str(ticker["tokenAddress"]).lower()
                prices[token] = PriceTuple(
                    min=parse_price(ticker["minPrice"]),
                    max=parse_price(ticker["maxPrice"]),
                )
                if ticker.get("tokenSymbol"):
                    self._symbols[token] = ticker["tokenSymbol"]
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed ticker {ticker!r}: {e}")

        if not prices:
            raise TransientRpcError("price feed returned no usable tickers")
        return prices

    async def _fetch(self) -> List[Dict[str, Any]]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with self._session.get(self.tickers_url, timeout=timeout) as response:
                if response.status >= 400:
                    raise TransientRpcError(f"price feed HTTP {response.status}")
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRpcError("price feed", e) from e

        if not isinstance(payload, list):
            raise TransientRpcError("price feed returned unexpected payload")
        return payload

    def symbol(self, token: str) -> Optional[str]:
        return self._symbols.get(token.lower())

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


__all__ = ["PriceCache", "parse_price"]
