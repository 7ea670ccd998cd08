import asyncio
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger("settlement.currency")

MINOR = Decimal("0.01")


class UnsupportedCurrencyError(Exception):
    code = "unsupported_currency"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"No exchange rate for currency {currency}")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(MINOR)


class ExchangeRateFeed:
    """Keyless rate feed answering ``{"base": "EUR", "rates": {"USD": 1.08, ...}}``."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self.client = client
        self.timeout = timeout

    async def __call__(self) -> Dict[str, Decimal]:
        if self.client is not None:
            resp = await self.client.get(self.url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.url)
        resp.raise_for_status()
        data = resp.json()

        rates: Dict[str, Decimal] = {}
        for code, rate in data["rates"].items():
            rate = Decimal(str(rate))
            if rate > 0:
                rates[code.upper()] = Decimal(1) / rate
        return rates


class ExchangeRateCache:
    """Rates as settlement units per one unit of X, refreshed at most once per TTL."""

    def __init__(
        self,
        fetch_rates: Callable[[], Awaitable[Dict[str, Decimal]]],
        fallback: Dict[str, Decimal],
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
        retry_after_seconds: float = 60,
    ):
        self.fetch_rates = fetch_rates
        self.fallback = {k.upper(): Decimal(v) for k, v in fallback.items()}
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.retry_after_seconds = retry_after_seconds
        self._rates: Optional[Dict[str, Decimal]] = None
        self._fetched_at: Optional[float] = None
        self._retry_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return (
            self._rates is not None
            and self._fetched_at is not None
            and self.clock() - self._fetched_at < self.ttl_seconds
        )

    def _backing_off(self) -> bool:
        return self._retry_at is not None and self.clock() < self._retry_at

    def _stale_rates(self) -> Dict[str, Decimal]:
        return self._rates if self._rates is not None else self.fallback

    async def get_rates(self) -> Dict[str, Decimal]:
        if self._fresh():
            return self._rates
        if self._backing_off():
            return self._stale_rates()

        async with self._lock:
            # another caller may have refreshed or failed while we waited
            if self._fresh():
                return self._rates
            if self._backing_off():
                return self._stale_rates()
            try:
                rates = await self.fetch_rates()
            except Exception as e:
                self._retry_at = self.clock() + self.retry_after_seconds
                if self._rates is not None:
                    logger.error("[Currency] Rate refresh failed, serving last good rates: %s", e)
                    return self._rates
                logger.error("[Currency] Rate refresh failed, using fallback rates: %s", e)
                return self.fallback

            self._rates = rates
            self._fetched_at = self.clock()
            self._retry_at = None
            logger.info("[Currency] Exchange rates updated (%d currencies)", len(rates))
            return rates


class CurrencyNormalizer:
    def __init__(self, cache: ExchangeRateCache, settlement_currency: str = "EUR"):
        self.cache = cache
        self.settlement_currency = settlement_currency.upper()

    async def rate_for(self, currency: str) -> Decimal:
        cur = currency.upper()
        if cur == self.settlement_currency:
            return Decimal(1)
        rates = await self.cache.get_rates()
        rate = rates.get(cur)
        if rate is None:
            raise UnsupportedCurrencyError(cur)
        return rate

    async def normalize(self, amount: Decimal, source_currency: str) -> Decimal:
        rate = await self.rate_for(source_currency)
        return (Decimal(amount) * rate).quantize(MINOR, rounding=ROUND_HALF_UP)

    async def normalize_minor(self, amount: int, source_currency: str) -> int:
        if source_currency.upper() == self.settlement_currency:
            return amount
        return to_minor_units(await self.normalize(from_minor_units(amount), source_currency))
