"""Tests for exchange rate caching and currency normalization."""

import asyncio
from decimal import Decimal

import httpx
import pytest

from settlement.currency import (
    CurrencyNormalizer,
    ExchangeRateCache,
    ExchangeRateFeed,
    UnsupportedCurrencyError,
    from_minor_units,
    to_minor_units,
)

from conftest import FakeClock, StaticRates

FALLBACK = {"USD": Decimal("0.92"), "GBP": Decimal("1.17")}


@pytest.mark.asyncio
async def test_usd_price_normalized_at_settlement_rate():
    """USD 100.00 at 0.92 becomes EUR 92.00."""
    cache = ExchangeRateCache(StaticRates({"USD": "0.92"}), fallback=FALLBACK, clock=FakeClock())
    normalizer = CurrencyNormalizer(cache, "EUR")

    assert await normalizer.normalize(Decimal("100.00"), "usd") == Decimal("92.00")


@pytest.mark.asyncio
async def test_settlement_currency_passes_through_without_fetch():
    feed = StaticRates({"USD": "0.92"})
    normalizer = CurrencyNormalizer(ExchangeRateCache(feed, fallback=FALLBACK, clock=FakeClock()), "EUR")

    assert await normalizer.normalize(Decimal("49.99"), "EUR") == Decimal("49.99")
    assert await normalizer.normalize_minor(4999, "EUR") == 4999
    assert feed.calls == 0


@pytest.mark.asyncio
async def test_cache_serves_until_ttl_then_refreshes():
    clock = FakeClock()
    feed = StaticRates({"USD": "0.92"})
    cache = ExchangeRateCache(feed, fallback=FALLBACK, ttl_seconds=3600, clock=clock)

    await cache.get_rates()
    clock.advance(3599)
    await cache.get_rates()
    assert feed.calls == 1

    feed.rates["USD"] = Decimal("0.95")
    clock.advance(1)
    rates = await cache.get_rates()
    assert feed.calls == 2
    assert rates["USD"] == Decimal("0.95")


@pytest.mark.asyncio
async def test_failed_refresh_serves_last_good_rates():
    clock = FakeClock()
    feed = StaticRates({"USD": "0.90"})
    cache = ExchangeRateCache(feed, fallback=FALLBACK, ttl_seconds=60, clock=clock)
    await cache.get_rates()

    feed.fail = True
    clock.advance(120)
    rates = await cache.get_rates()

    assert rates["USD"] == Decimal("0.90")
    assert feed.calls == 2


@pytest.mark.asyncio
async def test_feed_outage_backs_off_before_retrying():
    clock = FakeClock()
    feed = StaticRates({"USD": "0.90"})
    cache = ExchangeRateCache(feed, fallback=FALLBACK, ttl_seconds=60, clock=clock, retry_after_seconds=30)
    await cache.get_rates()

    feed.fail = True
    clock.advance(120)
    for _ in range(5):
        rates = await cache.get_rates()
        assert rates["USD"] == Decimal("0.90")
    assert feed.calls == 2

    feed.fail = False
    feed.rates["USD"] = Decimal("0.95")
    clock.advance(30)
    rates = await cache.get_rates()
    assert feed.calls == 3
    assert rates["USD"] == Decimal("0.95")


@pytest.mark.asyncio
async def test_outage_without_good_rates_serves_fallback_during_back_off():
    clock = FakeClock()
    feed = StaticRates({}, fail=True)
    cache = ExchangeRateCache(feed, fallback=FALLBACK, clock=clock, retry_after_seconds=30)

    await cache.get_rates()
    clock.advance(10)
    rates = await cache.get_rates()

    assert rates["GBP"] == Decimal("1.17")
    assert feed.calls == 1


@pytest.mark.asyncio
async def test_failed_first_fetch_uses_fallback_rates():
    cache = ExchangeRateCache(StaticRates({}, fail=True), fallback=FALLBACK, clock=FakeClock())
    normalizer = CurrencyNormalizer(cache, "EUR")

    assert await normalizer.normalize(Decimal("10.00"), "GBP") == Decimal("11.70")


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_fetch():
    feed = StaticRates({"USD": "0.92"})
    cache = ExchangeRateCache(feed, fallback=FALLBACK, clock=FakeClock())

    await asyncio.gather(*(cache.get_rates() for _ in range(10)))

    assert feed.calls == 1


@pytest.mark.asyncio
async def test_unknown_currency_is_rejected():
    normalizer = CurrencyNormalizer(ExchangeRateCache(StaticRates({"USD": "0.92"}), fallback=FALLBACK, clock=FakeClock()))

    with pytest.raises(UnsupportedCurrencyError):
        await normalizer.normalize(Decimal("5"), "JPY")


@pytest.mark.asyncio
async def test_feed_inverts_eur_based_rates():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v4/latest/EUR"
        return httpx.Response(200, json={"base": "EUR", "rates": {"EUR": 1, "USD": 1.25, "GBP": 0.8}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        feed = ExchangeRateFeed("https://rates.example/v4/latest/EUR", client=client)
        rates = await feed()

    assert rates["USD"] == Decimal("0.8")
    assert rates["GBP"] == Decimal("1.25")
    assert rates["EUR"] == Decimal("1")


def test_minor_unit_helpers_round_half_up():
    assert to_minor_units(Decimal("92.005")) == 9201
    assert from_minor_units(9200) == Decimal("92.00")
