import asyncio

import pytest

from api_client import ApiException
from market_data import BinanceProvider, CoinGeckoProvider, SpotFeed, StaleAwareCache, StaticProvider


class StubBinanceAPI:
    def __init__(self, price=None, error=None):
        self.price = price
        self.error = error
        self.requested = []

    async def get_ticker_price(self, symbol):
        self.requested.append(symbol)
        if self.error:
            raise self.error
        return {"symbol": symbol, "price": self.price}


class StubCoinGeckoAPI:
    def __init__(self, prices):
        self.prices = prices

    async def get_simple_price(self, ids, vs_currencies="usd"):
        return {ids: {"usd": self.prices[ids]}} if ids in self.prices else {}


class CountingProvider(StaticProvider):
    name = "counting"

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def get_price(self, symbol):
        self.calls += 1
        return await super().get_price(symbol)


# ============================================================================
# StaleAwareCache
# ============================================================================

def test_cache_refuses_stale_entries(clock):
    cache = StaleAwareCache(5.0, clock)
    cache.set("ETH", 3100.0)

    clock.advance(5)
    assert cache.get("ETH") == 3100.0
    assert "ETH" in cache

    clock.advance(1)
    assert cache.get("ETH") is None
    assert "ETH" not in cache
    assert cache.age("ETH") == 6
    assert len(cache) == 1


def test_cache_staleness_boundary_is_inclusive(clock):
    cache = StaleAwareCache(5.0, clock)
    cache.set("ETH", 3100.0)

    clock.advance(5.0)
    assert cache.get("ETH") == 3100.0

    clock.advance(0.001)
    assert cache.get("ETH") is None


def test_cache_fresh_items(clock):
    cache = StaleAwareCache(10.0, clock)
    cache.set("old", 1, written_at=clock() - 20)
    cache.set("new", 2)
    assert list(cache.fresh_items()) == [("new", 2)]


# ============================================================================
# Providers
# ============================================================================

@pytest.mark.asyncio
async def test_binance_provider_maps_symbol():
    api = StubBinanceAPI(price="3101.25")
    provider = BinanceProvider(api)

    assert await provider.get_price("eth") == 3101.25
    assert api.requested == ["ETHUSDT"]
    assert await provider.get_price("DOGE") is None


@pytest.mark.asyncio
async def test_binance_provider_swallows_api_errors():
    provider = BinanceProvider(StubBinanceAPI(error=ApiException(400, -1121, "Invalid symbol")))
    assert await provider.get_price("ETH") is None


@pytest.mark.asyncio
async def test_coingecko_provider():
    provider = CoinGeckoProvider(StubCoinGeckoAPI({"ethereum": 3099.5}))
    assert await provider.get_price("WETH") == 3099.5
    assert await provider.get_price("BTC") is None


# ============================================================================
# SpotFeed
# ============================================================================

@pytest.mark.asyncio
async def test_spot_feed_falls_back_through_providers(clock):
    empty = CountingProvider()
    backup = StaticProvider()
    backup.set_price("ETH", 3050.0)
    feed = SpotFeed(stale_after=5.0, providers=[empty, backup], clock=clock)

    assert await feed.get_price("eth") == 3050.0
    assert feed.get_cached_price("ETH") == 3050.0
    assert empty.calls == 1


@pytest.mark.asyncio
async def test_spot_feed_uses_cache_while_fresh(clock):
    provider = CountingProvider()
    provider.set_price("ETH", 3000.0)
    feed = SpotFeed(stale_after=5.0, providers=[provider], clock=clock)

    await feed.get_price("ETH")
    await feed.get_price("ETH")
    assert provider.calls == 1

    clock.advance(6)
    assert feed.get_cached_price("ETH") is None
    await feed.get_price("ETH")
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_spot_feed_no_provider_answers(clock):
    feed = SpotFeed(providers=[StaticProvider()], clock=clock)
    assert await feed.get_price("ETH") is None
    assert feed.stats["fetch_failures"] == 1


def test_set_price_notifies_observers(clock):
    feed = SpotFeed(clock=clock)
    updates = []
    unsubscribe = feed.on_price_update(updates.append)

    feed.set_price("eth", 3200.0)
    unsubscribe()
    feed.set_price("eth", 3300.0)

    assert updates == [("ETH", 3200.0)]
    assert feed.get_cached_price("ETH") == 3300.0


@pytest.mark.asyncio
async def test_get_prices_skips_missing():
    provider = StaticProvider()
    provider.set_price("ETH", 3000.0)
    feed = SpotFeed(providers=[provider])

    assert await feed.get_prices(["ETH", "BTC"]) == {"ETH": 3000.0}


@pytest.mark.asyncio
async def test_polling_refreshes_cache():
    provider = StaticProvider()
    provider.set_price("ETH", 3000.0)
    feed = SpotFeed(stale_after=5.0, providers=[provider])

    feed.start_polling(["ETH"], interval=0.01)
    await asyncio.sleep(0.05)
    assert feed.get_cached_price("ETH") == 3000.0

    await feed.stop()
    assert feed.get_cached_price("ETH") is None


@pytest.mark.asyncio
async def test_refresh_bypasses_fresh_cache(clock):
    provider = StaticProvider()
    provider.set_price("ETH", 3000.0)
    feed = SpotFeed(stale_after=5.0, providers=[provider], clock=clock)
    await feed.get_price("ETH")

    provider.set_price("ETH", 3050.0)
    assert await feed.get_price("eth") == 3000.0
    assert await feed.refresh(["eth"]) == {"ETH": 3050.0}
    assert feed.get_cached_price("ETH") == 3050.0
    assert feed.stats["fetches"] == 2


@pytest.mark.asyncio
async def test_polling_keeps_spot_fresh_across_staleness_windows():
    provider = StaticProvider()
    provider.set_price("ETH", 3000.0)
    feed = SpotFeed(stale_after=0.25, providers=[provider])

    feed.start_polling(["ETH"], interval=0.1)
    await asyncio.sleep(0.02)

    missing = 0
    for _ in range(150):
        if feed.get_cached_price("ETH") is None:
            missing += 1
        await asyncio.sleep(0.01)

    await feed.stop()
    assert missing == 0
