import asyncio
import logging
import time
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from api_client import ApiException, BinanceAPI, CoinGeckoAPI
from event_bus import EventBus
from interfaces import ISpotPriceProvider

logger = logging.getLogger(__name__)

V = TypeVar("V")

PRICE_EVENT = "price"


# ============================================================================
# Staleness-aware cache
# ============================================================================

class StaleAwareCache(Generic[V]):
    """
    Map of key -> (value, written_at) whose reads refuse entries older than max_age.

    Staleness is evaluated at read time, so a writer that silently stops
    updating causes reads to return None once max_age elapses. Each key has a
    single writer (the owning feed); readers take one value and discard it.
    """

    def __init__(self, max_age: float, clock: Callable[[], float] = time.time):
        self.max_age = max_age
        self._clock = clock
        self._entries: Dict[str, Tuple[V, float]] = {}

    def set(self, key: str, value: V, written_at: Optional[float] = None) -> None:
        self._entries[key] = (value, self._clock() if written_at is None else written_at)

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, written_at = entry
        if self._clock() - written_at > self.max_age:
            return None
        return value

    def age(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._clock() - entry[1]

    def fresh_items(self) -> Iterator[Tuple[str, V]]:
        now = self._clock()
        # Snapshot: the writer may replace entries between iterations
        for key, (value, written_at) in list(self._entries.items()):
            if now - written_at <= self.max_age:
                yield key, value

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


# ============================================================================
# Spot Price Providers
# ============================================================================

class BinanceProvider(ISpotPriceProvider):
    """Binance spot ticker"""

    name = "binance"

    SYMBOL_TO_TICKER = {
        "ETH": "ETHUSDT",
        "WETH": "ETHUSDT",
        "BTC": "BTCUSDT",
        "WBTC": "BTCUSDT",
        "SOL": "SOLUSDT",
        "AVAX": "AVAXUSDT",
        "MATIC": "MATICUSDT",
        "ARB": "ARBUSDT",
        "OP": "OPUSDT",
        "LINK": "LINKUSDT",
        "UNI": "UNIUSDT",
    }

    def __init__(self, api: Optional[BinanceAPI] = None):
        self.api = api or BinanceAPI()

    async def get_price(self, symbol: str) -> Optional[float]:
        ticker = self.SYMBOL_TO_TICKER.get(symbol.upper())
        if not ticker:
            return None

        try:
            data = await self.api.get_ticker_price(ticker)
            price = data.get("price")
            return float(price) if price else None
        except ApiException as e:
            logger.error(f"Binance API error fetching {symbol}: {e}")
        except Exception as e:
            logger.error(f"Binance price fetch failed for {symbol}: {e}")
        return None


class CoinGeckoProvider(ISpotPriceProvider):
    """CoinGecko simple price (free tier, no key)"""

    name = "coingecko"

    SYMBOL_TO_ID = {
        "ETH": "ethereum",
        "WETH": "ethereum",
        "BTC": "bitcoin",
        "WBTC": "wrapped-bitcoin",
        "SOL": "solana",
        "AVAX": "avalanche-2",
        "MATIC": "matic-network",
        "ARB": "arbitrum",
        "OP": "optimism",
        "LINK": "chainlink",
        "UNI": "uniswap",
    }

    def __init__(self, api: Optional[CoinGeckoAPI] = None):
        self.api = api or CoinGeckoAPI()

    async def get_price(self, symbol: str) -> Optional[float]:
        coin_id = self.SYMBOL_TO_ID.get(symbol.upper())
        if not coin_id:
            return None

        try:
            data = await self.api.get_simple_price(coin_id)
            usd = data.get(coin_id, {}).get("usd")
            return float(usd) if usd is not None else None
        except ApiException as e:
            logger.error(f"CoinGecko API error fetching {symbol}: {e}")
        except Exception as e:
            logger.error(f"CoinGecko price fetch failed for {symbol}: {e}")
        return None


class StaticProvider(ISpotPriceProvider):
    """Manually set prices, for testing"""

    name = "static"

    def __init__(self):
        self.prices: Dict[str, float] = {}

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol.upper()] = price

    async def get_price(self, symbol: str) -> Optional[float]:
        return self.prices.get(symbol.upper())


# ============================================================================
# Aggregated Spot Feed
# ============================================================================

class SpotFeed:
    """
    Polling spot price aggregator with provider fallback.

    Providers are tried in order until one answers. The cache is the single
    source read by the model pricer and refuses entries older than stale_after.
    """

    def __init__(self, stale_after: float = 5.0,
                 providers: Optional[List[ISpotPriceProvider]] = None,
                 clock: Callable[[], float] = time.time):
        self.providers: List[ISpotPriceProvider] = list(providers or [])
        self.cache: StaleAwareCache[float] = StaleAwareCache(stale_after, clock)
        self.events = EventBus()
        self._poll_task: Optional[asyncio.Task] = None

        self.stats = {
            "fetches": 0,
            "fetch_failures": 0,
        }

    def add_provider(self, provider: ISpotPriceProvider) -> None:
        self.providers.append(provider)

    def on_price_update(self, callback: Callable[[Tuple[str, float]], None]) -> Callable[[], None]:
        """Register callback receiving (symbol, price). Returns an unsubscribe handle."""
        return self.events.subscribe(PRICE_EVENT, callback)

    def get_cached_price(self, symbol: str) -> Optional[float]:
        """Fresh cached price or None"""
        return self.cache.get(symbol.upper())

    def set_price(self, symbol: str, price: float) -> None:
        """Manually set a price"""
        upper = symbol.upper()
        self.cache.set(upper, price)
        self.events.publish(PRICE_EVENT, (upper, price))
        logger.info(f"Set {upper} price to {price}")

    async def get_price(self, symbol: str) -> Optional[float]:
        """Cached price if fresh, otherwise the first provider that answers"""
        cached = self.cache.get(symbol.upper())
        if cached is not None:
            return cached
        return await self.fetch_price(symbol)

    async def fetch_price(self, symbol: str) -> Optional[float]:
        """Ask the providers in order, bypassing the cache"""
        upper = symbol.upper()

        self.stats["fetches"] += 1
        for provider in self.providers:
            price = await provider.get_price(upper)
            if price is not None:
                self.cache.set(upper, price)
                self.events.publish(PRICE_EVENT, (upper, price))
                logger.debug(f"Fetched {upper} = {price} from {provider.name}")
                return price

        self.stats["fetch_failures"] += 1
        logger.warning(f"No provider returned a price for {upper}")
        return None

    async def get_prices(self, symbols: List[str]) -> Dict[str, float]:
        results = await asyncio.gather(*(self.get_price(s) for s in symbols))
        return self._collect(symbols, results)

    async def refresh(self, symbols: List[str]) -> Dict[str, float]:
        """Fetch every symbol from the providers regardless of cache age"""
        results = await asyncio.gather(*(self.fetch_price(s) for s in symbols))
        return self._collect(symbols, results)

    @staticmethod
    def _collect(symbols: List[str], results: List[Optional[float]]) -> Dict[str, float]:
        return {
            symbol.upper(): price
            for symbol, price in zip(symbols, results)
            if price is not None
        }

    async def _poll_loop(self, symbols: List[str], interval: float):
        """Background task refreshing the cache"""
        while True:
            try:
                await self.refresh(symbols)
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in spot polling loop: {e}")
                await asyncio.sleep(interval)

    def start_polling(self, symbols: List[str], interval: float = 2.0) -> asyncio.Task:
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(self._poll_loop(symbols, interval))
        logger.info(f"Polling spot prices for {symbols} every {interval}s")
        return self._poll_task

    def start(self) -> None:
        """Install default providers if none were given"""
        if not self.providers:
            self.add_provider(BinanceProvider())
            self.add_provider(CoinGeckoProvider())

    async def open(self) -> None:
        for provider in self.providers:
            api = getattr(provider, "api", None)
            if api is not None:
                await api.open()

    async def stop(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        for provider in self.providers:
            api = getattr(provider, "api", None)
            if api is not None:
                await api.close()

        self.cache.clear()
        self.events.clear()
