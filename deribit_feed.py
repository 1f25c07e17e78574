"""
Deribit option market data.

Instruments are discovered over REST, then ticker channels are streamed over
the JSON-RPC WebSocket into a staleness-aware cache. Option prices are quoted
in units of the underlying (Deribit convention), not USD.
"""

import asyncio
import json
import logging
import re
import time
from typing import Callable, Dict, List, Optional

from api_client import DeribitAPI
from event_bus import EventBus
from market_data import StaleAwareCache
from models import DeribitInstrument, DeribitPrice
from websocket_client import WebSocketConfig, WebSocketManager, ConnectFactory

logger = logging.getLogger(__name__)

MAINNET_WS = "wss://www.deribit.com/ws/api/v2"
TESTNET_WS = "wss://test.deribit.com/ws/api/v2"

STALE_THRESHOLD = 60.0  # seconds
HEARTBEAT_INTERVAL = 30  # seconds, requested from the venue

PRICE_EVENT = "price"

_TICKER_CHANNEL = re.compile(r"^ticker\.(.+)\.100ms$")


def ticker_channel(instrument_name: str) -> str:
    return f"ticker.{instrument_name}.100ms"


def parse_ticker(data: dict) -> DeribitPrice:
    greeks = data.get("greeks") or {}
    return DeribitPrice(
        best_bid_price=data.get("best_bid_price") or 0.0,
        best_bid_amount=data.get("best_bid_amount") or 0.0,
        best_ask_price=data.get("best_ask_price") or 0.0,
        best_ask_amount=data.get("best_ask_amount") or 0.0,
        mark_price=data.get("mark_price") or 0.0,
        mark_iv=data.get("mark_iv") or 0.0,
        bid_iv=data.get("bid_iv") or 0.0,
        ask_iv=data.get("ask_iv") or 0.0,
        index_price=data.get("index_price") or 0.0,
        underlying_price=data.get("underlying_price") or 0.0,
        delta=greeks.get("delta") or 0.0,
        gamma=greeks.get("gamma") or 0.0,
        theta=greeks.get("theta") or 0.0,
        vega=greeks.get("vega") or 0.0,
        timestamp=data.get("timestamp") or int(time.time() * 1000),
    )


class DeribitFeed(WebSocketManager):
    """
    Live option ticker cache for one underlying.

    Reads older than STALE_THRESHOLD (measured from local receive time)
    return None. The subscribed instrument set is replayed after every
    reconnect.
    """

    def __init__(self, underlying: str = "ETH", testnet: bool = False,
                 api: Optional[DeribitAPI] = None,
                 connect_factory: Optional[ConnectFactory] = None,
                 stale_after: float = STALE_THRESHOLD,
                 clock: Callable[[], float] = time.time):
        config = WebSocketConfig(
            url=TESTNET_WS if testnet else MAINNET_WS,
            name="deribit",
            heartbeat_interval=None,
            reconnect_base_delay=5.0,
            max_reconnect_delay=300.0,
        )
        super().__init__(config, connect_factory)
        self.underlying = underlying.upper()
        self.testnet = testnet
        self.api = api or DeribitAPI(testnet=testnet)

        self.instruments: Dict[str, DeribitInstrument] = {}
        self.prices: StaleAwareCache[DeribitPrice] = StaleAwareCache(stale_after, clock)
        self.subscribed_instruments: List[str] = []
        self.events = EventBus()
        self._rpc_id = 0
        self._first_price = asyncio.Event()

    # ------------------------------------------------------------------
    # Instrument discovery
    # ------------------------------------------------------------------

    async def fetch_instruments(self) -> List[DeribitInstrument]:
        """Load all live option instruments for the underlying"""
        logger.info(f"Fetching Deribit {self.underlying} option instruments")
        await self.api.open()
        raw = await self.api.get_instruments(self.underlying, kind="option", expired=False)

        instruments = []
        for item in raw:
            instrument = DeribitInstrument(
                instrument_name=item["instrument_name"],
                strike=float(item["strike"]),
                expiration_timestamp=int(item["expiration_timestamp"]),
                option_type=item["option_type"],
                is_active=bool(item.get("is_active", True)),
            )
            self.instruments[instrument.instrument_name] = instrument
            instruments.append(instrument)

        logger.info(f"Loaded {len(instruments)} Deribit {self.underlying} option instruments")
        return instruments

    def has_instrument(self, name: str) -> bool:
        return name in self.instruments

    def get_instrument(self, name: str) -> Optional[DeribitInstrument]:
        return self.instruments.get(name)

    def get_instrument_names(self) -> List[str]:
        return list(self.instruments.keys())

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    async def _rpc(self, method: str, params: dict) -> bool:
        self._rpc_id += 1
        return await self.send_json({
            "jsonrpc": "2.0",
            "id": self._rpc_id,
            "method": method,
            "params": params,
        })

    async def subscribe(self, instrument_names: List[str]) -> bool:
        """Subscribe to ticker channels; remembered for reconnects"""
        self.subscribed_instruments = list(instrument_names)
        if not self.is_connected:
            logger.warning("Cannot subscribe: Deribit WebSocket not connected")
            return False
        if not instrument_names:
            return True

        channels = [ticker_channel(name) for name in instrument_names]
        sent = await self._rpc("public/subscribe", {"channels": channels})
        if sent:
            logger.info(f"Subscribed to {len(channels)} Deribit ticker channels")
        return sent

    async def on_open(self) -> None:
        await self._rpc("public/set_heartbeat", {"interval": HEARTBEAT_INTERVAL})
        if self.subscribed_instruments:
            logger.info(f"Re-subscribing to {len(self.subscribed_instruments)} instruments")
            await self.subscribe(self.subscribed_instruments)

    async def on_message(self, raw) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Received non-JSON message from Deribit: {str(raw)[:100]}")
            return

        method = msg.get("method")
        if method == "subscription":
            self._handle_ticker(msg.get("params") or {})
            return

        if method == "heartbeat":
            if (msg.get("params") or {}).get("type") == "test_request":
                await self._rpc("public/test", {})
            return

        if msg.get("error"):
            logger.error(f"Deribit RPC error: {msg['error']}")

    def _handle_ticker(self, params: dict) -> None:
        match = _TICKER_CHANNEL.match(params.get("channel", ""))
        if not match:
            return

        instrument = match.group(1)
        price = parse_ticker(params.get("data") or {})
        self.prices.set(instrument, price)
        self._first_price.set()
        self.events.publish(PRICE_EVENT, (instrument, price))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def on_price_update(self, callback: Callable[[str, DeribitPrice], None]) -> Callable[[], None]:
        """Register callback(instrument, price). Returns an unsubscribe handle."""
        def handler(event):
            callback(*event)
        return self.events.subscribe(PRICE_EVENT, handler)

    def get_price(self, instrument: str) -> Optional[DeribitPrice]:
        return self.prices.get(instrument)

    def get_spot_price(self) -> Optional[float]:
        """Index price from any fresh ticker"""
        for _, price in self.prices.fresh_items():
            if price.index_price > 0:
                return price.index_price
        return None

    async def wait_for_prices(self, timeout: float = 5.0) -> bool:
        """Wait until at least one ticker has arrived"""
        if len(self.prices) > 0:
            return True
        try:
            await asyncio.wait_for(self._first_price.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Deribit price wait timed out after {timeout}s")
            return False

    async def connect(self) -> None:
        await self.start()

    async def disconnect(self) -> None:
        await self.stop()
        await self.api.close()
