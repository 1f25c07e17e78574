"""
Bebop taker pricing relay.

One connection per configured chain. Every decoded record updates the
price cache and is published as a PriceUpdateEvent; connection changes are
published as ConnectionStatusEvent.
"""

import json
import logging
from typing import Callable, Dict, List, Optional

from google.protobuf.message import DecodeError

from config import BEBOP_WS_BASE, TAKER_CHAINS
from event_bus import EventBus
from models import PriceData, PriceUpdateEvent, ConnectionStatusEvent
from websocket_client import WebSocketConfig, WebSocketManager, ConnectFactory
from wire_format import decode_pricing_update

logger = logging.getLogger(__name__)

PRICE_EVENT = "price"
CONNECTED_EVENT = "connected"
DISCONNECTED_EVENT = "disconnected"


def taker_pricing_url(chain: str) -> str:
    return f"{BEBOP_WS_BASE}/{chain}/v3/pricing?format=protobuf"


def parse_json_update(payload: dict) -> List[PriceData]:
    """{"base/quote": {last_update_ts, bids: [[p, q]], asks: [[p, q]]}}"""
    records = []
    for pair_key, pair_data in payload.items():
        base, _, quote = pair_key.partition("/")
        if not base or not quote or not isinstance(pair_data, dict):
            continue
        records.append(PriceData(
            base=base.lower(),
            quote=quote.lower(),
            last_update_ts=int(pair_data.get("last_update_ts") or 0),
            bids=[(float(p), float(q)) for p, q in pair_data.get("bids") or []],
            asks=[(float(p), float(q)) for p, q in pair_data.get("asks") or []],
        ))
    return records


class ChainPricingConnection(WebSocketManager):
    """Taker pricing socket for a single chain"""

    def __init__(self, relay: "PricingRelay", chain: str, chain_id: int,
                 name: str, authorization: str,
                 connect_factory: Optional[ConnectFactory] = None):
        config = WebSocketConfig(
            url=taker_pricing_url(chain),
            headers={
                "name": name,
                "Authorization": authorization,
            },
            name=f"relay-{chain}",
            heartbeat_interval=30.0,
            reconnect_base_delay=1.0,
            max_reconnect_delay=60.0,
        )
        super().__init__(config, connect_factory)
        self.relay = relay
        self.chain = chain
        self.chain_id = chain_id

    async def on_open(self) -> None:
        self.relay.handle_status(self.chain, self.chain_id, True)

    async def on_message(self, raw) -> None:
        self.relay.handle_message(self.chain, self.chain_id, raw)

    async def on_close(self) -> None:
        self.relay.handle_status(self.chain, self.chain_id, False)


class PricingRelay:
    """Multi-chain ingestion of Bebop taker prices"""

    def __init__(self, chains: List[str], name: str, authorization: str,
                 connect_factory: Optional[ConnectFactory] = None):
        self.chains = chains
        self.name = name
        self.authorization = authorization
        self._connect_factory = connect_factory

        self.connections: Dict[str, ChainPricingConnection] = {}
        self.prices: Dict[str, PriceData] = {}  # "chainId:base/quote" -> PriceData
        self.events = EventBus()

        self.stats = {
            "messages": 0,
            "records": 0,
            "decode_errors": 0,
        }

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_price(self, handler: Callable[[PriceUpdateEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(PRICE_EVENT, handler)

    def on_connected(self, handler: Callable[[ConnectionStatusEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(CONNECTED_EVENT, handler)

    def on_disconnected(self, handler: Callable[[ConnectionStatusEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(DISCONNECTED_EVENT, handler)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def handle_status(self, chain: str, chain_id: int, connected: bool) -> None:
        if connected:
            logger.info(f"Connected to {chain} pricing feed")
        else:
            logger.warning(f"{chain} pricing feed disconnected")
        event = ConnectionStatusEvent(chain=chain, chain_id=chain_id, connected=connected)
        self.events.publish(CONNECTED_EVENT if connected else DISCONNECTED_EVENT, event)

    def handle_message(self, chain: str, chain_id: int, raw) -> None:
        self.stats["messages"] += 1
        try:
            if isinstance(raw, (bytes, bytearray)):
                records = decode_pricing_update(bytes(raw))
            else:
                records = parse_json_update(json.loads(raw))
        except (DecodeError, json.JSONDecodeError, ValueError, TypeError) as e:
            self.stats["decode_errors"] += 1
            logger.error(f"Failed to parse {chain} message: {e}")
            return

        for record in records:
            self._store(chain, chain_id, record)

    def _store(self, chain: str, chain_id: int, record: PriceData) -> None:
        event = PriceUpdateEvent(
            chain_id=chain_id,
            chain=chain,
            pair=f"{record.base}/{record.quote}",
            data=record
        )
        self.prices[event.cache_key] = record
        self.stats["records"] += 1
        self.events.publish(PRICE_EVENT, event)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_price(self, chain_id: int, base: str, quote: str) -> Optional[PriceData]:
        return self.prices.get(f"{chain_id}:{base.lower()}/{quote.lower()}")

    def get_all_prices(self) -> Dict[str, PriceData]:
        return dict(self.prices)

    def get_prices_for_chain(self, chain_id: int) -> Dict[str, PriceData]:
        prefix = f"{chain_id}:"
        return {key: value for key, value in self.prices.items() if key.startswith(prefix)}

    def get_status(self) -> Dict[str, bool]:
        return {
            chain: chain in self.connections and self.connections[chain].is_connected
            for chain in self.chains
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        logger.info(f"Starting Pricing Relay for {len(self.chains)} chains")
        for chain in self.chains:
            chain_id = TAKER_CHAINS.get(chain)
            if chain_id is None:
                logger.warning(f"Unknown chain: {chain}, skipping")
                continue
            connection = ChainPricingConnection(
                self, chain, chain_id, self.name, self.authorization, self._connect_factory
            )
            self.connections[chain] = connection
            connection.launch()

    async def stop(self):
        logger.info("Stopping Pricing Relay")
        for chain, connection in self.connections.items():
            logger.info(f"Closing {chain} connection")
            await connection.stop()
        self.connections.clear()
        self.prices.clear()
