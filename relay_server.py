"""
WebSocket distribution of relayed option prices.

Clients subscribe by chain id and "base/quote" pair. Only pairs that contain
a tracked option token are forwarded, and an update whose top of book did
not change since the last forwarded one is dropped.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from config import chain_name_for_taker_id
from models import ClientSubscription, PriceData, PriceUpdateEvent, ConnectionStatusEvent
from relay import PricingRelay

logger = logging.getLogger(__name__)

PairFilter = Callable[[int, str], bool]


def make_token_filter(tokens_by_chain: Dict[int, Iterable[str]]) -> PairFilter:
    """
    Predicate true when base or quote of a pair is tracked on that chain.
    Tokens under chain id 0 are tracked on every chain.
    """
    tracked = {chain_id: {t.lower() for t in tokens} for chain_id, tokens in tokens_by_chain.items()}

    def is_tracked(chain_id: int, pair: str) -> bool:
        base, _, quote = pair.lower().partition("/")
        for key in (chain_id, 0):
            tokens = tracked.get(key)
            if tokens and (base in tokens or quote in tokens):
                return True
        return False

    return is_tracked


def price_message(chain_id: int, chain: str, pair: str, data: PriceData) -> Dict[str, Any]:
    return {
        "type": "price",
        "chainId": chain_id,
        "chain": chain,
        "pair": pair,
        "base": data.base,
        "quote": data.quote,
        "lastUpdateTs": data.last_update_ts,
        "bids": [list(level) for level in data.bids],
        "asks": [list(level) for level in data.asks],
    }


class ClientConnection:
    """One downstream socket with its subscription and outbound queue"""

    def __init__(self, ws, queue_size: int = 1000, subscription=None):
        self.ws = ws
        self.subscription = subscription if subscription is not None else ClientSubscription()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self._writer: Optional[asyncio.Task] = None

    def enqueue(self, message: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Client queue full, dropping {message.get('type')} message")
            return False

    async def _write_loop(self):
        while True:
            message = await self.queue.get()
            try:
                await self.ws.send(json.dumps(message))
            except ConnectionClosed:
                return
            except Exception as e:
                logger.error(f"Failed to send to client: {e}")

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def stop(self) -> None:
        if self._writer:
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
            self._writer = None


class PricingServer:
    """Fan-out of PricingRelay events to subscribed WebSocket clients"""

    def __init__(self,
                 relay: PricingRelay,
                 is_tracked: PairFilter,
                 port: int = 3004,
                 host: str = "0.0.0.0",
                 queue_size: int = 1000,
                 ping_interval: float = 30.0,
                 stats_interval: float = 30.0):
        self.relay = relay
        self.is_tracked = is_tracked
        self.port = port
        self.host = host
        self.queue_size = queue_size
        self.ping_interval = ping_interval
        self.stats_interval = stats_interval

        self.clients: Dict[Any, ClientConnection] = {}
        self.last_sent: Dict[str, Tuple[float, float]] = {}  # cache key -> (best_bid, best_ask)
        self.server = None
        self.tasks: list = []
        self._unsubscribe: list = []

        self.stats = {
            "prices_received": 0,
            "prices_forwarded": 0,
            "prices_filtered": 0,
            "prices_deduplicated": 0,
        }

    # ------------------------------------------------------------------
    # Client registry
    # ------------------------------------------------------------------

    def register(self, ws) -> ClientConnection:
        client = ClientConnection(ws, self.queue_size)
        self.clients[ws] = client
        logger.info(f"Client connected (total: {len(self.clients)})")
        return client

    async def unregister(self, ws) -> None:
        client = self.clients.pop(ws, None)
        if client:
            await client.stop()
            logger.info(f"Client disconnected (total: {len(self.clients)})")

    async def handler(self, ws):
        """websockets.serve connection handler"""
        client = self.register(ws)
        client.start()
        self.send_status(client)
        try:
            async for raw in ws:
                self.handle_client_message(client, raw)
        except ConnectionClosed:
            pass
        finally:
            await self.unregister(ws)

    # ------------------------------------------------------------------
    # Client protocol
    # ------------------------------------------------------------------

    def handle_client_message(self, client: ClientConnection, raw) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            self.send_error(client, f"Invalid message format: {e}")
            return
        if not isinstance(message, dict):
            self.send_error(client, "Invalid message format: expected an object")
            return

        msg_type = message.get("type")
        logger.debug(f"Received client message: {msg_type}")

        try:
            if msg_type == "subscribe":
                self.handle_subscribe(client, message)
            elif msg_type == "unsubscribe":
                self.handle_unsubscribe(client, message)
            elif msg_type == "ping":
                client.enqueue({"type": "pong", "timestamp": int(time.time() * 1000)})
            else:
                self.send_error(client, f"Unknown message type: {msg_type}")
        except (ValueError, TypeError, AttributeError) as e:
            self.send_error(client, f"Invalid {msg_type} message: {e}")

    def handle_subscribe(self, client: ClientConnection, message: dict) -> None:
        subscription = client.subscription
        chains = message.get("chains")
        pairs = message.get("pairs")

        # An explicit empty list means all
        if chains:
            subscription.chains.update(int(c) for c in chains)
        elif chains is not None:
            subscription.chains.clear()

        if pairs:
            subscription.pairs.update(p.lower() for p in pairs)
        elif pairs is not None:
            subscription.pairs.clear()

        subscription.active = True
        logger.info(f"Client subscribed: chains={len(subscription.chains) or 'all'}, "
                    f"pairs={len(subscription.pairs) or 'all'}")

        self.send_cached_prices(client)
        self.send_status(client)

    def handle_unsubscribe(self, client: ClientConnection, message: dict) -> None:
        subscription = client.subscription
        for chain_id in message.get("chains") or []:
            subscription.chains.discard(int(chain_id))
        for pair in message.get("pairs") or []:
            subscription.pairs.discard(pair.lower())
        self.send_status(client)

    def send_cached_prices(self, client: ClientConnection) -> int:
        sent = 0
        for cache_key, data in self.relay.get_all_prices().items():
            chain_part, _, pair = cache_key.partition(":")
            chain_id = int(chain_part)
            if not self.is_tracked(chain_id, pair):
                continue
            if not client.subscription.matches(chain_id, pair):
                continue
            client.enqueue(price_message(chain_id, chain_name_for_taker_id(chain_id), pair, data))
            sent += 1
        return sent

    def send_status(self, client: ClientConnection) -> None:
        client.enqueue({
            "type": "status",
            "connections": self.relay.get_status(),
            "subscribedChains": sorted(client.subscription.chains),
            "subscribedPairs": sorted(client.subscription.pairs),
        })

    def send_error(self, client: ClientConnection, message: str) -> None:
        client.enqueue({"type": "error", "message": message})

    # ------------------------------------------------------------------
    # Relay events
    # ------------------------------------------------------------------

    def broadcast_price(self, event: PriceUpdateEvent) -> int:
        """Returns the number of clients the update was queued for"""
        self.stats["prices_received"] += 1

        if not self.is_tracked(event.chain_id, event.pair):
            self.stats["prices_filtered"] += 1
            return 0

        top = event.data.top_of_book
        if self.last_sent.get(event.cache_key) == top:
            self.stats["prices_deduplicated"] += 1
            return 0
        self.last_sent[event.cache_key] = top

        message = price_message(event.chain_id, event.chain, event.pair, event.data)
        sent = 0
        for client in list(self.clients.values()):
            if client.subscription.matches(event.chain_id, event.pair):
                if client.enqueue(message):
                    sent += 1

        if sent > 0:
            self.stats["prices_forwarded"] += 1
        return sent

    def broadcast_status_update(self, event: Optional[ConnectionStatusEvent] = None) -> None:
        for client in list(self.clients.values()):
            self.send_status(client)

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _ping_loop(self):
        while True:
            try:
                await asyncio.sleep(self.ping_interval)
                for ws in list(self.clients.keys()):
                    if ws.state == State.OPEN:
                        try:
                            await ws.ping()
                        except ConnectionClosed:
                            pass
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Ping loop error: {e}")

    async def _stats_loop(self):
        while True:
            try:
                await asyncio.sleep(self.stats_interval)
                logger.info(self.format_stats())
            except asyncio.CancelledError:
                break

    def format_stats(self) -> str:
        return (f"[ws-stats] clients={len(self.clients)} | "
                f"received={self.stats['prices_received']} "
                f"forwarded={self.stats['prices_forwarded']} "
                f"filtered={self.stats['prices_filtered']} "
                f"deduped={self.stats['prices_deduplicated']}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to relay events"""
        self._unsubscribe = [
            self.relay.on_price(self.broadcast_price),
            self.relay.on_connected(self.broadcast_status_update),
            self.relay.on_disconnected(self.broadcast_status_update),
        ]

    async def start(self):
        self.attach()
        self.server = await websockets.serve(self.handler, self.host, self.port)
        self.tasks = [
            asyncio.create_task(self._ping_loop()),
            asyncio.create_task(self._stats_loop()),
        ]
        logger.info(f"Pricing WebSocket server listening on port {self.port}")

    async def stop(self):
        logger.info("Stopping Pricing Server")
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        for ws in list(self.clients.keys()):
            await self.unregister(ws)

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
