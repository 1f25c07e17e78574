"""
WebSocket price stream for direct integrations.

Clients subscribe to option addresses and/or underlyings and receive the
pricer's bid/ask/mid for every matching option, immediately on subscribe and
then on a fixed interval. Clients that miss a liveness ping are dropped.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from interfaces import IPricer
from models import OptionParams, OptionSubscription, PriceResult
from relay_server import ClientConnection

logger = logging.getLogger(__name__)


def option_price_message(option: OptionParams, price: PriceResult) -> Dict[str, Any]:
    return {
        "type": "price",
        "optionAddress": option.option_address,
        "bid": f"{price.bid:.6f}",
        "ask": f"{price.ask:.6f}",
        "mid": f"{price.mid:.6f}",
        "spotPrice": price.spot_price,
        "iv": price.iv,
        "delta": price.delta,
        "timestamp": int(time.time() * 1000),
    }


class OptionPriceServer:
    """Periodic per-client option price pushes on top of any IPricer"""

    def __init__(self,
                 pricer: IPricer,
                 port: int = 3011,
                 host: str = "0.0.0.0",
                 update_interval: float = 5.0,
                 ping_interval: float = 30.0,
                 queue_size: int = 1000):
        self.pricer = pricer
        self.port = port
        self.host = host
        self.update_interval = update_interval
        self.ping_interval = ping_interval
        self.queue_size = queue_size

        self.clients: Dict[Any, ClientConnection] = {}
        self.pending_pings: Dict[Any, asyncio.Future] = {}
        self.server = None
        self.tasks: list = []

    @property
    def connection_count(self) -> int:
        return len(self.clients)

    # ------------------------------------------------------------------
    # Client registry
    # ------------------------------------------------------------------

    def register(self, ws) -> ClientConnection:
        client = ClientConnection(ws, self.queue_size, OptionSubscription())
        self.clients[ws] = client
        logger.info(f"Price stream client connected (total: {len(self.clients)})")
        return client

    async def unregister(self, ws) -> None:
        self.pending_pings.pop(ws, None)
        client = self.clients.pop(ws, None)
        if client:
            await client.stop()
            logger.info(f"Price stream client disconnected (total: {len(self.clients)})")

    async def handler(self, ws):
        """websockets.serve connection handler"""
        client = self.register(ws)
        client.start()
        self.send_subscribed(client)
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
        except (json.JSONDecodeError, TypeError):
            self.send_error(client, "Invalid message format")
            return
        if not isinstance(message, dict):
            self.send_error(client, "Invalid message format")
            return

        msg_type = message.get("type")
        try:
            if msg_type == "subscribe":
                self.handle_subscribe(client, message)
            elif msg_type == "unsubscribe":
                self.handle_unsubscribe(client, message)
            elif msg_type == "ping":
                client.enqueue({"type": "pong", "timestamp": int(time.time() * 1000)})
            else:
                self.send_error(client, f"Unknown message type: {msg_type}")
        except (TypeError, AttributeError) as e:
            self.send_error(client, f"Invalid {msg_type} message: {e}")

    def handle_subscribe(self, client: ClientConnection, message: dict) -> None:
        subscription: OptionSubscription = client.subscription
        options = message.get("options")

        # No options list subscribes to every registered option
        if options is None:
            options = self.pricer.get_option_addresses()
        subscription.options.update(address.lower() for address in options)
        subscription.underlyings.update(u.upper() for u in message.get("underlyings") or [])

        logger.info(f"Price stream client subscribed: {len(subscription.options)} options, "
                    f"underlyings={sorted(subscription.underlyings)}")
        self.send_subscribed(client)
        self.send_prices(client)

    def handle_unsubscribe(self, client: ClientConnection, message: dict) -> None:
        subscription: OptionSubscription = client.subscription
        for address in message.get("options") or []:
            subscription.options.discard(address.lower())
        for underlying in message.get("underlyings") or []:
            subscription.underlyings.discard(underlying.upper())
        self.send_subscribed(client)

    def send_subscribed(self, client: ClientConnection) -> None:
        client.enqueue({"type": "subscribed", "options": sorted(client.subscription.options)})

    def send_error(self, client: ClientConnection, message: str) -> None:
        client.enqueue({"type": "error", "message": message})

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def send_prices(self, client: ClientConnection) -> int:
        """Queue a price for every subscribed option that can be priced now"""
        sent = 0
        for option in self.pricer.get_all_options():
            if not client.subscription.matches(option):
                continue
            price = self.pricer.price(option.option_address)
            if price is None:
                continue
            if client.enqueue(option_price_message(option, price)):
                sent += 1
        return sent

    def broadcast_price(self, address: str) -> int:
        """Push one option's current price to every subscribed client"""
        option = self.pricer.get_option(address)
        price = self.pricer.price(address) if option else None
        if price is None:
            return 0

        message = option_price_message(option, price)
        sent = 0
        for client in list(self.clients.values()):
            if client.subscription.matches(option) and client.enqueue(message):
                sent += 1
        return sent

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _update_loop(self):
        while True:
            try:
                await asyncio.sleep(self.update_interval)
                for client in list(self.clients.values()):
                    self.send_prices(client)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Price update loop error: {e}")

    async def check_liveness(self) -> int:
        """Drop clients whose previous ping is unanswered, then ping the rest"""
        dropped = 0
        for ws in list(self.clients.keys()):
            waiter = self.pending_pings.get(ws)
            if ws.state != State.OPEN or (waiter is not None and not waiter.done()):
                logger.info("Terminating unresponsive price stream client")
                await ws.close()
                await self.unregister(ws)
                dropped += 1
                continue
            try:
                self.pending_pings[ws] = await ws.ping()
            except ConnectionClosed:
                await self.unregister(ws)
                dropped += 1
        return dropped

    async def _ping_loop(self):
        while True:
            try:
                await asyncio.sleep(self.ping_interval)
                await self.check_liveness()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Price stream ping loop error: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self.server = await websockets.serve(self.handler, self.host, self.port)
        self.tasks = [
            asyncio.create_task(self._update_loop()),
            asyncio.create_task(self._ping_loop()),
        ]
        logger.info(f"Price stream listening on port {self.port} "
                    f"(updates every {self.update_interval}s)")

    async def stop(self):
        logger.info("Stopping price stream")
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
