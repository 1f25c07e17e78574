import asyncio
import json
import logging
import time
import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from typing import Awaitable, Callable, Dict, Optional, Any, Union
from dataclasses import dataclass, field

from models import ConnectionState

# Get logger for this module
logger = logging.getLogger(__name__)

ConnectFactory = Callable[[str, Dict[str, str]], Awaitable[Any]]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect attempt number `attempt` (0-based)"""
    return min(base * (2 ** attempt), cap)


async def default_connect(url: str, headers: Dict[str, str]):
    # Keepalive is driven by WebSocketManager, not the library
    return await websockets.connect(
        url,
        additional_headers=headers or None,
        ping_interval=None,
        close_timeout=10,
        max_size=None,
    )


@dataclass
class WebSocketConfig:
    """Configuration for a managed WebSocket connection"""
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    name: str = "ws"
    heartbeat_interval: Optional[float] = 30.0
    heartbeat_timeout: float = 10.0
    reconnect_base_delay: float = 5.0
    max_reconnect_delay: float = 60.0
    connection_timeout: float = 30.0


class WebSocketManager:
    """
    Long-lived client connection with automatic reconnection.

    Features:
    - Exponential backoff min(base * 2**attempt, cap), unlimited attempts
    - Attempt counter reset once a connection opens
    - Transport-level ping heartbeat; a missed pong closes the socket
    - on_open / on_message / on_close hooks for subclasses

    The first connect in start() raises on failure so callers can treat it
    as a startup error. Later failures are logged and retried.
    """

    def __init__(self, config: WebSocketConfig, connect_factory: Optional[ConnectFactory] = None):
        self.config = config
        self._connect_factory = connect_factory or default_connect
        self.ws = None
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_message_time = time.time()

        self.stats = {
            'messages_received': 0,
            'messages_sent': 0,
            'errors': 0,
            'reconnections': 0,
            'uptime_start': None
        }

        self.running = False
        self._run_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def on_open(self) -> None:
        pass

    async def on_message(self, raw: Union[str, bytes]) -> None:
        pass

    async def on_close(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.ws is not None and self.ws.state == State.OPEN

    async def _connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        logger.info(f"[{self.config.name}] Connecting to {self.config.url} "
                    f"(attempt {self.reconnect_attempts + 1})")
        try:
            self.ws = await asyncio.wait_for(
                self._connect_factory(self.config.url, self.config.headers),
                timeout=self.config.connection_timeout
            )
        except BaseException:
            self.state = ConnectionState.DISCONNECTED
            raise

        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        self.stats['uptime_start'] = time.time()
        self.last_message_time = time.time()
        logger.info(f"[{self.config.name}] Connected")

        if self.config.heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(self.ws))

        try:
            await self.on_open()
        except BaseException:
            await self._teardown(was_open=True)
            raise

    async def _heartbeat_loop(self, ws):
        """Ping on a fixed interval; close the socket when a pong is missed"""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            if ws.state != State.OPEN:
                return
            try:
                self.state = ConnectionState.AWAITING_HEARTBEAT
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.config.heartbeat_timeout)
                self.state = ConnectionState.CONNECTED
            except asyncio.TimeoutError:
                logger.warning(f"[{self.config.name}] Heartbeat timeout, closing connection")
                await ws.close()
                return
            except ConnectionClosed:
                return
            except Exception as e:
                logger.error(f"[{self.config.name}] Heartbeat error: {e}")
                return

    async def _read_loop(self):
        async for raw in self.ws:
            self.last_message_time = time.time()
            self.stats['messages_received'] += 1
            try:
                await self.on_message(raw)
            except Exception as e:
                logger.error(f"[{self.config.name}] Error processing message: {e}")
                self.stats['errors'] += 1

    async def _teardown(self, was_open: bool):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

        if self.ws is not None:
            try:
                await self.ws.close()
            except Exception as e:
                logger.debug(f"[{self.config.name}] Error closing socket: {e}")
            self.ws = None

        self.state = ConnectionState.DISCONNECTED
        if was_open:
            try:
                await self.on_close()
            except Exception as e:
                logger.error(f"[{self.config.name}] on_close failed: {e}")

    async def _run(self):
        """Read until closed, then reconnect with backoff while running"""
        while self.running:
            was_open = self.ws is not None
            try:
                if self.ws is None:
                    await self._connect()
                    was_open = True
                await self._read_loop()
                logger.warning(f"[{self.config.name}] Connection closed by peer")
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                logger.warning(f"[{self.config.name}] Connection closed: {e}")
            except Exception as e:
                logger.error(f"[{self.config.name}] Connection error: {e}")
                self.stats['errors'] += 1
            finally:
                if self.running:
                    await self._teardown(was_open)

            if not self.running:
                break

            delay = backoff_delay(self.reconnect_attempts,
                                  self.config.reconnect_base_delay,
                                  self.config.max_reconnect_delay)
            self.reconnect_attempts += 1
            self.stats['reconnections'] += 1
            logger.info(f"[{self.config.name}] Reconnecting in {delay}s")
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, data: Union[str, bytes]) -> bool:
        """Send a raw frame"""
        if not self.is_connected:
            logger.error(f"[{self.config.name}] Cannot send message: WebSocket not connected")
            return False

        try:
            await self.ws.send(data)
            self.stats['messages_sent'] += 1
            return True

        except Exception as e:
            logger.error(f"[{self.config.name}] Failed to send message: {e}")
            self.stats['errors'] += 1
            return False

    async def send_json(self, message: Dict[str, Any]) -> bool:
        return await self.send(json.dumps(message))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Connect once, then keep the connection alive in the background"""
        if self.running:
            logger.warning(f"[{self.config.name}] Already running")
            return

        self.running = True
        try:
            await self._connect()
        except BaseException:
            self.running = False
            raise

        self._run_task = asyncio.create_task(self._run())

    def launch(self) -> asyncio.Task:
        """Connect in the background; the first failure is retried like any other"""
        if self.running and self._run_task:
            return self._run_task
        self.running = True
        self._run_task = asyncio.create_task(self._run())
        return self._run_task

    async def stop(self):
        """Stop reconnecting and close the connection"""
        logger.info(f"[{self.config.name}] Stopping")
        self.running = False

        if self._run_task:
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
            self._run_task = None

        was_open = self.ws is not None
        await self._teardown(was_open)

    def get_stats(self) -> dict:
        """Get connection statistics"""
        uptime = None
        if self.stats['uptime_start']:
            uptime = time.time() - self.stats['uptime_start']

        return {
            **self.stats,
            'name': self.config.name,
            'state': self.state.value,
            'reconnect_attempts': self.reconnect_attempts,
            'uptime_seconds': uptime,
            'last_message_ago': time.time() - self.last_message_time,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
