"""
Shared fixtures: an in-memory WebSocket connection and its connect factory.
"""

import asyncio
import json
import time

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

from market_data import SpotFeed, StaticProvider
from models import OptionParams
from pricing_engine import ModelPricer
from rfq_manager import RFQDecisionEngine

MAKER = "0x1111111111111111111111111111111111111111"
TAKER = "0x2222222222222222222222222222222222222222"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
CALL_TOKEN = "0xca11000000000000000000000000000000000001"
PUT_TOKEN = "0x9070000000000000000000000000000000000002"

NOW = 1_700_000_000
THIRTY_DAYS = 30 * 24 * 60 * 60


class FakeConnection:
    """Stands in for a websockets client connection"""

    def __init__(self):
        self.state = State.OPEN
        self.sent = []
        self.pings = 0
        self.pong = True
        self.inbound: asyncio.Queue = asyncio.Queue()

    def feed(self, frame) -> None:
        """Queue an inbound frame"""
        self.inbound.put_nowait(frame)

    async def send(self, data) -> None:
        if self.state != State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.pong:
            waiter.set_result(0.0)
        return waiter

    async def close(self) -> None:
        if self.state == State.OPEN:
            self.state = State.CLOSED
            self.inbound.put_nowait(None)

    async def recv(self):
        frame = await self.inbound.get()
        if frame is None:
            raise ConnectionClosedOK(None, None)
        return frame

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.inbound.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    def sent_json(self) -> list:
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def sent_bytes(self) -> list:
        return [m for m in self.sent if isinstance(m, (bytes, bytearray))]


class FakeConnector:
    """Connect factory handing out FakeConnections; may fail the first attempts"""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = []
        self.connections = []

    async def __call__(self, url, headers):
        self.calls.append((url, dict(headers or {})))
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 1.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def call_option():
    return OptionParams(
        option_address=CALL_TOKEN,
        underlying="ETH",
        strike=3000.0,
        expiry=NOW + THIRTY_DAYS,
        is_put=False,
        decimals=18,
    )


@pytest.fixture
def put_option():
    return OptionParams(
        option_address=PUT_TOKEN,
        underlying="ETH",
        strike=3000.0,
        expiry=NOW + THIRTY_DAYS,
        is_put=True,
        decimals=18,
    )


@pytest.fixture
def model_pricer(clock, call_option, put_option):
    """ModelPricer with ETH spot 3100 and both test options registered"""
    spot_feed = SpotFeed(stale_after=5.0, providers=[StaticProvider()], clock=clock)
    pricer = ModelPricer(
        spot_feed=spot_feed,
        decision_engine=RFQDecisionEngine(maker_address=MAKER, clock=clock),
        clock=clock,
    )
    pricer.register_options([call_option, put_option])
    pricer.set_spot_price("ETH", 3100.0)
    return pricer
