import json

import pytest

from deribit_feed import DeribitFeed, MAINNET_WS, TESTNET_WS, parse_ticker, ticker_channel

INSTRUMENT = "ETH-27DEC24-3000-C"


class StubDeribitAPI:
    def __init__(self, instruments=None):
        self.instruments = instruments or []
        self.opened = False
        self.closed = False

    async def open(self):
        self.opened = True

    async def close(self):
        self.closed = True

    async def get_instruments(self, currency, kind="option", expired=False):
        return self.instruments


def ticker_message(instrument=INSTRUMENT, **data):
    payload = {
        "best_bid_price": 0.05,
        "best_ask_price": 0.06,
        "mark_price": 0.055,
        "mark_iv": 80.0,
        "index_price": 3100.0,
        "timestamp": 1700000000000,
        "greeks": {"delta": 0.55},
    }
    payload.update(data)
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "subscription",
        "params": {"channel": ticker_channel(instrument), "data": payload},
    })


@pytest.fixture
def feed(connector, clock):
    api = StubDeribitAPI([{
        "instrument_name": INSTRUMENT,
        "strike": 3000,
        "expiration_timestamp": 1735286400000,
        "option_type": "call",
        "is_active": True,
    }])
    return DeribitFeed("eth", api=api, connect_factory=connector, clock=clock)


def test_urls():
    assert DeribitFeed(api=StubDeribitAPI()).config.url == MAINNET_WS
    assert DeribitFeed(testnet=True, api=StubDeribitAPI()).config.url == TESTNET_WS


def test_parse_ticker_defaults_missing_fields():
    price = parse_ticker({"mark_price": 0.1, "timestamp": 5})
    assert price.mark_price == 0.1
    assert price.best_bid_price == 0.0
    assert price.delta == 0.0
    assert price.timestamp == 5


@pytest.mark.asyncio
async def test_fetch_instruments(feed):
    instruments = await feed.fetch_instruments()

    assert [i.instrument_name for i in instruments] == [INSTRUMENT]
    assert feed.has_instrument(INSTRUMENT)
    assert feed.get_instrument(INSTRUMENT).strike == 3000.0
    assert feed.get_instrument_names() == [INSTRUMENT]
    assert feed.api.opened


@pytest.mark.asyncio
async def test_connect_requests_heartbeat_and_subscribes(feed, connector):
    await feed.connect()
    assert await feed.subscribe([INSTRUMENT])

    sent = connector.latest.sent_json()
    assert sent[0]["method"] == "public/set_heartbeat"
    assert sent[0]["params"] == {"interval": 30}
    assert sent[1]["method"] == "public/subscribe"
    assert sent[1]["params"] == {"channels": [f"ticker.{INSTRUMENT}.100ms"]}
    assert sent[1]["id"] > sent[0]["id"]

    await feed.disconnect()
    assert feed.api.closed


@pytest.mark.asyncio
async def test_subscribe_while_disconnected_is_remembered(feed, connector, eventually):
    assert await feed.subscribe([INSTRUMENT]) is False
    assert feed.subscribed_instruments == [INSTRUMENT]

    await feed.connect()
    methods = [m["method"] for m in connector.latest.sent_json()]
    assert methods == ["public/set_heartbeat", "public/subscribe"]
    await feed.disconnect()


@pytest.mark.asyncio
async def test_resubscribes_after_reconnect(feed, connector, eventually):
    feed.config.reconnect_base_delay = 0.01
    await feed.connect()
    await feed.subscribe([INSTRUMENT])

    await connector.latest.close()
    assert await eventually(lambda: len(connector.connections) == 2
                            and len(connector.latest.sent) == 2)
    methods = [m["method"] for m in connector.latest.sent_json()]
    assert methods == ["public/set_heartbeat", "public/subscribe"]
    await feed.disconnect()


@pytest.mark.asyncio
async def test_ticker_updates_cache_and_observers(feed, connector, eventually):
    seen = []
    feed.on_price_update(lambda name, price: seen.append((name, price.mark_price)))
    await feed.connect()

    connector.latest.feed(ticker_message())
    assert await feed.wait_for_prices(1.0)
    assert await eventually(lambda: seen == [(INSTRUMENT, 0.055)])

    price = feed.get_price(INSTRUMENT)
    assert price.best_bid_price == 0.05
    assert price.delta == 0.55
    assert feed.get_spot_price() == 3100.0
    await feed.disconnect()


@pytest.mark.asyncio
async def test_prices_go_stale(feed, connector, clock, eventually):
    await feed.connect()
    connector.latest.feed(ticker_message())
    assert await eventually(lambda: feed.get_price(INSTRUMENT) is not None)

    clock.advance(61)
    assert feed.get_price(INSTRUMENT) is None
    assert feed.get_spot_price() is None
    await feed.disconnect()


@pytest.mark.asyncio
async def test_answers_heartbeat_test_request(feed, connector, eventually):
    await feed.connect()
    connector.latest.feed(json.dumps({
        "jsonrpc": "2.0",
        "method": "heartbeat",
        "params": {"type": "test_request"},
    }))

    assert await eventually(lambda: connector.latest.sent_json()[-1]["method"] == "public/test")
    await feed.disconnect()


@pytest.mark.asyncio
async def test_ignores_other_channels(feed, connector):
    await feed.connect()
    await feed.on_message(json.dumps({
        "method": "subscription",
        "params": {"channel": "book.ETH-PERPETUAL.100ms", "data": {}},
    }))
    await feed.on_message("not json")
    assert len(feed.prices) == 0
    await feed.disconnect()


@pytest.mark.asyncio
async def test_wait_for_prices_times_out(feed):
    assert await feed.wait_for_prices(0.01) is False
