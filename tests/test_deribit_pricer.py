import pytest

from conftest import CALL_TOKEN, PUT_TOKEN, MAKER, TAKER, USDC
from deribit_feed import DeribitFeed, parse_ticker
from deribit_pricer import DeribitPricer, deribit_instrument_name, format_deribit_expiry
from models import DeribitInstrument, OptionParams, QuoteResponse, RFQRequest, TokenAmount
from pricing_engine import quote_amount
from rfq_manager import RFQDecisionEngine

EXPIRY = 1735286400  # 2024-12-27 08:00 UTC
CALL_NAME = "ETH-27DEC24-3000-C"
PUT_NAME = "ETH-27DEC24-3000-P"


def option(address, is_put=False, strike=3000.0, expiry=EXPIRY):
    return OptionParams(option_address=address, underlying="ETH", strike=strike,
                        expiry=expiry, is_put=is_put)


@pytest.fixture
def feed(clock):
    feed = DeribitFeed("ETH", api=object(), clock=clock)
    for name, kind in ((CALL_NAME, "call"), (PUT_NAME, "put")):
        feed.instruments[name] = DeribitInstrument(name, 3000.0, EXPIRY * 1000, kind)
    return feed


@pytest.fixture
def pricer(feed, clock):
    pricer = DeribitPricer(feed, RFQDecisionEngine(maker_address=MAKER, clock=clock), clock=clock)
    pricer.register_option(option(CALL_TOKEN))
    pricer.register_option(option(PUT_TOKEN, is_put=True))
    return pricer


def set_ticker(feed, name, **data):
    ticker = {
        "best_bid_price": 0.05,
        "best_ask_price": 0.06,
        "mark_price": 0.055,
        "mark_iv": 75.0,
        "index_price": 3100.0,
        "greeks": {"delta": 0.52, "gamma": 0.001},
    }
    ticker.update(data)
    feed.prices.set(name, parse_ticker(ticker))


def test_format_expiry():
    assert format_deribit_expiry(EXPIRY) == "27DEC24"
    assert format_deribit_expiry(1741334400) == "7MAR25"


def test_instrument_name_rounds_strike():
    assert deribit_instrument_name("eth", option(CALL_TOKEN, strike=2999.6)) == CALL_NAME
    assert deribit_instrument_name("ETH", option(PUT_TOKEN, is_put=True)) == PUT_NAME
    assert deribit_instrument_name("ETH", option(CALL_TOKEN, strike=0.3)) is None


def test_registration_maps_known_instruments(pricer):
    assert pricer.has_deribit_mapping(CALL_TOKEN)
    assert pricer.has_deribit_mapping(PUT_TOKEN.upper().replace("0X", "0x"))
    assert pricer.get_deribit_instruments() == [CALL_NAME, PUT_NAME]
    assert pricer.unmatched == []


def test_unmatched_option_is_registered_but_not_priced(pricer):
    orphan = "0x0000000000000000000000000000000000000abc"
    pricer.register_option(option(orphan, strike=9999.0))

    assert pricer.is_option(orphan)
    assert not pricer.has_deribit_mapping(orphan)
    assert pricer.unmatched == [orphan]
    assert pricer.price(orphan) is None


def test_call_price_converted_from_underlying_units(pricer, feed):
    set_ticker(feed, CALL_NAME)
    result = pricer.price(CALL_TOKEN)

    assert result.bid == pytest.approx(155.0)
    assert result.ask == pytest.approx(186.0)
    assert result.mid == pytest.approx(170.5)
    assert result.iv == pytest.approx(0.75)
    assert result.delta == 0.52
    assert result.rho == 0.0
    assert result.spot_price == 3100.0


def test_put_price_divided_by_strike(pricer, feed):
    set_ticker(feed, PUT_NAME)
    result = pricer.price(PUT_TOKEN)

    assert result.bid == pytest.approx(155.0 / 3000)
    assert result.ask == pytest.approx(186.0 / 3000)


def test_spread_markup_widens_around_center(feed, clock):
    pricer = DeribitPricer(feed, spread_markup=0.1, clock=clock)
    pricer.register_option(option(CALL_TOKEN))
    set_ticker(feed, CALL_NAME)

    result = pricer.price(CALL_TOKEN)
    assert result.bid == pytest.approx(170.5 * 0.9)
    assert result.ask == pytest.approx(170.5 * 1.1)


def test_no_price_without_index_or_ticker(pricer, feed):
    assert pricer.price(CALL_TOKEN) is None
    set_ticker(feed, CALL_NAME, index_price=0)
    assert pricer.price(CALL_TOKEN) is None


def test_stale_ticker_is_not_priced(pricer, feed, clock):
    set_ticker(feed, CALL_NAME)
    clock.advance(61)
    assert pricer.price(CALL_TOKEN) is None


def test_handle_rfq_quotes_from_ticker(pricer, feed):
    set_ticker(feed, CALL_NAME)
    rfq = RFQRequest(
        rfq_id="d-1",
        chain_id=1,
        taker_address=TAKER,
        buy_tokens=[TokenAmount(CALL_TOKEN, str(10 ** 18))],
        sell_tokens=[TokenAmount(USDC, "0")],
    )

    response = pricer.handle_rfq(rfq)

    assert isinstance(response, QuoteResponse)
    expected = quote_amount(10 ** 18, pricer.price(CALL_TOKEN).ask, 6, 18)
    assert response.legs[0].taker_amount == expected
