import pytest

from conftest import CALL_TOKEN, PUT_TOKEN, MAKER, NOW, TAKER, USDC
from models import DeclineResponse, QuoteResponse, RFQRequest, TokenAmount
from pricing_engine import scale_price
from rfq_manager import RFQDecisionEngine, RFQFactory

ONE_OPTION = 10 ** 18


def make_rfq(buy_token, buy_amount, sell_token, sell_amount, rfq_id="rfq-1"):
    return RFQRequest(
        rfq_id=rfq_id,
        chain_id=1,
        taker_address=TAKER,
        buy_tokens=[TokenAmount(buy_token, str(buy_amount))],
        sell_tokens=[TokenAmount(sell_token, str(sell_amount))],
    )


# ============================================================================
# Factory
# ============================================================================

TAKER_QUOTE = {
    "chain_id": 1,
    "msg_topic": "taker_quote",
    "msg_type": "request",
    "msg": {
        "quote_id": "abc-123",
        "event_id": "evt-9",
        "taker_address": TAKER,
        "receiver": TAKER,
        "maker_nonce": "42",
        "expiry": NOW + 30,
        "quotes": [{
            "taker_token": USDC.upper().replace("0X", "0x"),
            "maker_token": CALL_TOKEN,
            "taker_amount": "0",
            "maker_amount": str(ONE_OPTION),
        }],
    },
}


def test_from_taker_quote():
    rfq = RFQFactory.from_taker_quote(TAKER_QUOTE)

    assert rfq.rfq_id == "abc-123"
    assert rfq.chain_id == 1
    assert rfq.buy_tokens == [TokenAmount(CALL_TOKEN, str(ONE_OPTION))]
    assert rfq.sell_tokens == [TokenAmount(USDC, "0")]
    assert rfq.receiver_address == TAKER
    assert rfq.echo["event_id"] == "evt-9"
    assert rfq.echo["maker_nonce"] == "42"
    assert "quotes" not in rfq.echo


def test_is_taker_quote_request():
    assert RFQFactory.is_taker_quote_request(TAKER_QUOTE)
    assert not RFQFactory.is_taker_quote_request({"type": "rfq"})


def test_from_legacy_uses_default_chain():
    rfq = RFQFactory.from_legacy({
        "type": "rfq",
        "rfq_id": "r1",
        "taker_address": TAKER,
        "buy_tokens": [{"token": CALL_TOKEN, "amount": "5"}],
        "sell_tokens": [{"token": USDC}, {"amount": "1"}],
    }, default_chain_id=8453)

    assert rfq.chain_id == 8453
    assert rfq.buy_tokens == [TokenAmount(CALL_TOKEN, "5")]
    assert rfq.sell_tokens == [TokenAmount(USDC, "0")]


# ============================================================================
# Decisions
# ============================================================================

def test_taker_buys_option_at_ask(model_pricer):
    response = model_pricer.handle_rfq(make_rfq(CALL_TOKEN, ONE_OPTION, USDC, 0))

    assert isinstance(response, QuoteResponse)
    leg = response.legs[0]
    ask = model_pricer.price(CALL_TOKEN).ask
    assert leg.maker_token == CALL_TOKEN
    assert leg.maker_amount == ONE_OPTION
    assert leg.taker_token == USDC
    assert leg.taker_amount == scale_price(ask, 6)
    assert leg.reference_price == leg.taker_amount / leg.maker_amount
    assert response.maker_address == MAKER
    assert response.expiry == NOW + 60


def test_taker_sells_option_at_bid(model_pricer):
    response = model_pricer.handle_rfq(make_rfq(USDC, 0, PUT_TOKEN, 2 * ONE_OPTION))

    assert isinstance(response, QuoteResponse)
    leg = response.legs[0]
    bid = model_pricer.price(PUT_TOKEN).bid
    assert leg.taker_token == PUT_TOKEN
    assert leg.taker_amount == 2 * ONE_OPTION
    assert leg.maker_token == USDC
    assert leg.maker_amount == scale_price(bid, 6) * 2


@pytest.mark.parametrize("rfq, reason", [
    (RFQRequest("r", 1, TAKER, [], [TokenAmount(USDC, "1")]), "Invalid tokens"),
    (make_rfq(USDC, 1, "0xweth", 1), "No option token in request"),
    (make_rfq(CALL_TOKEN, 1, PUT_TOKEN, 1), "Cannot trade option for option"),
    (make_rfq(CALL_TOKEN, 1, USDC, 0), "Computed quote amount is zero"),
    (make_rfq(CALL_TOKEN, 0, USDC, 0), "Computed quote amount is zero"),
])
def test_declines(model_pricer, rfq, reason):
    response = model_pricer.handle_rfq(rfq)
    assert isinstance(response, DeclineResponse)
    assert response.reason == reason
    assert response.rfq_id == rfq.rfq_id


def test_declines_without_price(model_pricer, clock):
    clock.advance(10)
    response = model_pricer.handle_rfq(make_rfq(CALL_TOKEN, ONE_OPTION, USDC, 0))
    assert response.reason == "No price available for option"


def test_declines_without_maker_address(model_pricer, clock):
    engine = RFQDecisionEngine(maker_address=None, clock=clock)
    response = engine.decide(make_rfq(CALL_TOKEN, ONE_OPTION, USDC, 0), model_pricer)
    assert response.reason == "Maker address not configured"


def test_unexpected_error_becomes_decline(model_pricer):
    response = model_pricer.handle_rfq(make_rfq(CALL_TOKEN, "lots", USDC, 0))
    assert isinstance(response, DeclineResponse)
    assert response.reason.startswith("Error: ")


def test_stats(model_pricer):
    model_pricer.handle_rfq(make_rfq(CALL_TOKEN, ONE_OPTION, USDC, 0))
    model_pricer.handle_rfq(make_rfq(USDC, 1, USDC, 1))

    stats = model_pricer.decisions.get_stats()
    assert stats == {"requests": 2, "quoted": 1, "declined": 1}
