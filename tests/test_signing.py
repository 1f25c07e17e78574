import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from conftest import CALL_TOKEN, MAKER, TAKER, USDC
from models import SigningError
from signing import QuoteSigner, build_typed_data, parse_uint

PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def quote_message(**overrides):
    message = {
        "quote_id": "q-1",
        "order_signing_type": "SingleOrder",
        "onchain_partner_id": 0,
        "expiry": 1700000060,
        "taker_address": TAKER,
        "maker_address": MAKER,
        "maker_nonce": "0x2a",
        "quotes": [{
            "taker_token": USDC,
            "maker_token": CALL_TOKEN,
            "taker_amount": "344356100",
            "maker_amount": str(10 ** 18),
        }],
        "receiver": None,
        "packed_commands": "0",
    }
    message.update(overrides)
    return message


def test_parse_uint():
    assert parse_uint(None) == 0
    assert parse_uint("") == 0
    assert parse_uint(7) == 7
    assert parse_uint("42") == 42
    assert parse_uint("0x2A") == 42


def test_typed_data_document():
    typed = build_typed_data(1, quote_message())

    assert typed["primaryType"] == "SingleOrder"
    assert typed["domain"]["name"] == "BebopSettlement"
    assert typed["domain"]["version"] == "2"
    assert typed["domain"]["chainId"] == 1
    msg = typed["message"]
    assert msg["maker_nonce"] == 42
    assert msg["taker_amount"] == 344356100
    assert msg["maker_amount"] == 10 ** 18
    assert msg["receiver"] == msg["taker_address"]
    assert msg["maker_token"].lower() == CALL_TOKEN


def test_typed_data_sums_repeated_tokens():
    leg = {"taker_token": USDC, "maker_token": CALL_TOKEN, "taker_amount": "5", "maker_amount": "7"}
    typed = build_typed_data(1, quote_message(quotes=[leg, dict(leg)]))
    assert typed["message"]["taker_amount"] == 10
    assert typed["message"]["maker_amount"] == 14


def test_typed_data_requires_legs():
    with pytest.raises(SigningError):
        build_typed_data(1, quote_message(quotes=[]))


def test_signature_recovers_to_signer():
    signer = QuoteSigner(PRIVATE_KEY[2:])
    message = quote_message()

    signature, scheme = signer.sign(1, message)

    assert scheme == "EIP712"
    assert signature.startswith("0x")
    assert len(signature) == 132
    signable = encode_typed_data(full_message=build_typed_data(1, message))
    assert Account.recover_message(signable, signature=signature) == signer.address


def test_missing_signing_type_is_single_order():
    signer = QuoteSigner(PRIVATE_KEY)
    signature, _ = signer.sign(1, quote_message(order_signing_type=None))
    assert signature.startswith("0x")


def test_unsupported_signing_type():
    with pytest.raises(SigningError):
        QuoteSigner(PRIVATE_KEY).sign(1, quote_message(order_signing_type="AggregateOrder"))


def test_invalid_message_raises_signing_error():
    with pytest.raises(SigningError):
        QuoteSigner(PRIVATE_KEY).sign(1, quote_message(maker_address="not-an-address"))
