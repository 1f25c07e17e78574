"""
EIP-712 signing of Bebop SingleOrder quotes.
"""

import logging
from typing import Any, Dict, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address, to_hex

from config import get_settlement_address
from interfaces import IQuoteSigner
from models import SigningError

logger = logging.getLogger(__name__)

SIGN_SCHEME = "EIP712"

DOMAIN_NAME = "BebopSettlement"
DOMAIN_VERSION = "2"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

SINGLE_ORDER_TYPE = [
    {"name": "partner_id", "type": "uint64"},
    {"name": "expiry", "type": "uint256"},
    {"name": "taker_address", "type": "address"},
    {"name": "maker_address", "type": "address"},
    {"name": "maker_nonce", "type": "uint256"},
    {"name": "taker_token", "type": "address"},
    {"name": "maker_token", "type": "address"},
    {"name": "taker_amount", "type": "uint256"},
    {"name": "maker_amount", "type": "uint256"},
    {"name": "receiver", "type": "address"},
    {"name": "packed_commands", "type": "uint256"},
]


def parse_uint(value: Any) -> int:
    """Integer from an int, a decimal string or a 0x-prefixed hex string"""
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    text = str(value)
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)


def build_typed_data(chain_id: int, message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Full EIP-712 document for a SingleOrder built from a quote response msg.

    Amounts of repeated tokens across quotes are summed; the first taker and
    maker token are signed.
    """
    quotes = message.get("quotes") or []
    if not quotes:
        raise SigningError("Quote has no legs to sign")

    taker_totals: Dict[str, int] = {}
    maker_totals: Dict[str, int] = {}
    for quote in quotes:
        taker_token = quote["taker_token"].lower()
        maker_token = quote["maker_token"].lower()
        taker_totals[taker_token] = taker_totals.get(taker_token, 0) + parse_uint(quote["taker_amount"])
        maker_totals[maker_token] = maker_totals.get(maker_token, 0) + parse_uint(quote["maker_amount"])

    taker_token, taker_amount = next(iter(taker_totals.items()))
    maker_token, maker_amount = next(iter(maker_totals.items()))

    taker_address = message["taker_address"]
    receiver = message.get("receiver") or taker_address

    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "SingleOrder": SINGLE_ORDER_TYPE,
        },
        "primaryType": "SingleOrder",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": int(chain_id),
            "verifyingContract": to_checksum_address(get_settlement_address(int(chain_id))),
        },
        "message": {
            "partner_id": parse_uint(message.get("onchain_partner_id")),
            "expiry": parse_uint(message["expiry"]),
            "taker_address": to_checksum_address(taker_address),
            "maker_address": to_checksum_address(message["maker_address"]),
            "maker_nonce": parse_uint(message.get("maker_nonce")),
            "taker_token": to_checksum_address(taker_token),
            "maker_token": to_checksum_address(maker_token),
            "taker_amount": taker_amount,
            "maker_amount": maker_amount,
            "receiver": to_checksum_address(receiver),
            "packed_commands": parse_uint(message.get("packed_commands")),
        },
    }


class QuoteSigner(IQuoteSigner):
    """Signs quote responses with the maker's private key"""

    def __init__(self, private_key: str):
        key = private_key if private_key.startswith("0x") else f"0x{private_key}"
        self.account = Account.from_key(key)

    @property
    def address(self) -> str:
        return self.account.address

    def sign(self, chain_id: int, message: Dict[str, Any]) -> Tuple[str, str]:
        signing_type = message.get("order_signing_type") or "SingleOrder"
        if signing_type != "SingleOrder":
            raise SigningError(f"Unsupported order signing type: {signing_type}")

        try:
            typed_data = build_typed_data(chain_id, message)
            signable = encode_typed_data(full_message=typed_data)
            signed = self.account.sign_message(signable)
        except SigningError:
            raise
        except Exception as e:
            raise SigningError(f"Failed to sign quote: {e}") from e

        return to_hex(signed.signature), SIGN_SCHEME
