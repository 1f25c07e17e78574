"""
RFQ parsing and the quote/decline decision shared by every pricer
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from config import USDC_DECIMALS
from models import (
    RFQRequest, TokenAmount, QuoteLeg, QuoteResponse, DeclineResponse
)

logger = logging.getLogger(__name__)

# Protocol fields returned untouched in a quote response
ECHO_FIELDS = (
    "event_id",
    "order_signing_type",
    "order_type",
    "onchain_partner_id",
    "maker_nonce",
    "commands",
    "packed_commands",
    "fee_native",
    "is_aggregate_order",
    "origin_address",
    "expiry_type",
    "receiver",
    "taker_address",
)


# ============================================================================
# RFQ Factory
# ============================================================================

class RFQFactory:
    """Factory for creating RFQRequest objects from the different wire formats"""

    @staticmethod
    def _token_amounts(items: List[dict]) -> List[TokenAmount]:
        return [
            TokenAmount(token=str(item["token"]).lower(), amount=str(item.get("amount", "0")))
            for item in items or []
            if item.get("token")
        ]

    @staticmethod
    def from_taker_quote(data: dict) -> RFQRequest:
        """
        Create RFQRequest from a taker_quote request.

        The taker receives maker_token/maker_amount and pays
        taker_token/taker_amount for each entry of msg.quotes.
        """
        msg = data.get("msg") or {}
        buy_tokens: List[TokenAmount] = []
        sell_tokens: List[TokenAmount] = []
        for quote in msg.get("quotes") or []:
            if quote.get("maker_token"):
                buy_tokens.append(TokenAmount(
                    token=str(quote["maker_token"]).lower(),
                    amount=str(quote.get("maker_amount", "0"))
                ))
            if quote.get("taker_token"):
                sell_tokens.append(TokenAmount(
                    token=str(quote["taker_token"]).lower(),
                    amount=str(quote.get("taker_amount", "0"))
                ))

        echo = {key: msg[key] for key in ECHO_FIELDS if key in msg}

        return RFQRequest(
            rfq_id=str(msg.get("quote_id", "")),
            chain_id=int(data.get("chain_id", 1)),
            taker_address=str(msg.get("taker_address", "")),
            buy_tokens=buy_tokens,
            sell_tokens=sell_tokens,
            receiver_address=msg.get("receiver"),
            expiry=msg.get("expiry"),
            echo=echo
        )

    @staticmethod
    def from_legacy(data: dict, default_chain_id: int = 1) -> RFQRequest:
        """Create RFQRequest from the flat {type: "rfq", ...} format"""
        return RFQRequest(
            rfq_id=str(data.get("rfq_id", "")),
            chain_id=int(data.get("chain_id", default_chain_id)),
            taker_address=str(data.get("taker_address", "")),
            buy_tokens=RFQFactory._token_amounts(data.get("buy_tokens")),
            sell_tokens=RFQFactory._token_amounts(data.get("sell_tokens")),
            receiver_address=data.get("receiver_address"),
            expiry=data.get("expiry"),
            echo={}
        )

    @staticmethod
    def is_taker_quote_request(data: dict) -> bool:
        return data.get("msg_topic") == "taker_quote" and data.get("msg_type") == "request"


# ============================================================================
# Decision Engine
# ============================================================================

class RFQDecisionEngine:
    """
    Turns an RFQRequest into a quote or a decline using an IPricer.

    Exactly one side of the request must be a registered option. Taker buying
    the option is quoted at the ask, taker selling at the bid. Every failure
    path becomes a decline with a specific reason; decide() never raises.
    """

    def __init__(self,
                 maker_address: Optional[str] = None,
                 quote_validity: int = 60,
                 quote_decimals: int = USDC_DECIMALS,
                 clock: Callable[[], float] = time.time):
        self.maker_address = maker_address
        self.quote_validity = quote_validity
        self.quote_decimals = quote_decimals
        self._clock = clock

        self.stats = {
            "requests": 0,
            "quoted": 0,
            "declined": 0,
        }

    def _decline(self, rfq_id: str, reason: str) -> DeclineResponse:
        self.stats["declined"] += 1
        logger.info(f"Decline {rfq_id[:8]}: {reason}")
        return DeclineResponse(rfq_id=rfq_id, reason=reason)

    def decide(self, rfq: RFQRequest, pricer) -> Union[QuoteResponse, DeclineResponse]:
        self.stats["requests"] += 1
        try:
            return self._decide(rfq, pricer)
        except Exception as e:
            logger.error(f"Error handling RFQ {rfq.rfq_id}: {e}")
            return self._decline(rfq.rfq_id, f"Error: {e}")

    def _decide(self, rfq: RFQRequest, pricer) -> Union[QuoteResponse, DeclineResponse]:
        if not rfq.buy_tokens or not rfq.sell_tokens:
            return self._decline(rfq.rfq_id, "Invalid tokens")

        buy = rfq.buy_tokens[0]
        sell = rfq.sell_tokens[0]
        logger.debug(f"RFQ {rfq.rfq_id[:8]}: buy {buy.amount} of {buy.token[:10]}, "
                     f"sell {sell.amount} of {sell.token[:10]}")

        is_buying_option = pricer.is_option(buy.token)
        is_selling_option = pricer.is_option(sell.token)

        if not is_buying_option and not is_selling_option:
            return self._decline(rfq.rfq_id, "No option token in request")
        if is_buying_option and is_selling_option:
            return self._decline(rfq.rfq_id, "Cannot trade option for option")

        if not self.maker_address:
            return self._decline(rfq.rfq_id, "Maker address not configured")

        if is_buying_option:
            # Maker sells options at the ask, taker pays the quote token
            option_amount = int(buy.amount)
            if option_amount <= 0:
                return self._decline(rfq.rfq_id, "Computed quote amount is zero")
            cost = pricer.get_ask_quote(buy.token, option_amount, self.quote_decimals)
            if cost is None:
                return self._decline(rfq.rfq_id, "No price available for option")
            if cost <= 0:
                return self._decline(rfq.rfq_id, "Computed quote amount is zero")
            leg = QuoteLeg(
                taker_token=sell.token,
                maker_token=buy.token,
                taker_amount=cost,
                maker_amount=option_amount
            )
        else:
            # Maker buys options at the bid, taker receives the quote token
            option_amount = int(sell.amount)
            if option_amount <= 0:
                return self._decline(rfq.rfq_id, "Computed quote amount is zero")
            payout = pricer.get_bid_quote(sell.token, option_amount, self.quote_decimals)
            if payout is None:
                return self._decline(rfq.rfq_id, "No price available for option")
            if payout <= 0:
                return self._decline(rfq.rfq_id, "Computed quote amount is zero")
            leg = QuoteLeg(
                taker_token=sell.token,
                maker_token=buy.token,
                taker_amount=option_amount,
                maker_amount=payout
            )

        self.stats["quoted"] += 1
        logger.info(f"Quote {rfq.rfq_id[:8]}: maker gives {leg.maker_amount} of "
                    f"{leg.maker_token[:10]} for {leg.taker_amount} of {leg.taker_token[:10]}")

        return QuoteResponse(
            rfq_id=rfq.rfq_id,
            chain_id=rfq.chain_id,
            maker_address=self.maker_address,
            taker_address=rfq.taker_address,
            legs=[leg],
            expiry=int(self._clock()) + self.quote_validity,
            echo=dict(rfq.echo)
        )

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
