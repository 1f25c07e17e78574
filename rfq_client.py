"""
Bebop RFQ maker connection.

Receives taker_quote requests, resolves them through the active pricer and
answers every request with a signed quote or a decline.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional, Union

from config import BEBOP_WS_BASE
from event_bus import EventBus
from interfaces import IPricer, IQuoteSigner
from models import (
    RFQRequest, QuoteResponse, DeclineResponse, OrderNotification, OrderStatus, SigningError
)
from rfq_manager import RFQFactory
from websocket_client import WebSocketConfig, WebSocketManager, ConnectFactory

logger = logging.getLogger(__name__)

ORDER_EVENT = "order"


def quote_url(chain: str) -> str:
    return f"{BEBOP_WS_BASE}/{chain}/v3/maker/quote"


def build_quote_message(quote: QuoteResponse) -> Dict[str, Any]:
    """taker_quote response body; echo fields are copied from the request"""
    echo = quote.echo
    msg: Dict[str, Any] = {
        "quote_id": quote.rfq_id,
        "event_id": echo.get("event_id"),
        "order_signing_type": echo.get("order_signing_type"),
        "order_type": echo.get("order_type"),
        "onchain_partner_id": echo.get("onchain_partner_id"),
        "expiry": quote.expiry,
        "taker_address": echo.get("taker_address", quote.taker_address),
        "maker_address": quote.maker_address,
        "maker_nonce": echo.get("maker_nonce"),
        "quotes": [
            {
                "taker_token": leg.taker_token,
                "maker_token": leg.maker_token,
                "taker_amount": str(leg.taker_amount),
                "maker_amount": str(leg.maker_amount),
                "reference_price": leg.reference_price,
            }
            for leg in quote.legs
        ],
        "receiver": echo.get("receiver"),
        "commands": echo.get("commands"),
        "packed_commands": echo.get("packed_commands"),
        "fee_native": echo.get("fee_native"),
        "is_aggregate_order": echo.get("is_aggregate_order"),
        "expiry_type": echo.get("expiry_type") or "standard",
    }
    if echo.get("origin_address"):
        msg["origin_address"] = echo["origin_address"]
    return msg


def build_decline_message(rfq_id: str, reason: Optional[str]) -> Dict[str, Any]:
    return {
        "msg_topic": "taker_quote",
        "msg_type": "decline",
        "msg": {
            "quote_id": rfq_id,
            "reason": reason or "Declined",
        },
    }


class BebopRFQClient(WebSocketManager):
    """
    RFQ protocol client.

    Each request is answered exactly once. A configured signer that fails
    turns the quote into a decline; no signer sends the quote unsigned.
    """

    def __init__(self,
                 chain: str,
                 chain_id: int,
                 marketmaker: str,
                 authorization: str,
                 pricer: IPricer,
                 signer: Optional[IQuoteSigner] = None,
                 heartbeat_interval: float = 30.0,
                 connect_factory: Optional[ConnectFactory] = None):
        config = WebSocketConfig(
            url=quote_url(chain),
            headers={
                "marketmaker": marketmaker,
                "authorization": authorization,
            },
            name=f"bebop-rfq-{chain}",
            heartbeat_interval=heartbeat_interval,
            reconnect_base_delay=1.0,
            max_reconnect_delay=300.0,
        )
        super().__init__(config, connect_factory)
        self.chain = chain
        self.chain_id = chain_id
        self.pricer = pricer
        self.signer = signer
        self.events = EventBus()

        self.rfq_stats = {
            "requests": 0,
            "quotes_sent": 0,
            "declines_sent": 0,
            "signing_failures": 0,
        }

        if signer is None:
            logger.warning("No private key configured - quotes will be sent unsigned")

    def on_order(self, handler: Callable[[OrderNotification], None]) -> Callable[[], None]:
        """Register order observer. Returns an unsubscribe handle."""
        return self.events.subscribe(ORDER_EVENT, handler)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def on_message(self, raw) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Received non-JSON message: {str(raw)[:100]}")
            return

        logger.debug(f"Received message: {raw}")

        if RFQFactory.is_taker_quote_request(message):
            await self.handle_rfq(RFQFactory.from_taker_quote(message))
            return

        msg_type = message.get("type")
        if msg_type == "rfq":
            await self.handle_rfq(RFQFactory.from_legacy(message, self.chain_id))
        elif msg_type == "order":
            self._handle_order(message)
        elif msg_type == "heartbeat":
            logger.debug("Heartbeat received")
        elif message.get("msg_type") == "error" or message.get("error"):
            logger.error(f"Bebop error: {raw}")
        else:
            logger.info(f"Unknown message type: {str(raw)[:200]}")

    def _handle_order(self, message: dict) -> None:
        try:
            status = OrderStatus(message.get("status"))
        except ValueError:
            logger.warning(f"Unknown order status: {message.get('status')}")
            return

        order = OrderNotification(
            rfq_id=str(message.get("rfq_id", "")),
            order_hash=str(message.get("order_hash", "")),
            status=status
        )
        logger.info(f"Order update: {order.rfq_id} - {order.status.value}")
        self.events.publish(ORDER_EVENT, order)

    async def handle_rfq(self, rfq: RFQRequest) -> None:
        self.rfq_stats["requests"] += 1
        logger.info(f"RFQ received: {rfq.rfq_id}")

        try:
            response = self.pricer.handle_rfq(rfq)
        except Exception as e:
            logger.error(f"RFQ handler error: {e}")
            response = DeclineResponse(rfq_id=rfq.rfq_id, reason="Handler error")

        await self.respond(response)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def respond(self, response: Union[QuoteResponse, DeclineResponse]) -> bool:
        if isinstance(response, DeclineResponse):
            return await self.decline(response.rfq_id, response.reason)
        return await self.send_quote(response)

    async def send_quote(self, quote: QuoteResponse) -> bool:
        if any(leg.taker_amount <= 0 or leg.maker_amount <= 0 for leg in quote.legs):
            logger.error(f"Refusing to send quote {quote.rfq_id} with zero amounts")
            return await self.decline(quote.rfq_id, "Computed quote amount is zero")

        chain_id = quote.chain_id or self.chain_id
        msg = build_quote_message(quote)

        if self.signer is not None:
            try:
                signature, scheme = self.signer.sign(chain_id, msg)
            except SigningError as e:
                self.rfq_stats["signing_failures"] += 1
                logger.error(f"Failed to sign quote {quote.rfq_id}: {e}")
                return await self.decline(quote.rfq_id, "Quote signing failed")
            msg["signature"] = signature
            msg["sign_scheme"] = scheme
            quote.signature = signature
            quote.sign_scheme = scheme
        else:
            logger.warning(f"Sending unsigned quote {quote.rfq_id}")

        sent = await self.send_json({
            "chain_id": chain_id,
            "msg_topic": "taker_quote",
            "msg_type": "response",
            "msg": msg,
        })
        if sent:
            self.rfq_stats["quotes_sent"] += 1
            logger.info(f"Quote sent for {quote.rfq_id}")
        return sent

    async def decline(self, rfq_id: str, reason: Optional[str] = None) -> bool:
        sent = await self.send_json(build_decline_message(rfq_id, reason))
        if sent:
            self.rfq_stats["declines_sent"] += 1
            logger.info(f"Declined {rfq_id}: {reason}")
        return sent

    def get_stats(self) -> dict:
        return {**super().get_stats(), **self.rfq_stats}
