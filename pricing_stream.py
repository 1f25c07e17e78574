"""
Continuous protobuf price broadcast to the Bebop maker pricing socket.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from config import BEBOP_WS_BASE, USDC_DECIMALS
from interfaces import IPricer
from websocket_client import WebSocketConfig, WebSocketManager, ConnectFactory
from wire_format import encode_levels

logger = logging.getLogger(__name__)

MAX_SPREAD_BPS = 500
LEVEL_SIZE = 1000.0


def pricing_url(chain: str) -> str:
    return f"{BEBOP_WS_BASE}/{chain}/v3/maker/pricing?format=protobuf"


class PricingStream(WebSocketManager):
    """
    Publishes one bid and one ask level per quotable option.

    The first update goes out shortly after connecting, then on a fixed
    interval while the socket is open. Options without a price, with a
    non-positive side or with a spread above MAX_SPREAD_BPS are left out;
    nothing is sent when no option survives.
    """

    def __init__(self,
                 chain: str,
                 chain_id: int,
                 marketmaker: str,
                 authorization: str,
                 maker_address: str,
                 quote_token_address: str,
                 pricer: IPricer,
                 interval: float = 10.0,
                 initial_delay: float = 1.0,
                 quote_decimals: int = USDC_DECIMALS,
                 connect_factory: Optional[ConnectFactory] = None):
        config = WebSocketConfig(
            url=pricing_url(chain),
            headers={
                "marketmaker": marketmaker,
                "authorization": authorization,
            },
            name=f"bebop-pricing-{chain}",
            heartbeat_interval=30.0,
            reconnect_base_delay=5.0,
            max_reconnect_delay=300.0,
        )
        super().__init__(config, connect_factory)
        self.chain_id = chain_id
        self.maker_address = maker_address
        self.quote_token_address = quote_token_address
        self.pricer = pricer
        self.interval = interval
        self.initial_delay = initial_delay
        self.quote_decimals = quote_decimals
        self._send_task: Optional[asyncio.Task] = None

        self.stream_stats = {
            "updates_sent": 0,
            "updates_skipped": 0,
        }

    def build_levels(self) -> List[Dict[str, Any]]:
        levels = []
        skipped = 0

        for address in self.pricer.get_option_addresses():
            book = self.pricer.get_price(address)
            if not book or not book["bids"] or not book["asks"]:
                skipped += 1
                continue

            bid = book["bids"][0][0]
            ask = book["asks"][0][0]
            if bid <= 0 or ask <= 0:
                logger.debug(f"{address[:10]} skipped (zero price: bid={bid:.2f} ask={ask:.2f})")
                skipped += 1
                continue

            mid = (bid + ask) / 2
            spread_bps = (ask - bid) / mid * 10000
            if spread_bps > MAX_SPREAD_BPS:
                logger.debug(f"{address[:10]} skipped (spread {spread_bps:.0f} bps)")
                skipped += 1
                continue

            option = self.pricer.get_option(address)
            levels.append({
                "base_address": address,
                "base_decimals": option.decimals,
                "quote_address": self.quote_token_address,
                "quote_decimals": self.quote_decimals,
                "bids": [(bid, LEVEL_SIZE)],
                "asks": [(ask, LEVEL_SIZE)],
            })

        logger.debug(f"{len(levels)} options priced, {skipped} skipped")
        return levels

    async def send_pricing(self) -> bool:
        if not self.is_connected:
            logger.warning("Pricing stream not ready, skipping update")
            return False

        try:
            levels = self.build_levels()
            if not levels:
                self.stream_stats["updates_skipped"] += 1
                logger.info("No valid options to price, nothing sent")
                return False

            payload = encode_levels(self.chain_id, self.maker_address, levels)
        except Exception as e:
            logger.error(f"Failed to build pricing update: {e}")
            return False

        sent = await self.send(payload)
        if sent:
            self.stream_stats["updates_sent"] += 1
            logger.info(f"Sent pricing update ({len(payload)} bytes, {len(levels)} options)")
        return sent

    async def _send_loop(self):
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.send_pricing()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in pricing loop: {e}")
                await asyncio.sleep(self.interval)

    def _stop_sending(self):
        if self._send_task:
            self._send_task.cancel()
            self._send_task = None

    async def on_open(self) -> None:
        self._stop_sending()
        self._send_task = asyncio.create_task(self._send_loop())

    async def on_message(self, raw) -> None:
        # Venue replies on this socket are error reports
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        logger.info(f"Pricing response: {text[:500]}")

    async def on_close(self) -> None:
        self._stop_sending()

    async def stop(self):
        self._stop_sending()
        await super().stop()

    def get_stats(self) -> dict:
        return {**super().get_stats(), **self.stream_stats}
