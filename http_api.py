"""
HTTP quote API for direct integrations.

GET /health, /options, /price/{address} and /quote on top of any IPricer.
"""

import logging
import time
import uuid
from typing import Any, Dict, Optional

from aiohttp import web

from config import USDC_DECIMALS
from interfaces import IPricer
from models import PriceResult
from pricing_engine import options_for_quote_amount

logger = logging.getLogger(__name__)

QUOTE_VALIDITY = 30  # seconds


class QuoteError(Exception):
    """Raised for a quote request that cannot be served"""
    def __init__(self, message: str, code: str = "QUOTE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


def _price_fields(result: Optional[PriceResult]) -> Dict[str, Any]:
    keys = ("bid", "ask", "mid", "delta", "gamma", "theta", "vega", "iv")
    fields = {key: getattr(result, key) if result else None for key in keys}
    fields["spotPrice"] = result.spot_price if result else None
    return fields


class QuoteServer:
    """aiohttp application serving prices and indicative quotes"""

    def __init__(self, pricer: IPricer, maker_address: str, chain_id: int,
                 port: int = 3010, host: str = "0.0.0.0",
                 quote_decimals: int = USDC_DECIMALS):
        self.pricer = pricer
        self.maker_address = maker_address
        self.chain_id = chain_id
        self.port = port
        self.host = host
        self.quote_decimals = quote_decimals
        self.app = self.create_app()
        self._runner: Optional[web.AppRunner] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health)
        app.router.add_get("/options", self.options)
        app.router.add_get("/price/{address}", self.option_price)
        app.router.add_get("/quote", self.quote)
        return app

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "chainId": self.chain_id,
            "optionsCount": len(self.pricer.get_all_options()),
            "makerAddress": self.maker_address,
        })

    async def options(self, request: web.Request) -> web.Response:
        priced = []
        for option in self.pricer.get_all_options():
            result = self.pricer.price(option.option_address)
            priced.append({
                "address": option.option_address,
                "underlying": option.underlying,
                "strike": option.strike,
                "expiry": option.expiry,
                "isPut": option.is_put,
                "decimals": option.decimals,
                **_price_fields(result),
            })
        return web.json_response({"options": priced})

    async def option_price(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        result = self.pricer.price(address)
        if result is None:
            return web.json_response({"error": "Option not found or not priced"}, status=404)

        option = self.pricer.get_option(address)
        return web.json_response({
            "optionAddress": address,
            "underlying": option.underlying,
            "strike": option.strike,
            "expiry": option.expiry,
            "isPut": option.is_put,
            **_price_fields(result),
            "rho": result.rho,
            "timeToExpiry": result.time_to_expiry,
        })

    async def quote(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(self.build_quote(dict(request.query)))
        except QuoteError as e:
            logger.warning(f"Quote error: {e.message}")
            return web.json_response({"error": e.message, "code": e.code}, status=400)
        except (ValueError, TypeError) as e:
            logger.warning(f"Quote error: {e}")
            return web.json_response({"error": str(e), "code": "INVALID_PARAMS"}, status=400)

    # ------------------------------------------------------------------
    # Quote logic
    # ------------------------------------------------------------------

    def build_quote(self, params: Dict[str, str]) -> Dict[str, Any]:
        buy_token = params.get("buyToken") or params.get("buy_tokens")
        sell_token = params.get("sellToken") or params.get("sell_tokens")
        sell_amount = params.get("sellAmount") or params.get("sell_amounts")
        buy_amount = params.get("buyAmount") or params.get("buy_amounts")

        if not buy_token or not sell_token:
            raise QuoteError("buyToken and sellToken are required", "MISSING_TOKENS")
        if not sell_amount and not buy_amount:
            raise QuoteError("Either sellAmount or buyAmount is required", "MISSING_AMOUNT")

        is_buying_option = self.pricer.is_option(buy_token)
        is_selling_option = self.pricer.is_option(sell_token)
        if not is_buying_option and not is_selling_option:
            raise QuoteError("Neither token is a registered option", "NOT_AN_OPTION")
        if is_buying_option and is_selling_option:
            raise QuoteError("Cannot trade option for option", "OPTION_FOR_OPTION")

        option_address = buy_token if is_buying_option else sell_token
        option = self.pricer.get_option(option_address)
        result = self.pricer.price(option_address)
        if result is None:
            raise QuoteError("Unable to price option - check spot price", "NO_PRICE")

        if is_buying_option:
            # Taker receives options and pays at the ask
            price = result.ask
            if buy_amount:
                buy_amt = int(buy_amount)
                sell_amt = self.pricer.get_ask_quote(option_address, buy_amt, self.quote_decimals)
            else:
                sell_amt = int(sell_amount)
                buy_amt = options_for_quote_amount(sell_amt, price, self.quote_decimals, option.decimals)
        else:
            # Taker sells options and receives the bid
            price = result.bid
            if sell_amount:
                sell_amt = int(sell_amount)
                buy_amt = self.pricer.get_bid_quote(option_address, sell_amt, self.quote_decimals)
            else:
                buy_amt = int(buy_amount)
                sell_amt = options_for_quote_amount(buy_amt, price, self.quote_decimals, option.decimals)

        if buy_amt is None or sell_amt is None:
            raise QuoteError("Unable to calculate quote amount", "NO_PRICE")
        if buy_amt <= 0 or sell_amt <= 0:
            raise QuoteError("Computed quote amount is zero", "ZERO_AMOUNT")

        return {
            "quoteId": f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
            "buyToken": buy_token,
            "sellToken": sell_token,
            "buyAmount": str(buy_amt),
            "sellAmount": str(sell_amt),
            "price": f"{price:.6f}",
            "expiry": int(time.time()) + QUOTE_VALIDITY,
            "makerAddress": self.maker_address,
            "takerAddress": params.get("takerAddress") or params.get("taker_address"),
            "greeks": {
                "delta": result.delta,
                "gamma": result.gamma,
                "theta": result.theta,
                "vega": result.vega,
            },
            "spotPrice": result.spot_price,
            "iv": result.iv,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Quote server listening on port {self.port}")

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
