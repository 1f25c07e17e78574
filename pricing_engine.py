"""
Model-based option pricing and the option registry.
"""

import logging
import time
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Dict, List, Optional, Tuple, Union

from black_scholes import black_scholes, calculate_greeks
from interfaces import IPricer
from market_data import SpotFeed
from models import (
    OptionParams, PriceResult, SpreadConfig, MarketData,
    RFQRequest, QuoteResponse, DeclineResponse
)
from rfq_manager import RFQDecisionEngine

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365 * 24 * 60 * 60


# ============================================================================
# Amount Conversion
# ============================================================================

def scale_price(price: float, quote_decimals: int) -> int:
    """floor(price * 10^quote_decimals) computed exactly from the float's decimal form"""
    scaled = Decimal(repr(price)) * (Decimal(10) ** quote_decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def quote_amount(amount: int, price: float, quote_decimals: int, option_decimals: int) -> int:
    """
    Quote-token base units for `amount` option base units at `price` per option.

    Integer arithmetic only once the price is scaled, so the result never
    picks up float rounding from large amounts.
    """
    return (amount * scale_price(price, quote_decimals)) // (10 ** option_decimals)


def options_for_quote_amount(quote_amt: int, price: float, quote_decimals: int,
                             option_decimals: int) -> Optional[int]:
    """Inverse of quote_amount: option base units bought by quote_amt. None at a zero price."""
    scaled = scale_price(price, quote_decimals)
    if scaled <= 0:
        return None
    return (quote_amt * (10 ** option_decimals)) // scaled


def time_to_expiry(expiry: int, now: float) -> float:
    """Years until expiry, floored at zero"""
    return max(0.0, (expiry - now) / SECONDS_PER_YEAR)


# ============================================================================
# Option Registry
# ============================================================================

class OptionRegistry:
    """In-memory option storage keyed by lower-cased address"""

    def __init__(self):
        self.options: Dict[str, OptionParams] = {}

    def add(self, option: OptionParams) -> OptionParams:
        address = option.option_address.lower()
        if address != option.option_address:
            option = OptionParams(
                option_address=address,
                underlying=option.underlying,
                strike=option.strike,
                expiry=option.expiry,
                is_put=option.is_put,
                decimals=option.decimals,
                collateral_address=option.collateral_address,
                consideration_address=option.consideration_address,
            )
        is_new = address not in self.options
        self.options[address] = option
        if is_new:
            logger.debug(f"Registered option {address}")
        return option

    def get(self, address: str) -> Optional[OptionParams]:
        if not address:
            return None
        return self.options.get(address.lower())

    def contains(self, address: str) -> bool:
        return self.get(address) is not None

    def all(self) -> List[OptionParams]:
        return list(self.options.values())

    def addresses(self) -> List[str]:
        return list(self.options.keys())

    def __len__(self) -> int:
        return len(self.options)


# ============================================================================
# Model Pricer
# ============================================================================

class ModelPricer(IPricer):
    """
    Black-Scholes pricer reading spot from a SpotFeed.

    Mid is the model price at the current spot and the option's implied
    volatility (per-option override or the default). Bid and ask are placed
    around mid by SpreadConfig.
    """

    def __init__(self,
                 spot_feed: Optional[SpotFeed] = None,
                 decision_engine: Optional[RFQDecisionEngine] = None,
                 default_iv: float = 0.80,
                 risk_free_rate: float = 0.05,
                 spread_config: Optional[SpreadConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.registry = OptionRegistry()
        self.spot_feed = spot_feed or SpotFeed()
        self.decisions = decision_engine or RFQDecisionEngine(clock=clock)
        self.default_iv = default_iv
        self.risk_free_rate = risk_free_rate
        self.spread_config = spread_config or SpreadConfig()
        self.iv_overrides: Dict[str, float] = {}
        self._clock = clock

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_option(self, option: OptionParams) -> None:
        option = self.registry.add(option)
        kind = "PUT" if option.is_put else "CALL"
        logger.info(f"Registered {option.underlying} {kind} strike={option.strike} "
                    f"expiry={option.expiry} ({option.option_address[:10]})")

    def is_option(self, address: str) -> bool:
        return self.registry.contains(address)

    def get_option(self, address: str) -> Optional[OptionParams]:
        return self.registry.get(address)

    def get_all_options(self) -> List[OptionParams]:
        return self.registry.all()

    def get_option_addresses(self) -> List[str]:
        return self.registry.addresses()

    # ------------------------------------------------------------------
    # Market inputs
    # ------------------------------------------------------------------

    def set_spot_price(self, symbol: str, price: float) -> None:
        self.spot_feed.set_price(symbol, price)

    def set_iv(self, address: str, iv: float) -> None:
        self.iv_overrides[address.lower()] = iv

    def get_iv(self, address: str) -> float:
        return self.iv_overrides.get(address.lower(), self.default_iv)

    def set_spread_config(self, spread_config: SpreadConfig) -> None:
        self.spread_config = spread_config

    def set_risk_free_rate(self, rate: float) -> None:
        self.risk_free_rate = rate

    def get_market_data(self, address: str) -> Optional[MarketData]:
        option = self.registry.get(address)
        if not option:
            return None
        spot = self.spot_feed.get_cached_price(option.underlying)
        if spot is None:
            return None
        return MarketData(
            spot_price=spot,
            risk_free_rate=self.risk_free_rate,
            implied_volatility=self.get_iv(address)
        )

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def apply_spread(self, mid: float) -> Tuple[float, float]:
        cfg = self.spread_config
        half_min = cfg.min_spread / 2
        bid = max(0.0, mid - max(cfg.bid_spread * mid, half_min))
        ask = mid + max(cfg.ask_spread * mid, half_min)
        # A floored bid must not narrow the quote below min_spread
        ask = max(ask, bid + cfg.min_spread)
        return bid, ask

    def price(self, address: str) -> Optional[PriceResult]:
        option = self.registry.get(address)
        if not option:
            return None

        market = self.get_market_data(address)
        if market is None:
            logger.debug(f"No fresh spot for {option.underlying}, cannot price {address[:10]}")
            return None

        S = market.spot_price
        K = option.strike
        T = time_to_expiry(option.expiry, self._clock())
        r = market.risk_free_rate
        sigma = market.implied_volatility

        bs = black_scholes(S, K, T, r, sigma)
        mid = bs.put_price if option.is_put else bs.call_price
        greeks = calculate_greeks(S, K, T, r, sigma, option.is_put)
        bid, ask = self.apply_spread(mid)

        return PriceResult(
            bid=bid,
            ask=ask,
            mid=mid,
            delta=greeks.delta,
            gamma=greeks.gamma,
            theta=greeks.theta,
            vega=greeks.vega,
            rho=greeks.rho,
            iv=sigma,
            spot_price=S,
            time_to_expiry=T
        )

    def get_ask_quote(self, address: str, amount: int, quote_decimals: int) -> Optional[int]:
        option = self.registry.get(address)
        result = self.price(address)
        if option is None or result is None:
            return None
        return quote_amount(amount, result.ask, quote_decimals, option.decimals)

    def get_bid_quote(self, address: str, amount: int, quote_decimals: int) -> Optional[int]:
        option = self.registry.get(address)
        result = self.price(address)
        if option is None or result is None:
            return None
        return quote_amount(amount, result.bid, quote_decimals, option.decimals)

    def handle_rfq(self, rfq: RFQRequest) -> Union[QuoteResponse, DeclineResponse]:
        return self.decisions.decide(rfq, self)

    def get_summary(self) -> dict:
        priced = 0
        for address in self.registry.addresses():
            if self.price(address) is not None:
                priced += 1
        return {
            "options": len(self.registry),
            "priced": priced,
            "default_iv": self.default_iv,
            "risk_free_rate": self.risk_free_rate,
            "iv_overrides": len(self.iv_overrides),
            "spread": {
                "bid": self.spread_config.bid_spread,
                "ask": self.spread_config.ask_spread,
                "min": self.spread_config.min_spread,
            },
        }
