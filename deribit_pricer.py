"""
Exchange-sourced option pricer.

Maps on-chain option tokens to Deribit instruments and prices them from the
live ticker instead of the model.
"""

import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from deribit_feed import DeribitFeed
from interfaces import IPricer
from models import OptionParams, PriceResult, RFQRequest, QuoteResponse, DeclineResponse
from pricing_engine import OptionRegistry, quote_amount, time_to_expiry
from rfq_manager import RFQDecisionEngine

logger = logging.getLogger(__name__)

MONTHS = ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]


def format_deribit_expiry(expiry: int) -> str:
    """Unix seconds to Deribit's DMMMYY (UTC date, no leading zero on the day)"""
    date = datetime.fromtimestamp(expiry, tz=timezone.utc)
    return f"{date.day}{MONTHS[date.month - 1]}{date.strftime('%y')}"


def deribit_instrument_name(underlying: str, option: OptionParams) -> Optional[str]:
    strike = int(math.floor(option.strike + 0.5))
    if strike <= 0:
        return None
    kind = "P" if option.is_put else "C"
    return f"{underlying.upper()}-{format_deribit_expiry(option.expiry)}-{strike}-{kind}"


class DeribitPricer(IPricer):
    """
    Prices options from the Deribit ticker cache.

    Venue prices are in units of the underlying and are converted with the
    ticker's index price. Put tokens carry one unit of quote-currency
    notional, so put prices are divided by the strike.
    """

    def __init__(self, feed: DeribitFeed,
                 decision_engine: Optional[RFQDecisionEngine] = None,
                 spread_markup: float = 0.0,
                 clock: Callable[[], float] = time.time):
        self.feed = feed
        self.registry = OptionRegistry()
        self.decisions = decision_engine or RFQDecisionEngine(clock=clock)
        self.spread_markup = spread_markup
        self.option_to_deribit: Dict[str, str] = {}
        self.unmatched: List[str] = []
        self._clock = clock

    def register_option(self, option: OptionParams) -> None:
        option = self.registry.add(option)
        address = option.option_address

        name = deribit_instrument_name(self.feed.underlying, option)
        if name and self.feed.has_instrument(name):
            self.option_to_deribit[address] = name
            logger.info(f"Mapped {address[:10]} -> {name}")
        else:
            if address not in self.unmatched:
                self.unmatched.append(address)
            logger.warning(f"No Deribit instrument for {address[:10]} ({name})")

    def has_deribit_mapping(self, address: str) -> bool:
        return address.lower() in self.option_to_deribit

    def get_deribit_instruments(self) -> List[str]:
        """Distinct mapped instrument names, in registration order"""
        return list(dict.fromkeys(self.option_to_deribit.values()))

    def is_option(self, address: str) -> bool:
        return self.registry.contains(address)

    def get_option(self, address: str) -> Optional[OptionParams]:
        return self.registry.get(address)

    def get_all_options(self) -> List[OptionParams]:
        return self.registry.all()

    def get_option_addresses(self) -> List[str]:
        return self.registry.addresses()

    def price(self, address: str) -> Optional[PriceResult]:
        option = self.registry.get(address)
        if not option:
            return None

        name = self.option_to_deribit.get(option.option_address)
        if not name:
            return None

        ticker = self.feed.get_price(name)
        if ticker is None:
            return None

        index_price = ticker.index_price
        if index_price <= 0:
            return None

        bid = ticker.best_bid_price * index_price
        ask = ticker.best_ask_price * index_price
        mid = ticker.mark_price * index_price

        if option.is_put and option.strike > 0:
            bid /= option.strike
            ask /= option.strike
            mid /= option.strike

        if self.spread_markup > 0:
            center = (bid + ask) / 2
            bid = center * (1 - self.spread_markup)
            ask = center * (1 + self.spread_markup)

        return PriceResult(
            bid=max(0.0, bid),
            ask=ask,
            mid=mid,
            delta=ticker.delta,
            gamma=ticker.gamma,
            theta=ticker.theta,
            vega=ticker.vega,
            rho=0.0,
            iv=ticker.mark_iv / 100,
            spot_price=index_price,
            time_to_expiry=time_to_expiry(option.expiry, self._clock())
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
