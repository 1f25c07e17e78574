"""
Abstract interfaces for options market maker components.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from models import (
    OptionParams, OptionMetadata, PriceResult, PriceLevel,
    RFQRequest, QuoteResponse, DeclineResponse
)


# ============================================================================
# Pricing Interfaces
# ============================================================================

class IPricer(ABC):
    """
    Option registry plus live quoting function.

    Implemented by the model-based pricer and the exchange-feed pricer;
    one of them is selected at startup.
    """

    @abstractmethod
    def register_option(self, option: OptionParams) -> None:
        """Register an option token for quoting"""
        pass

    def register_options(self, options: Iterable[OptionParams]) -> None:
        for option in options:
            self.register_option(option)

    @abstractmethod
    def is_option(self, address: str) -> bool:
        """Check if an address is a registered option"""
        pass

    @abstractmethod
    def get_option(self, address: str) -> Optional[OptionParams]:
        pass

    @abstractmethod
    def get_all_options(self) -> List[OptionParams]:
        pass

    @abstractmethod
    def get_option_addresses(self) -> List[str]:
        pass

    @abstractmethod
    def price(self, address: str) -> Optional[PriceResult]:
        """Current quote for an option, or None when it cannot be priced now"""
        pass

    def get_price(self, address: str) -> Optional[Dict[str, List[PriceLevel]]]:
        """Single-level book for the pricing stream"""
        result = self.price(address)
        if result is None:
            return None
        return {
            "bids": [(result.bid, 1000.0)],
            "asks": [(result.ask, 1000.0)],
        }

    @abstractmethod
    def get_ask_quote(self, address: str, amount: int, quote_decimals: int) -> Optional[int]:
        """Cost in quote token base units for the taker to buy amount options"""
        pass

    @abstractmethod
    def get_bid_quote(self, address: str, amount: int, quote_decimals: int) -> Optional[int]:
        """Payout in quote token base units for the taker to sell amount options"""
        pass

    @abstractmethod
    def handle_rfq(self, rfq: RFQRequest) -> Union[QuoteResponse, DeclineResponse]:
        """Resolve a request to a quote or a decline. Never raises."""
        pass


class ISpotPriceProvider(ABC):
    """Interface for a single spot price source"""

    name: str = "provider"

    @abstractmethod
    async def get_price(self, symbol: str) -> Optional[float]:
        """Latest spot price for symbol, None when unavailable"""
        pass


# ============================================================================
# Discovery Interface
# ============================================================================

class IOptionDiscovery(ABC):
    """Read-only source of option parameters (external collaborator)"""

    @abstractmethod
    async def fetch_all(self) -> Dict[str, OptionMetadata]:
        """All known options keyed by lower-cased address"""
        pass

    @abstractmethod
    async def refresh(self) -> Dict[str, OptionMetadata]:
        """Re-read the source, bypassing any cache"""
        pass


# ============================================================================
# Event Bus Interface
# ============================================================================

class IEventBus(ABC):
    """Interface for event publishing and subscription"""

    @abstractmethod
    def subscribe(self, event_type: str, handler: Callable) -> Callable[[], None]:
        """Subscribe to event type. Returns a handle that unsubscribes."""
        pass

    @abstractmethod
    def publish(self, event_type: str, data) -> None:
        """Publish event"""
        pass

    @abstractmethod
    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        """Unsubscribe from event type"""
        pass


# ============================================================================
# Signing Interface
# ============================================================================

class IQuoteSigner(ABC):
    """Signs outgoing quotes"""

    @abstractmethod
    def sign(self, chain_id: int, message: dict) -> Tuple[str, str]:
        """Returns (signature, sign_scheme). Raises SigningError on failure."""
        pass
