"""
Data models for the options market maker.
Pure data classes with no business logic, following clean architecture principles.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ============================================================================
# Enums
# ============================================================================

class ConnectionState(Enum):
    """Connection lifecycle shared by every long-lived socket"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AWAITING_HEARTBEAT = "awaiting_heartbeat"


class OrderStatus(Enum):
    """Status of an order after a quote was accepted"""
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# ============================================================================
# Errors
# ============================================================================

class StartupError(Exception):
    """Raised when the process cannot ever quote and should exit non-zero."""
    pass


class SigningError(Exception):
    """Raised when a configured signer fails to sign a quote."""
    pass


# ============================================================================
# Option Models
# ============================================================================

@dataclass(frozen=True)
class OptionParams:
    """
    Immutable on-chain option token definition.

    strike is quote currency per unit of underlying; put strikes arrive
    inverted from the contract and are normalized before registration.
    """
    option_address: str
    underlying: str
    strike: float
    expiry: int  # unix seconds
    is_put: bool
    decimals: int = 18
    collateral_address: Optional[str] = None
    consideration_address: Optional[str] = None


@dataclass(frozen=True)
class OptionMetadata:
    """Option parameters as read from the upstream discovery source"""
    address: str
    redemption_address: str
    strike: float
    expiration_timestamp: int
    is_put: bool
    collateral_address: str


# ============================================================================
# Pricing Models
# ============================================================================

@dataclass(frozen=True)
class BlackScholesResult:
    call_price: float
    put_price: float
    d1: float
    d2: float


@dataclass(frozen=True)
class Greeks:
    delta: float
    gamma: float
    theta: float  # per day
    vega: float   # per 1% vol
    rho: float    # per 1% rate


@dataclass(frozen=True)
class PriceResult:
    """Quote result for one option token. Recomputed on every request."""
    bid: float
    ask: float
    mid: float
    delta: float
    gamma: float
    theta: float
    vega: float
    rho: float
    iv: float
    spot_price: float
    time_to_expiry: float

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass
class SpreadConfig:
    bid_spread: float = 0.02   # fraction of mid below
    ask_spread: float = 0.02   # fraction of mid above
    min_spread: float = 0.001  # absolute floor for ask - bid


@dataclass(frozen=True)
class MarketData:
    """Immutable market data snapshot"""
    spot_price: float
    risk_free_rate: float
    implied_volatility: float


# ============================================================================
# RFQ Models
# ============================================================================

@dataclass(frozen=True)
class TokenAmount:
    token: str
    amount: str  # integer amount in token base units


@dataclass
class RFQRequest:
    """
    Normalized inbound request for quote.

    buy_tokens are what the taker receives (maker side of the trade),
    sell_tokens are what the taker pays. echo holds the protocol fields that
    must be returned untouched in the response.
    """
    rfq_id: str
    chain_id: int
    taker_address: str
    buy_tokens: List[TokenAmount]
    sell_tokens: List[TokenAmount]
    receiver_address: Optional[str] = None
    expiry: Optional[int] = None
    echo: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QuoteLeg:
    taker_token: str
    maker_token: str
    taker_amount: int
    maker_amount: int

    @property
    def reference_price(self) -> float:
        if self.maker_amount <= 0:
            return 0.0
        return self.taker_amount / self.maker_amount


@dataclass
class QuoteResponse:
    rfq_id: str
    chain_id: int
    maker_address: str
    taker_address: str
    legs: List[QuoteLeg]
    expiry: int
    echo: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    sign_scheme: Optional[str] = None

    type: str = "quote"


@dataclass
class DeclineResponse:
    rfq_id: str
    reason: str

    type: str = "decline"


@dataclass(frozen=True)
class OrderNotification:
    rfq_id: str
    order_hash: str
    status: OrderStatus


# ============================================================================
# Exchange Market Data Models
# ============================================================================

@dataclass(frozen=True)
class DeribitInstrument:
    instrument_name: str
    strike: float
    expiration_timestamp: int  # ms
    option_type: str  # 'call' or 'put'
    is_active: bool = True


@dataclass(frozen=True)
class DeribitPrice:
    """Ticker snapshot. Option prices are quoted in units of the underlying."""
    best_bid_price: float
    best_bid_amount: float
    best_ask_price: float
    best_ask_amount: float
    mark_price: float
    mark_iv: float
    bid_iv: float
    ask_iv: float
    index_price: float
    underlying_price: float
    delta: float
    gamma: float
    theta: float
    vega: float
    timestamp: int  # exchange timestamp, ms


# ============================================================================
# Relay Models
# ============================================================================

PriceLevel = Tuple[float, float]  # (price, size)


@dataclass(frozen=True)
class PriceData:
    base: str
    quote: str
    last_update_ts: int
    bids: List[PriceLevel]
    asks: List[PriceLevel]

    @property
    def top_of_book(self) -> Tuple[float, float]:
        best_bid = self.bids[0][0] if self.bids else 0.0
        best_ask = self.asks[0][0] if self.asks else 0.0
        return best_bid, best_ask


@dataclass(frozen=True)
class PriceUpdateEvent:
    chain_id: int
    chain: str
    pair: str  # "base/quote"
    data: PriceData

    @property
    def cache_key(self) -> str:
        return f"{self.chain_id}:{self.pair}"


@dataclass(frozen=True)
class ConnectionStatusEvent:
    chain: str
    chain_id: int
    connected: bool


@dataclass
class ClientSubscription:
    """Per-subscriber allow-sets. Empty set means all."""
    chains: set = field(default_factory=set)
    pairs: set = field(default_factory=set)
    active: bool = False

    def matches(self, chain_id: int, pair: str) -> bool:
        if not self.active:
            return False
        if self.chains and chain_id not in self.chains:
            return False
        if self.pairs and pair.lower() not in self.pairs:
            return False
        return True


@dataclass
class OptionSubscription:
    """Price stream allow-sets: option addresses (lower-case) and underlyings (upper-case)"""
    options: set = field(default_factory=set)
    underlyings: set = field(default_factory=set)

    def matches(self, option: OptionParams) -> bool:
        return (option.option_address.lower() in self.options
                or option.underlying.upper() in self.underlyings)
