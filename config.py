"""
Environment configuration and static chain/token tables.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv


# ============================================================================
# Static Tables
# ============================================================================

# USDC addresses by chain ID
USDC_ADDRESSES: Dict[int, str] = {
    1: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",         # Ethereum Mainnet
    130: "0x078d782b760474a361dda0af3839290b0ef57ad6",       # Unichain
    1301: "0x078d782b760474a361dda0af3839290b0ef57ad6",      # Unichain Sepolia
    11155111: "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",  # Sepolia
    8453: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",      # Base
}

USDC_DECIMALS = 6

# Bebop chain name by chain ID
CHAIN_NAMES: Dict[int, str] = {
    1: "ethereum",
    10: "optimism",
    56: "bnb",
    137: "polygon",
    8453: "base",
    42161: "arbitrum",
    43114: "avalanche",
    59144: "linea",
    81457: "blast",
    534352: "scroll",
    1301: "unichain",
}

# Chains served by the taker pricing feed
TAKER_CHAINS: Dict[str, int] = {
    "ethereum": 1,
    "arbitrum": 42161,
    "avalanche": 43114,
    "base": 8453,
    "bsc": 56,
    "optimism": 10,
    "polygon": 137,
}

# Bebop settlement contract (EIP-712 verifying contract) by chain ID
BEBOP_SETTLEMENT_ADDRESSES: Dict[int, str] = {
    1: "0xbEbEbEb035351f58602E0C1C8B59ECBfF5d5f47b",
    137: "0xbEbEbEb035351f58602E0C1C8B59ECBfF5d5f47b",
}

BEBOP_WS_BASE = "wss://api.bebop.xyz/pmm"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def get_usdc_address(chain_id: int = 1) -> str:
    """USDC address for chain, mainnet if the chain is not configured"""
    return USDC_ADDRESSES.get(chain_id, USDC_ADDRESSES[1])


def get_settlement_address(chain_id: int) -> str:
    return BEBOP_SETTLEMENT_ADDRESSES.get(chain_id, BEBOP_SETTLEMENT_ADDRESSES[1])


def chain_name_for_taker_id(chain_id: int) -> str:
    for name, cid in TAKER_CHAINS.items():
        if cid == chain_id:
            return name
    return "unknown"


# ============================================================================
# Settings
# ============================================================================

def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Runtime configuration, normally built from the environment"""
    chain_id: int = 1
    chain: str = "ethereum"
    maker_address: Optional[str] = None
    private_key: Optional[str] = None
    bebop_marketmaker: str = "market-maker"
    bebop_authorization: str = ""
    relay_chains: List[str] = field(default_factory=lambda: ["ethereum"])

    # Pricing
    underlying: str = "ETH"
    option_decimals: int = 18
    default_iv: float = 0.80
    risk_free_rate: float = 0.05
    bid_spread: float = 0.02
    ask_spread: float = 0.02
    min_spread: float = 0.001
    quote_validity: int = 60

    # Exchange feed
    deribit_testnet: bool = False
    deribit_spread_markup: float = 0.0

    # Intervals (seconds)
    spot_poll_interval: float = 2.0
    spot_stale_seconds: float = 5.0
    pricing_interval: float = 10.0
    heartbeat_interval: float = 30.0

    # Servers
    relay_ws_port: int = 3004
    http_port: int = 3010
    ws_port: int = 3011
    ws_update_interval: float = 5.0
    metadata_dir: str = "data"
    relay_tracked_tokens: List[str] = field(default_factory=list)

    @property
    def quote_token_address(self) -> str:
        return get_usdc_address(self.chain_id)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        chain_id = _env_int("CHAIN_ID", 1)
        return cls(
            chain_id=chain_id,
            chain=os.environ.get("CHAIN") or CHAIN_NAMES.get(chain_id, "ethereum"),
            maker_address=os.environ.get("MAKER_ADDRESS") or None,
            private_key=os.environ.get("PRIVATE_KEY") or None,
            bebop_marketmaker=os.environ.get("BEBOP_MARKETMAKER", "market-maker"),
            bebop_authorization=os.environ.get("BEBOP_AUTHORIZATION", ""),
            relay_chains=_env_list("BEBOP_CHAINS", "ethereum"),
            underlying=os.environ.get("UNDERLYING", "ETH").upper(),
            option_decimals=_env_int("OPTION_DECIMALS", 18),
            default_iv=_env_float("DEFAULT_IV", 0.80),
            risk_free_rate=_env_float("RISK_FREE_RATE", 0.05),
            bid_spread=_env_float("BID_SPREAD", 0.02),
            ask_spread=_env_float("ASK_SPREAD", 0.02),
            min_spread=_env_float("MIN_SPREAD", 0.001),
            quote_validity=_env_int("QUOTE_VALIDITY", 60),
            deribit_testnet=os.environ.get("DERIBIT_TESTNET", "").lower() == "true",
            deribit_spread_markup=_env_float("DERIBIT_SPREAD_MARKUP", 0.0),
            spot_poll_interval=_env_float("SPOT_POLL_INTERVAL", 2.0),
            spot_stale_seconds=_env_float("SPOT_STALE_SECONDS", 5.0),
            pricing_interval=_env_float("PRICING_INTERVAL", 10.0),
            heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", 30.0),
            relay_ws_port=_env_int("RELAY_WS_PORT", _env_int("PORT", 3004)),
            http_port=_env_int("HTTP_PORT", 3010),
            ws_port=_env_int("WS_PORT", 3011),
            ws_update_interval=_env_int("WS_UPDATE_INTERVAL", 5000) / 1000,
            metadata_dir=os.environ.get("METADATA_DIR", "data"),
            relay_tracked_tokens=[t.lower() for t in _env_list("RELAY_TRACKED_TOKENS")],
        )
