"""
Option parameter discovery.

Reads the persisted metadata snapshot data/metadata-{chainId}.json:
{"chainId": 1, "timestamp": <ms>, "count": N, "options": [{address,
redemptionAddress, strike, expirationTimestamp, isPut, collateralAddress}]}

Entries dumped straight from contract reads carry strikeRaw (the 18-decimal
fixed-point uint as a string, puts inverted) instead of strike.
"""

import json
import logging
import os
import time
from decimal import Decimal
from typing import Dict, Optional

from interfaces import IOptionDiscovery
from models import OptionMetadata, OptionParams

logger = logging.getLogger(__name__)

STRIKE_DECIMALS = 18


def normalize_strike(raw: int, is_put: bool) -> float:
    """
    Contract strike (18-decimal fixed point) to quote currency per underlying.
    Put contracts store the inverted ratio.
    """
    strike = Decimal(int(raw)) / (Decimal(10) ** STRIKE_DECIMALS)
    if is_put and strike > 0:
        strike = 1 / strike
    return float(strike)


def parse_metadata_entry(entry: dict) -> OptionMetadata:
    is_put = bool(entry.get("isPut", False))
    if entry.get("strikeRaw") is not None:
        strike = normalize_strike(int(entry["strikeRaw"]), is_put)
    else:
        strike = float(entry["strike"])

    return OptionMetadata(
        address=entry["address"].lower(),
        redemption_address=(entry.get("redemptionAddress") or "").lower(),
        strike=strike,
        expiration_timestamp=int(entry["expirationTimestamp"]),
        is_put=is_put,
        collateral_address=(entry.get("collateralAddress") or "").lower(),
    )


def to_option_params(metadata: OptionMetadata, underlying: str = "ETH",
                     decimals: int = 18) -> OptionParams:
    return OptionParams(
        option_address=metadata.address,
        underlying=underlying,
        strike=metadata.strike,
        expiry=metadata.expiration_timestamp,
        is_put=metadata.is_put,
        decimals=decimals,
        collateral_address=metadata.collateral_address or None,
    )


class FileOptionDiscovery(IOptionDiscovery):
    """Metadata snapshot loader for one chain"""

    def __init__(self, chain_id: int, metadata_dir: str = "data"):
        self.chain_id = chain_id
        self.metadata_dir = metadata_dir
        self._cache: Optional[Dict[str, OptionMetadata]] = None

    @property
    def path(self) -> str:
        return os.path.join(self.metadata_dir, f"metadata-{self.chain_id}.json")

    def load_file(self) -> Dict[str, OptionMetadata]:
        """Empty dict when the file is missing, unreadable or for another chain"""
        if not os.path.exists(self.path):
            logger.warning(f"No metadata file found at {self.path}")
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load metadata from {self.path}: {e}")
            return {}

        file_chain = data.get("chainId")
        if file_chain != self.chain_id:
            logger.warning(f"Metadata file is for chain {file_chain}, but CHAIN_ID is {self.chain_id}")
            return {}

        options: Dict[str, OptionMetadata] = {}
        for entry in data.get("options", []):
            try:
                metadata = parse_metadata_entry(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed metadata entry {entry}: {e}")
                continue
            options[metadata.address] = metadata

        timestamp = data.get("timestamp")
        if timestamp:
            age_minutes = int((time.time() * 1000 - timestamp) / 60000)
            logger.info(f"Loaded {len(options)} options from file ({age_minutes}m old)")
        else:
            logger.info(f"Loaded {len(options)} options from file")
        return options

    async def fetch_all(self) -> Dict[str, OptionMetadata]:
        if self._cache is None:
            self._cache = self.load_file()
        return dict(self._cache)

    async def refresh(self) -> Dict[str, OptionMetadata]:
        self._cache = self.load_file()
        return dict(self._cache)
