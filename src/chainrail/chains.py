"""Chain catalogue for the transaction execution layer.

Three transaction models are supported:
- UTXO (Bitcoin)
- Account/nonce (Ethereum and EVM-compatible chains, told apart only by
  chain ID and endpoint set)
- Blockhash (Solana)
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chainrail.config import Settings
    from chainrail.rpc.health import EndpointSet


class ChainFamily(str, Enum):
    """Transaction model of a chain."""
    UTXO = "utxo"             # Bitcoin-style inputs/outputs
    ACCOUNT = "account"       # EVM nonce-based accounts
    BLOCKHASH = "blockhash"   # Solana recent-blockhash scoped


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a blockchain."""

    name: str
    symbol: str
    family: ChainFamily
    decimals: int
    chain_id: Optional[int] = None  # EVM chains only


# ======================
# Chain Configurations
# ======================

CHAINS: dict[str, ChainConfig] = {
    "bitcoin": ChainConfig(
        name="Bitcoin",
        symbol="BTC",
        family=ChainFamily.UTXO,
        decimals=8,
    ),
    "ethereum": ChainConfig(
        name="Ethereum",
        symbol="ETH",
        family=ChainFamily.ACCOUNT,
        decimals=18,
        chain_id=1,
    ),
    "polygon": ChainConfig(
        name="Polygon",
        symbol="POL",
        family=ChainFamily.ACCOUNT,
        decimals=18,
        chain_id=137,
    ),
    "arbitrum": ChainConfig(
        name="Arbitrum One",
        symbol="ETH",
        family=ChainFamily.ACCOUNT,
        decimals=18,
        chain_id=42161,
    ),
    "optimism": ChainConfig(
        name="Optimism",
        symbol="ETH",
        family=ChainFamily.ACCOUNT,
        decimals=18,
        chain_id=10,
    ),
    "celo": ChainConfig(
        name="Celo",
        symbol="CELO",
        family=ChainFamily.ACCOUNT,
        decimals=18,
        chain_id=42220,
    ),
    "solana": ChainConfig(
        name="Solana",
        symbol="SOL",
        family=ChainFamily.BLOCKHASH,
        decimals=9,
    ),
}


# ======================
# Helper Functions
# ======================

def get_chain(identifier: str) -> Optional[ChainConfig]:
    """Get chain configuration by identifier (case-insensitive)."""
    return CHAINS.get(identifier.strip().lower())


def build_endpoint_sets(settings: "Settings") -> dict[str, "EndpointSet"]:
    """Build the immutable endpoint set of every catalogued chain."""
    from chainrail.rpc.health import EndpointSet

    sets = {}
    for name, chain in CHAINS.items():
        primary, fallbacks = settings.get_endpoints(name)
        sets[name] = EndpointSet(
            chain=name,
            family=chain.family,
            primary=primary,
            fallbacks=tuple(fallbacks),
        )
    return sets
