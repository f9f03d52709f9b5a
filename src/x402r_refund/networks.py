"""
EVM network registry for relay address computation.

Relay proxies are deployed through CreateX, so the deterministic relay
address depends on the CreateX deployment used by the factory on each chain.
Networks are looked up either by CAIP-2 id (``eip155:8453``) or by short
name (``base``).

Standard CreateX deployments:
https://github.com/pcaversaccio/createx#createx-deployments
"""

from dataclasses import dataclass
from typing import Optional

from web3 import Web3


@dataclass(frozen=True)
class NetworkConfig:
    """Refund-relevant configuration for an EVM network."""

    name: str
    display_name: str
    chain_id: int
    createx_address: Optional[str] = None

    @property
    def caip2(self) -> str:
        return f"eip155:{self.chain_id}"


_NETWORKS: dict[str, NetworkConfig] = {}


def register_network(network: NetworkConfig) -> None:
    """Register a network under both its short name and CAIP-2 id."""
    _NETWORKS[network.name.lower()] = network
    _NETWORKS[network.caip2] = network


def get_network(network: str) -> Optional[NetworkConfig]:
    """
    Look up a network by short name or CAIP-2 id.

    Args:
        network: Network identifier, e.g. ``base`` or ``eip155:8453``

    Returns:
        The network configuration, or None if unknown
    """
    return _NETWORKS.get(network.lower())


def get_createx_address(network: str) -> Optional[str]:
    """Return the standard CreateX deployment for a network, if known."""
    config = get_network(network)
    if config is None or config.createx_address is None:
        return None
    return Web3.to_checksum_address(config.createx_address)


# =============================================================================
# Networks with known CreateX deployments
# =============================================================================

# Ethereum Mainnet
ETHEREUM = NetworkConfig(
    name="ethereum",
    display_name="Ethereum",
    chain_id=1,
    createx_address="0xba5Ed099633D3B313e4D5F7bdc1305d3c28ba5Ed",
)

# Base (Layer 2)
BASE = NetworkConfig(
    name="base",
    display_name="Base",
    chain_id=8453,
    createx_address="0xba5Ed099633D3B313e4D5F7bdc1305d3c28ba5Ed",
)

# Base Sepolia (testnet)
BASE_SEPOLIA = NetworkConfig(
    name="base-sepolia",
    display_name="Base Sepolia",
    chain_id=84532,
    createx_address="0xba5Ed099633D3B313e4D5F7bdc1305d3c28ba5Ed",
)

_EVM_NETWORKS = [
    ETHEREUM,
    BASE,
    BASE_SEPOLIA,
]

for _network in _EVM_NETWORKS:
    register_network(_network)
