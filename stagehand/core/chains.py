"""Supported EVM chain configurations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a supported EVM chain."""

    chain_id: int
    name: str
    short_name: str
    safe_tx_service_url: str
    explorer_url: str
    is_testnet: bool = False


# ── Chain Registry ───────────────────────────────────────────────────────────

CHAINS: dict[int, ChainConfig] = {
    1: ChainConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        short_name="eth",
        safe_tx_service_url="https://safe-transaction-mainnet.safe.global",
        explorer_url="https://etherscan.io",
    ),
    11155111: ChainConfig(
        chain_id=11155111,
        name="Sepolia",
        short_name="sep",
        safe_tx_service_url="https://safe-transaction-sepolia.safe.global",
        explorer_url="https://sepolia.etherscan.io",
        is_testnet=True,
    ),
    17000: ChainConfig(
        chain_id=17000,
        name="Holesky",
        short_name="holesky",
        safe_tx_service_url="https://transaction-holesky.holesky-safe.protofire.io",
        explorer_url="https://holesky.etherscan.io",
        is_testnet=True,
    ),
    10: ChainConfig(
        chain_id=10,
        name="Optimism",
        short_name="oeth",
        safe_tx_service_url="https://safe-transaction-optimism.safe.global",
        explorer_url="https://optimistic.etherscan.io",
    ),
    42161: ChainConfig(
        chain_id=42161,
        name="Arbitrum One",
        short_name="arb1",
        safe_tx_service_url="https://safe-transaction-arbitrum.safe.global",
        explorer_url="https://arbiscan.io",
    ),
    8453: ChainConfig(
        chain_id=8453,
        name="Base",
        short_name="base",
        safe_tx_service_url="https://safe-transaction-base.safe.global",
        explorer_url="https://basescan.org",
    ),
    84532: ChainConfig(
        chain_id=84532,
        name="Base Sepolia",
        short_name="basesep",
        safe_tx_service_url="https://safe-transaction-base-sepolia.safe.global",
        explorer_url="https://sepolia.basescan.org",
        is_testnet=True,
    ),
}


def get_chain_config(chain_id: int) -> ChainConfig | None:
    """Get chain configuration by chain id."""
    return CHAINS.get(chain_id)


def safe_tx_service_url(chain_id: int, override: str = "") -> str | None:
    """Safe transaction service for a chain; ``override`` wins when set."""
    if override:
        return override.rstrip("/")
    chain = get_chain_config(chain_id)
    return chain.safe_tx_service_url if chain else None
