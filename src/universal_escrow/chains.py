"""Settlement networks an escrow can be denominated on."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Chain:
    """A network carrying the escrowed stablecoin, and where to look up its transfers."""

    name: str
    explorer_url: str


CHAINS: dict[str, Chain] = {
    "ethereum": Chain(name="ethereum", explorer_url="https://etherscan.io"),
    "base": Chain(name="base", explorer_url="https://basescan.org"),
    "arbitrum": Chain(name="arbitrum", explorer_url="https://arbiscan.io"),
    "polygon": Chain(name="polygon", explorer_url="https://polygonscan.com"),
}


def get_chain(name: str) -> Chain:
    """Get a chain by name. Raises ``KeyError`` if not found."""
    if name not in CHAINS:
        raise KeyError(
            f"Unknown chain '{name}'. Available: {list_chain_names()}"
        )
    return CHAINS[name]


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return list(CHAINS.keys())


def tx_url(chain_name: str, reference: str) -> str:
    """Explorer link for a funding or settlement reference on ``chain_name``."""
    return f"{get_chain(chain_name).explorer_url}/tx/{reference}"
