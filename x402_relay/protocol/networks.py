# x402_relay/protocol/networks.py
"""
Static registry of supported networks and their tokens.

Networks are keyed by CAIP-2 id. Token symbols are upper-case. Amount helpers
convert between human decimal strings and integer smallest units.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Dict, List, Optional

from x402_relay.protocol.errors import UnsupportedNetworkError


@dataclass(frozen=True)
class TokenConfig:
    symbol: str
    address: str
    decimals: int
    name: str
    supports_erc3009: bool = False
    eip712_version: str = "2"


@dataclass(frozen=True)
class NetworkConfig:
    caip_id: str
    chain_id: int
    name: str
    rpc_url: str
    native_symbol: str
    block_explorer: str
    tokens: Dict[str, TokenConfig] = field(default_factory=dict)


ETHEREUM = NetworkConfig(
    caip_id="eip155:1",
    chain_id=1,
    name="Ethereum",
    rpc_url="https://eth.llamarpc.com",
    native_symbol="ETH",
    block_explorer="https://etherscan.io",
    tokens={
        "USDC": TokenConfig("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USD Coin", supports_erc3009=True),
        "USDT": TokenConfig("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6, "Tether USD"),
        "WETH": TokenConfig("WETH", "0xC02aaA39b223FE8D0A0e5CBf4476fA5052862670", 18, "Wrapped Ether"),
    },
)

BNB_CHAIN = NetworkConfig(
    caip_id="eip155:56",
    chain_id=56,
    name="BNB Smart Chain",
    rpc_url="https://bsc-dataseed.binance.org",
    native_symbol="BNB",
    block_explorer="https://bscscan.com",
    tokens={
        "USDT": TokenConfig("USDT", "0x55d398326f99059fF775485246999027B3197955", 18, "Tether USD"),
        "USDC": TokenConfig("USDC", "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 18, "USD Coin"),
        "BUSD": TokenConfig("BUSD", "0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56", 18, "Binance USD"),
        "WBNB": TokenConfig("WBNB", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", 18, "Wrapped BNB"),
    },
)

BASE = NetworkConfig(
    caip_id="eip155:8453",
    chain_id=8453,
    name="Base",
    rpc_url="https://mainnet.base.org",
    native_symbol="ETH",
    block_explorer="https://basescan.org",
    tokens={
        "USDC": TokenConfig("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6, "USD Coin", supports_erc3009=True),
    },
)

SUPPORTED_NETWORKS: Dict[str, NetworkConfig] = {
    network.caip_id: network for network in (ETHEREUM, BNB_CHAIN, BASE)
}


def is_network_supported(network: str) -> bool:
    return network in SUPPORTED_NETWORKS


def get_supported_network_ids() -> List[str]:
    return list(SUPPORTED_NETWORKS)


def get_network_config(network: str) -> NetworkConfig:
    """
    Look up a network by CAIP-2 id.

    Raises:
        UnsupportedNetworkError: If the network is not in the registry
    """
    config = SUPPORTED_NETWORKS.get(network)
    if config is None:
        raise UnsupportedNetworkError(network)
    return config


def get_token_for_network(network: str, symbol: str) -> Optional[TokenConfig]:
    """Token info for a (network, symbol) pair, or None if unsupported."""
    config = SUPPORTED_NETWORKS.get(network)
    if config is None:
        return None
    return config.tokens.get(symbol.upper())


def get_token_by_address(network: str, address: str) -> Optional[TokenConfig]:
    config = SUPPORTED_NETWORKS.get(network)
    if config is None:
        return None
    for token in config.tokens.values():
        if token.address.lower() == address.lower():
            return token
    return None


def get_erc3009_token(network: str) -> Optional[TokenConfig]:
    """The token on this network that supports transfer-with-authorization, if any."""
    config = SUPPORTED_NETWORKS.get(network)
    if config is None:
        return None
    for token in config.tokens.values():
        if token.supports_erc3009:
            return token
    return None


def parse_token_amount(amount: str, decimals: int) -> int:
    """
    Convert a decimal amount string to the token's smallest unit.

    Fractional digits beyond ``decimals`` are truncated, never rounded:
    ``parse_token_amount("1.2345678", 6) == 1234567``.

    Raises:
        ValueError: If the amount is not a non-negative decimal number
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid token amount: {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid token amount: {amount!r}")
    with localcontext() as ctx:
        ctx.prec = 78  # uint256 fits in 78 digits
        scaled = value.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def format_token_amount(units: int, decimals: int) -> str:
    """Render a smallest-unit integer as a plain decimal string."""
    with localcontext() as ctx:
        ctx.prec = 78
        value = Decimal(units).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def get_tx_url(network: str, tx_hash: str) -> Optional[str]:
    config = SUPPORTED_NETWORKS.get(network)
    if config is None:
        return None
    return f"{config.block_explorer}/tx/{tx_hash}"
