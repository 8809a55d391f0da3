"""
Chain registry
Supported networks, aliases, token contracts and decimals
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from web3 import Web3

from paylink.errors import UnsupportedNetwork, UnsupportedToken

NATIVE_DECIMALS = 18

# Stablecoins priced at exactly 1 USD, no oracle lookup
USD_PEGGED = frozenset({"USDC", "USDT"})


@dataclass(frozen=True)
class ChainConfig:
    """Static metadata for one supported chain"""
    name: str
    display_name: str
    chain_id: int
    is_testnet: bool
    explorer: str
    native_token: str = "ETH"
    tokens: Dict[str, str] = field(default_factory=dict)
    token_decimals: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenInfo:
    """A token resolved against a network"""
    symbol: str
    address: Optional[str]
    decimals: int
    native: bool = False

    @property
    def usd_pegged(self) -> bool:
        return self.symbol in USD_PEGGED

    @property
    def unit(self) -> int:
        return 10 ** self.decimals


SUPPORTED_CHAINS: Dict[str, ChainConfig] = {
    "sepolia": ChainConfig(
        name="sepolia",
        display_name="Sepolia (ETH Testnet)",
        chain_id=11155111,
        is_testnet=True,
        explorer="https://sepolia.etherscan.io",
        tokens={
            "USDC": "0x3402d41aa8e34e0df605c12109de2f8f4ff33a87",
            "USDT": "0xF9E0643Ba46eeaf4e1059775567f67F5c867bbfc",
            "LCX": "0x98d99c88D31C27C5a591Fe7F023F9DB0B37E4B3b",
        },
        token_decimals={"USDC": 6, "USDT": 6, "LCX": 18, "ETH": 18},
    ),
    "ethereum": ChainConfig(
        name="ethereum",
        display_name="Ethereum Mainnet",
        chain_id=1,
        is_testnet=False,
        explorer="https://etherscan.io",
        tokens={
            "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
            "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
            "LCX": "0x037A54AaB062628C9Bbae1FDB1583c195585Fe41",
        },
        token_decimals={"USDC": 6, "USDT": 6, "LCX": 18, "ETH": 18},
    ),
    "base": ChainConfig(
        name="base",
        display_name="Base Mainnet",
        chain_id=8453,
        is_testnet=False,
        explorer="https://basescan.org",
        tokens={
            "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            "USDT": "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2",
            "LCX": "0xd7468c14ae76C3Fc308aEAdC223D5D1F71d3c171",
        },
        token_decimals={"USDC": 6, "USDT": 6, "LCX": 18, "ETH": 18},
    ),
}

NETWORK_ALIASES: Dict[str, str] = {
    "sepolia": "sepolia",
    "eth-sepolia": "sepolia",
    "sepolia-testnet": "sepolia",
    "ethereum": "ethereum",
    "mainnet": "ethereum",
    "eth-mainnet": "ethereum",
    "eth": "ethereum",
    "base": "base",
    "base-mainnet": "base",
}


def resolve_network(network: Optional[str]) -> Optional[str]:
    """Canonical network name, or None when unsupported"""
    if not network:
        return None
    return NETWORK_ALIASES.get(network.strip().lower())


def get_chain(network: str) -> ChainConfig:
    canonical = resolve_network(network)
    if canonical is None:
        raise UnsupportedNetwork(
            f"Network {network!r} is not supported",
            details={"network": network, "supported": supported_networks()},
        )
    return SUPPORTED_CHAINS[canonical]


def supported_networks() -> List[str]:
    return list(SUPPORTED_CHAINS)


def is_native_token(token: str, network: str) -> bool:
    return (token or "").upper() == get_chain(network).native_token


def get_token_address(network: str, token: str) -> Optional[str]:
    """Contract address for a token symbol; None for the native asset or unknown symbols"""
    chain = get_chain(network)
    symbol = (token or "").upper()
    if symbol == chain.native_token:
        return None
    return chain.tokens.get(symbol)


def get_token_decimals(network: str, token: str) -> int:
    return get_chain(network).token_decimals.get((token or "").upper(), NATIVE_DECIMALS)


def is_contract_address(token: str) -> bool:
    return bool(token) and token.startswith("0x") and Web3.is_address(token.lower())


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address equality; None only equals None"""
    if a is None or b is None:
        return a is b
    return a.lower() == b.lower()


def resolve_token(network: str, token: str, decimals: Optional[int] = None) -> TokenInfo:
    """
    Resolve a request token against a network.

    Accepts a registered symbol (USDC, USDT, ETH, LCX) or, in Pro mode, a raw
    ERC-20 contract address whose decimals must be supplied by the caller
    (defaults to 18).
    """
    chain = get_chain(network)

    if is_contract_address(token):
        address = Web3.to_checksum_address(token)
        for symbol, registered in chain.tokens.items():
            if registered.lower() == address.lower():
                return TokenInfo(symbol=symbol, address=address, decimals=chain.token_decimals[symbol])
        return TokenInfo(
            symbol=address,
            address=address,
            decimals=decimals if decimals is not None else NATIVE_DECIMALS,
        )

    symbol = (token or "").upper()
    if symbol == chain.native_token:
        return TokenInfo(symbol=symbol, address=None, decimals=NATIVE_DECIMALS, native=True)

    address = chain.tokens.get(symbol)
    if address is None:
        raise UnsupportedToken(
            f"Token {token!r} is not available on {chain.name}",
            details={"token": token, "network": chain.name},
        )
    return TokenInfo(
        symbol=symbol,
        address=Web3.to_checksum_address(address),
        decimals=chain.token_decimals.get(symbol, NATIVE_DECIMALS),
    )


def supported_network_list() -> List[Dict[str, object]]:
    """Display-friendly list of supported networks"""
    return [
        {
            "name": c.name,
            "display_name": c.display_name,
            "chain_id": c.chain_id,
            "is_testnet": c.is_testnet,
        }
        for c in SUPPORTED_CHAINS.values()
    ]
