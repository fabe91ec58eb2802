# payments/networks.py
"""
Static network / token metadata.

Contract addresses and decimals are configuration data; nothing here talks to a chain.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class NetworkInfo:
    network_id: str
    name: str
    chain_id: int
    default_rpc: str


NETWORKS: Dict[str, NetworkInfo] = {
    "ethereum": NetworkInfo("ethereum", "Ethereum", 1, "https://eth.llamarpc.com"),
    "polygon": NetworkInfo("polygon", "Polygon", 137, "https://polygon.llamarpc.com"),
    "arbitrum": NetworkInfo("arbitrum", "Arbitrum", 42161, "https://arbitrum.llamarpc.com"),
    "optimism": NetworkInfo("optimism", "Optimism", 10, "https://optimism.llamarpc.com"),
    "base": NetworkInfo("base", "Base", 8453, "https://base.llamarpc.com"),
    "avalanche": NetworkInfo("avalanche", "Avalanche", 43114, "https://avalanche.llamarpc.com"),
    "bsc": NetworkInfo("bsc", "BNB Smart Chain", 56, "https://bsc-dataseed.binance.org"),
}

# symbol -> contract address
TOKEN_CONTRACTS: Dict[str, Dict[str, str]] = {
    "ethereum": {
        "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "DAI": "0x6B175474E89094C44Da98b954EedeAC495271d0F",
        "PYUSD": "0x6c3ea9036406852006290770BEdFcAbA0e23A0e8",
        "TUSD": "0x0000000000085d4780B73119b644AE5ecd22b376",
        "FRAX": "0x853d955aCEf822Db058eb8505911ED77F175b99e",
    },
    "polygon": {
        "USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        "DAI": "0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063",
    },
    "arbitrum": {
        "USDC": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "USDT": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        "DAI": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
    },
    "optimism": {
        "USDC": "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
        "USDT": "0x94b008aA00579c1307B0EF2c499aD98a8ce58e58",
        "DAI": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
    },
    "base": {
        "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "DAI": "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb",
    },
    "avalanche": {
        "USDC": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
        "USDT": "0x9702230A8Ea53601f5cD2dc00fDBc13d4dF4A8c7",
        "DAI": "0xd586E7F844cEa2F87f50152665BCbc2C279D8d70",
    },
    "bsc": {
        "USDC": "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
        "USDT": "0x55d398326f99059fF775485246999027B3197955",
        "DAI": "0x1AF3F329e8BE154074D8769D1FFa4eE058B1DBc3",
        "BUSD": "0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56",
    },
}

TOKEN_DECIMALS: Dict[str, int] = {
    "USDC": 6,
    "USDT": 6,
    "PYUSD": 6,
    "DAI": 18,
    "BUSD": 18,
    "TUSD": 18,
    "FRAX": 18,
}

# BEP-20 pegged tokens on BSC use 18 decimals
DECIMALS_OVERRIDES: Dict[Tuple[str, str], int] = {
    ("bsc", "USDC"): 18,
    ("bsc", "USDT"): 18,
}

# symbols a merchant may pin an order to; the indexer accepts a wider set
ORDER_STABLECOINS = ("USDC", "USDT", "DAI", "BUSD")
INDEXER_STABLECOINS = frozenset({"USDC", "USDT", "DAI", "BUSD", "FRAX", "TUSD", "PYUSD"})

# chain-indexer network identifiers
INDEXER_NETWORKS: Dict[str, str] = {
    "ETH_MAINNET": "ethereum",
    "ETH_SEPOLIA": "ethereum",
    "MATIC_MAINNET": "polygon",
    "MATIC_AMOY": "polygon",
    "ARB_MAINNET": "arbitrum",
    "ARB_SEPOLIA": "arbitrum",
    "OPT_MAINNET": "optimism",
    "OPT_SEPOLIA": "optimism",
    "BASE_MAINNET": "base",
    "BASE_SEPOLIA": "base",
    "AVAX_MAINNET": "avalanche",
    "BNB_MAINNET": "bsc",
}

# provider-style network ids still sent by older POS clients
LEGACY_NETWORK_IDS: Dict[str, str] = {
    "e3c7fdd8-b1fc-4e51-85ae-bb276e075611": "ethereum",
    "7436e9d0-ba42-4d2b-b4c0-8e4e606b2c12": "polygon",
}

AUTO = "auto"
ANY_STABLECOIN = "any"


def normalize_network_id(raw: Optional[str]) -> Optional[str]:
    """Lower-case, resolve legacy ids; None/"auto" mean wildcard. Unknown ids are returned as-is."""
    if raw is None:
        return None
    s = str(raw).strip()
    if not s or s.lower() == AUTO:
        return None
    if s.lower() in LEGACY_NETWORK_IDS:
        return LEGACY_NETWORK_IDS[s.lower()]
    return s.lower()


def normalize_symbol(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    s = str(raw).strip()
    if not s or s.lower() == ANY_STABLECOIN or s.lower() == AUTO:
        return None
    return s.upper()


def is_supported(network_id: str, symbol: str) -> bool:
    return symbol in TOKEN_CONTRACTS.get(network_id, {})


def token_symbol(network_id: str, contract: str) -> Optional[str]:
    """Reverse lookup contract -> symbol (case-insensitive)."""
    c = (contract or "").lower()
    for sym, addr in TOKEN_CONTRACTS.get(network_id, {}).items():
        if addr.lower() == c:
            return sym
    return None


def decimals_for(network_id: str, symbol: str) -> int:
    if (network_id, symbol) in DECIMALS_OVERRIDES:
        return DECIMALS_OVERRIDES[(network_id, symbol)]
    return TOKEN_DECIMALS.get(symbol, 18)


def indexer_network(raw: str) -> Optional[str]:
    return INDEXER_NETWORKS.get(str(raw or "").upper())


def is_evm_address(s: Optional[str]) -> bool:
    if not s or len(s) != 42 or not s.startswith("0x"):
        return False
    try:
        int(s[2:], 16)
    except ValueError:
        return False
    return True
