import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import ValidationError

EVM = "evm"
SOLANA = "solana"

EVM_NATIVE_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
_BASE58_CHARSET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_SOLANA_ADDRESS = re.compile(rf"^[{_BASE58_CHARSET}]{{32,44}}$")


@dataclass(frozen=True)
class ChainInfo:
    name: str
    family: str
    chain_id: int
    native_symbol: str
    native_decimals: int
    wrapped_native: str
    usdc: str
    usdc_decimals: int
    gas_price_gwei: str
    alchemy_network: Optional[str]
    coingecko_platform: str
    defillama_slug: str
    dexscreener_id: str


SUPPORTED_CHAINS: Dict[str, ChainInfo] = {
    "ethereum": ChainInfo(
        name="ethereum",
        family=EVM,
        chain_id=1,
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native="0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        usdc="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        usdc_decimals=6,
        gas_price_gwei="20",
        alchemy_network="eth-mainnet",
        coingecko_platform="ethereum",
        defillama_slug="ethereum",
        dexscreener_id="ethereum",
    ),
    "base": ChainInfo(
        name="base",
        family=EVM,
        chain_id=8453,
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native="0x4200000000000000000000000000000000000006",
        usdc="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        usdc_decimals=6,
        gas_price_gwei="0.05",
        alchemy_network="base-mainnet",
        coingecko_platform="base",
        defillama_slug="base",
        dexscreener_id="base",
    ),
    "arbitrum": ChainInfo(
        name="arbitrum",
        family=EVM,
        chain_id=42161,
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native="0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        usdc="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        usdc_decimals=6,
        gas_price_gwei="0.1",
        alchemy_network="arb-mainnet",
        coingecko_platform="arbitrum-one",
        defillama_slug="arbitrum",
        dexscreener_id="arbitrum",
    ),
    "polygon": ChainInfo(
        name="polygon",
        family=EVM,
        chain_id=137,
        native_symbol="POL",
        native_decimals=18,
        wrapped_native="0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",
        usdc="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        usdc_decimals=6,
        gas_price_gwei="40",
        alchemy_network="polygon-mainnet",
        coingecko_platform="polygon-pos",
        defillama_slug="polygon",
        dexscreener_id="polygon",
    ),
    "optimism": ChainInfo(
        name="optimism",
        family=EVM,
        chain_id=10,
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native="0x4200000000000000000000000000000000000006",
        usdc="0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
        usdc_decimals=6,
        gas_price_gwei="0.05",
        alchemy_network="opt-mainnet",
        coingecko_platform="optimistic-ethereum",
        defillama_slug="optimism",
        dexscreener_id="optimism",
    ),
    "bsc": ChainInfo(
        name="bsc",
        family=EVM,
        chain_id=56,
        native_symbol="BNB",
        native_decimals=18,
        wrapped_native="0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",
        usdc="0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
        usdc_decimals=18,
        gas_price_gwei="1",
        alchemy_network="bnb-mainnet",
        coingecko_platform="binance-smart-chain",
        defillama_slug="bsc",
        dexscreener_id="bsc",
    ),
    "linea": ChainInfo(
        name="linea",
        family=EVM,
        chain_id=59144,
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native="0xe5D7C2a44FfDDf6b295A15c148167daaAf5Cf34f",
        usdc="0x176211869cA2b568f2A7D4EE941E073a821EE1ff",
        usdc_decimals=6,
        gas_price_gwei="0.1",
        alchemy_network="linea-mainnet",
        coingecko_platform="linea",
        defillama_slug="linea",
        dexscreener_id="linea",
    ),
    "solana": ChainInfo(
        name="solana",
        family=SOLANA,
        chain_id=1151111081099710,
        native_symbol="SOL",
        native_decimals=9,
        wrapped_native="So11111111111111111111111111111111111111112",
        usdc="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        usdc_decimals=6,
        gas_price_gwei="0",
        alchemy_network=None,
        coingecko_platform="solana",
        defillama_slug="solana",
        dexscreener_id="solana",
    ),
}


def get_chain(name: str) -> ChainInfo:
    try:
        return SUPPORTED_CHAINS[name]
    except KeyError:
        raise ValidationError("unsupported chain", {"chain": name}) from None


def chains_for_family(family: str) -> List[str]:
    return [name for name, info in SUPPORTED_CHAINS.items() if info.family == family]


def address_family(address: str) -> Optional[str]:
    if _EVM_ADDRESS.match(address):
        return EVM
    if _SOLANA_ADDRESS.match(address):
        return SOLANA
    return None


def normalize_address(chain: str, address: str) -> str:
    """EVM addresses compare case-insensitively; base58 addresses do not."""
    if get_chain(chain).family == EVM:
        return address.lower()
    return address


def is_zero_address(address: str) -> bool:
    return not address or address.lower() == ZERO_ADDRESS or set(address) == {"1"}
