import os
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

import yaml

from .errors import ConfigurationError

T = TypeVar("T")


@dataclass(frozen=True)
class PriceConfig:
    cache_ttl_seconds: float = 30.0
    source_timeout_seconds: float = 3.0
    high_max_deviation: Decimal = Decimal("0.02")
    medium_max_deviation: Decimal = Decimal("0.05")
    min_liquidity_usd: Decimal = Decimal("50000")
    min_volume_usd: Decimal = Decimal("10000")
    untrusted_liquidity_usd: Decimal = Decimal("1000")


@dataclass(frozen=True)
class QuoteConfig:
    expiry_seconds: int = 60
    default_slippage: Decimal = Decimal("0.5")
    adapter_attempts: int = 2
    adapter_backoff_seconds: float = 0.2


@dataclass(frozen=True)
class SweepConfig:
    dust_threshold_usd: Decimal = Decimal("1.00")
    swap_track_delay_seconds: float = 5.0
    bridge_track_delay_seconds: float = 10.0
    track_poll_interval_seconds: float = 5.0
    track_max_polls: int = 60
    max_transition_retries: int = 3
    scan_concurrency: int = 8


@dataclass(frozen=True)
class PaymentConfig:
    enabled: bool = False
    receiver_address: str = ""
    amount_cents: int = 10
    network: str = "eip155:8453"
    asset: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    description: str = "Sweep execution fee"
    max_timeout_seconds: int = 300


@dataclass(frozen=True)
class ProviderConfig:
    helius_api_key: str = ""
    alchemy_api_key: str = ""
    oneinch_api_key: str = ""
    jupiter_base_url: str = "https://quote-api.jup.ag/v6"
    jupiter_tokens_url: str = "https://tokens.jup.ag"
    jupiter_price_url: str = "https://price.jup.ag/v6"
    orca_base_url: str = "https://api.orca.so/v1"
    oneinch_base_url: str = "https://api.1inch.dev/swap/v6.0"
    lifi_base_url: str = "https://li.quest/v1"
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    dexscreener_base_url: str = "https://api.dexscreener.com/latest"
    defillama_base_url: str = "https://coins.llama.fi"
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    rpc_urls: Dict[str, str] = field(default_factory=dict)
    request_timeout: float = 5.0
    retries: int = 3

    def helius_url(self) -> str:
        if not self.helius_api_key:
            raise ConfigurationError("HELIUS_API_KEY not configured")
        return f"https://mainnet.helius-rpc.com/?api-key={self.helius_api_key}"

    def alchemy_url(self, network: str) -> str:
        if not self.alchemy_api_key:
            raise ConfigurationError("ALCHEMY_API_KEY not configured")
        return f"https://{network}.g.alchemy.com/v2/{self.alchemy_api_key}"


@dataclass(frozen=True)
class SweeperConfig:
    price: PriceConfig = field(default_factory=PriceConfig)
    quote: QuoteConfig = field(default_factory=QuoteConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    queue_concurrency: int = 4
    chains: Tuple[str, ...] = ()


_ENV_OVERRIDES = {
    "HELIUS_API_KEY": ("providers", "helius_api_key"),
    "ALCHEMY_API_KEY": ("providers", "alchemy_api_key"),
    "ONEINCH_API_KEY": ("providers", "oneinch_api_key"),
    "SOLANA_RPC_URL": ("providers", "solana_rpc_url"),
    "X402_RECEIVER_ADDRESS": ("payment", "receiver_address"),
}


def _coerce(section: str, name: str, kind: Any, value: Any) -> Any:
    try:
        if kind is Decimal or kind == "Decimal":
            return Decimal(str(value))
        if kind is bool or kind == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if kind is int or kind == "int":
            return int(value)
        if kind is float or kind == "float":
            return float(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ConfigurationError("invalid config value", {"key": f"{section}.{name}", "value": value}) from None
    return value


def _build_section(cls: Type[T], section: str, raw: Optional[Dict[str, Any]]) -> T:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigurationError("config section must be a mapping", {"section": section})
    known = {f.name: f for f in fields(cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigurationError("unknown config keys", {"section": section, "keys": sorted(unknown)})
    values = {name: _coerce(section, name, known[name].type, value) for name, value in raw.items()}
    return cls(**values)


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> SweeperConfig:
    """Read a YAML config file (optional) and overlay secrets from the environment."""
    raw: Dict[str, Any] = {}
    if path is not None:
        with Path(path).open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError("config root must be a mapping", {"path": str(path)})

    sections = {
        "price": _build_section(PriceConfig, "price", raw.get("price")),
        "quote": _build_section(QuoteConfig, "quote", raw.get("quote")),
        "sweep": _build_section(SweepConfig, "sweep", raw.get("sweep")),
        "payment": _build_section(PaymentConfig, "payment", raw.get("payment")),
        "providers": _build_section(ProviderConfig, "providers", raw.get("providers")),
    }

    env = os.environ if environ is None else environ
    for var, (section, name) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            sections[section] = replace(sections[section], **{name: value})

    if sections["payment"].enabled and not sections["payment"].receiver_address:
        raise ConfigurationError("payment gate enabled without a receiver address")

    unknown_root = set(raw) - set(sections) - {"queue_concurrency", "chains"}
    if unknown_root:
        raise ConfigurationError("unknown config sections", {"keys": sorted(unknown_root)})

    return SweeperConfig(
        queue_concurrency=int(raw.get("queue_concurrency", 4)),
        chains=tuple(raw.get("chains") or ()),
        **sections,
    )
