import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from .chains import SOLANA, get_chain, normalize_address
from .http_client import HttpClient
from .models import PriceObservation

logger = logging.getLogger(__name__)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PriceSource(ABC):
    """One upstream price feed. ``fetch`` returns None when the feed has no price."""

    name: str = ""

    def __init__(self, http: HttpClient, base_url: str, clock: Callable[[], float] = time.time) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    def supports(self, chain: str) -> bool:
        return True

    @abstractmethod
    def _fetch(self, token: str, chain: str) -> Optional[PriceObservation]:
        ...

    async def fetch(self, token: str, chain: str) -> Optional[PriceObservation]:
        return await asyncio.to_thread(self._fetch, token, chain)

    def _observation(
        self,
        price: Optional[Decimal],
        liquidity: Optional[Decimal] = None,
        volume: Optional[Decimal] = None,
    ) -> Optional[PriceObservation]:
        if price is None:
            return None
        return PriceObservation(
            source=self.name,
            price=price,
            observed_at=self.clock(),
            liquidity_usd=liquidity,
            volume_24h=volume,
        )


class CoinGeckoSource(PriceSource):
    name = "coingecko"

    def _fetch(self, token: str, chain: str) -> Optional[PriceObservation]:
        platform = get_chain(chain).coingecko_platform
        address = normalize_address(chain, token)
        data = self.http.get_json(
            f"{self.base_url}/simple/token_price/{platform}",
            params={
                "contract_addresses": address,
                "vs_currencies": "usd",
                "include_24hr_vol": "true",
            },
        )
        entry = data.get(address) or data.get(token) if isinstance(data, dict) else None
        if not entry:
            return None
        return self._observation(_decimal(entry.get("usd")), volume=_decimal(entry.get("usd_24h_vol")))


class DexScreenerSource(PriceSource):
    """Deepest-liquidity pair on the requested chain where the token is the base asset."""

    name = "dexscreener"

    def _fetch(self, token: str, chain: str) -> Optional[PriceObservation]:
        data = self.http.get_json(f"{self.base_url}/dex/tokens/{token}")
        chain_id = get_chain(chain).dexscreener_id
        wanted = normalize_address(chain, token)
        best: Optional[Dict[str, Any]] = None
        best_liquidity = Decimal(-1)
        for pair in (data or {}).get("pairs") or []:
            if pair.get("chainId") != chain_id:
                continue
            base = (pair.get("baseToken") or {}).get("address", "")
            if normalize_address(chain, base) != wanted:
                continue
            liquidity = _decimal((pair.get("liquidity") or {}).get("usd")) or Decimal(0)
            if liquidity > best_liquidity:
                best, best_liquidity = pair, liquidity
        if best is None:
            return None
        return self._observation(
            _decimal(best.get("priceUsd")),
            liquidity=best_liquidity,
            volume=_decimal((best.get("volume") or {}).get("h24")),
        )


class DefiLlamaSource(PriceSource):
    name = "defillama"

    def _fetch(self, token: str, chain: str) -> Optional[PriceObservation]:
        key = f"{get_chain(chain).defillama_slug}:{token}"
        data = self.http.get_json(f"{self.base_url}/prices/current/{key}")
        coins = (data or {}).get("coins") or {}
        entry = coins.get(key)
        if entry is None:
            # DefiLlama echoes keys lower-cased for EVM chains
            entry = coins.get(key.lower())
        if not entry:
            return None
        return self._observation(_decimal(entry.get("price")))


class JupiterPriceSource(PriceSource):
    name = "jupiter"

    def supports(self, chain: str) -> bool:
        return get_chain(chain).family == SOLANA

    def _fetch(self, token: str, chain: str) -> Optional[PriceObservation]:
        data = self.http.get_json(f"{self.base_url}/price", params={"ids": token})
        entry = ((data or {}).get("data") or {}).get(token)
        if not entry:
            return None
        return self._observation(_decimal(entry.get("price")))
