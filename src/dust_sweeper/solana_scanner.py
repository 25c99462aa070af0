import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .http_client import HttpClient
from .models import ChainBalance, WalletToken
from .oracle import PriceOracle
from .scanner import ChainScanner

logger = logging.getLogger(__name__)

FUNGIBLE_INTERFACES = ("FungibleToken", "FungibleAsset")


class SolanaScanner(ChainScanner):
    """SPL balances through the Helius DAS ``getAssetsByOwner`` method."""

    PAGE_LIMIT = 1000

    def __init__(
        self,
        http: HttpClient,
        rpc_url: str,
        oracle: PriceOracle,
        dust_threshold_usd: Decimal,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__("solana", oracle, dust_threshold_usd, clock)
        self.http = http
        self.rpc_url = rpc_url

    def fetch_token_accounts(self, address: str) -> List[Dict[str, Any]]:
        assets: List[Dict[str, Any]] = []
        page = 1
        while True:
            result = self.http.rpc(
                self.rpc_url,
                "getAssetsByOwner",
                {
                    "ownerAddress": address,
                    "page": page,
                    "limit": self.PAGE_LIMIT,
                    "displayOptions": {"showFungible": True, "showNativeBalance": True},
                },
            )
            items = result.get("items") or []
            assets.extend(item for item in items if item.get("interface") in FUNGIBLE_INTERFACES)
            if len(items) < self.PAGE_LIMIT:
                break
            page += 1
        return assets

    def fetch_native_balance(self, address: str) -> int:
        result = self.http.rpc(self.rpc_url, "getBalance", [address])
        return int(result.get("value", 0))

    async def _to_token(self, asset: Dict[str, Any]) -> Optional[WalletToken]:
        info = asset.get("token_info") or {}
        raw = int(info.get("balance") or 0)
        if raw <= 0:
            return None
        decimals = info.get("decimals")
        if decimals is None:
            logger.debug("skipping %s on solana: no decimals", asset.get("id"))
            return None
        metadata = (asset.get("content") or {}).get("metadata") or {}
        return await self._price_token(
            asset["id"],
            symbol=metadata.get("symbol") or info.get("symbol") or "",
            decimals=int(decimals),
            raw_balance=raw,
            name=metadata.get("name") or "",
        )

    async def scan(self, address: str) -> ChainBalance:
        assets, native = await asyncio.gather(
            asyncio.to_thread(self.fetch_token_accounts, address),
            asyncio.to_thread(self.fetch_native_balance, address),
        )
        tokens = await asyncio.gather(*(self._to_token(asset) for asset in assets))
        native_value = await self._native_value(native)
        return self._build_balance(address, [t for t in tokens if t is not None], native, native_value)
