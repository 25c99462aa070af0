import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .http_client import HttpClient
from .models import ChainBalance, WalletToken
from .oracle import PriceOracle
from .scanner import ChainScanner

logger = logging.getLogger(__name__)


class EvmScanner(ChainScanner):
    """ERC-20 balances through Alchemy's token API.

    Only ``erc20`` balances are requested, so NFTs never enter the result.
    """

    PAGE_SIZE = 100

    def __init__(
        self,
        chain: str,
        http: HttpClient,
        rpc_url: str,
        oracle: PriceOracle,
        dust_threshold_usd: Decimal,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(chain, oracle, dust_threshold_usd, clock)
        self.http = http
        self.rpc_url = rpc_url
        self._metadata: Dict[str, Dict[str, Any]] = {}

    def fetch_token_balances(self, address: str) -> List[Tuple[str, int]]:
        balances: List[Tuple[str, int]] = []
        page_key: Optional[str] = None
        while True:
            options: Dict[str, Any] = {"maxCount": self.PAGE_SIZE}
            if page_key:
                options["pageKey"] = page_key
            result = self.http.rpc(self.rpc_url, "alchemy_getTokenBalances", [address, "erc20", options])
            page = result.get("tokenBalances") or []
            for entry in page:
                if entry.get("error"):
                    continue
                raw = int(entry.get("tokenBalance") or "0x0", 16)
                if raw > 0:
                    balances.append((entry["contractAddress"], raw))
            page_key = result.get("pageKey")
            if len(page) < self.PAGE_SIZE or not page_key:
                break
        return balances

    def fetch_native_balance(self, address: str) -> int:
        return int(self.http.rpc(self.rpc_url, "eth_getBalance", [address, "latest"]), 16)

    def token_metadata(self, contract: str) -> Dict[str, Any]:
        key = contract.lower()
        if key not in self._metadata:
            self._metadata[key] = self.http.rpc(self.rpc_url, "alchemy_getTokenMetadata", [contract]) or {}
        return self._metadata[key]

    async def _to_token(self, contract: str, raw: int) -> Optional[WalletToken]:
        metadata = await asyncio.to_thread(self.token_metadata, contract)
        decimals = metadata.get("decimals")
        if decimals is None:
            logger.debug("skipping %s on %s: no decimals", contract, self.chain)
            return None
        return await self._price_token(
            contract,
            symbol=metadata.get("symbol") or "",
            decimals=int(decimals),
            raw_balance=raw,
            name=metadata.get("name") or "",
        )

    async def scan(self, address: str) -> ChainBalance:
        holdings, native = await asyncio.gather(
            asyncio.to_thread(self.fetch_token_balances, address),
            asyncio.to_thread(self.fetch_native_balance, address),
        )
        tokens = await asyncio.gather(*(self._to_token(contract, raw) for contract, raw in holdings))
        native_value = await self._native_value(native)
        return self._build_balance(address, [t for t in tokens if t is not None], native, native_value)
