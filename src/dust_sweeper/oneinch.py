import logging
import time
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .aggregator import DexAggregator
from .chains import EVM, SUPPORTED_CHAINS, get_chain
from .errors import PriceUnavailable
from .http_client import HttpClient
from .models import DexQuote, QuoteKind, QuoteRequest, TokenRef, new_quote
from .oracle import PriceOracle

logger = logging.getLogger(__name__)

GWEI = Decimal("1e-9")


class OneInchClient(DexAggregator):
    """1inch swap API (v6) on the EVM chains it serves."""

    name = "1inch"
    kind = QuoteKind.SWAP

    def __init__(
        self,
        http: HttpClient,
        base_url: str,
        api_key: str = "",
        oracle: Optional[PriceOracle] = None,
        expiry_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(http, base_url, expiry_seconds, clock)
        self.api_key = api_key
        self.oracle = oracle

    def is_available(self, chain: str, destination_chain: Optional[str] = None) -> bool:
        info = SUPPORTED_CHAINS.get(chain)
        if info is None or info.family != EVM:
            return False
        return destination_chain in (None, chain)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def quote_params(self, src: str, dst: str, amount: int) -> Dict[str, str]:
        return {
            "src": src,
            "dst": dst,
            "amount": str(amount),
            "includeGas": "true",
            "includeTokensInfo": "true",
            "includeProtocols": "true",
        }

    def parse_quote(self, response: Dict[str, Any], request: QuoteRequest) -> DexQuote:
        out_amount = int(response["dstAmount"])
        if out_amount <= 0:
            raise ValueError("1inch quote has no output")
        src = response.get("srcToken") or {}
        dst = response.get("dstToken") or {}
        protocols = response.get("protocols") or []
        names = []
        for route in protocols:
            for hop in route:
                for part in hop:
                    if part.get("name") and part["name"] not in names:
                        names.append(part["name"])
        created = self.clock()
        return new_quote(
            created,
            quote_id=self._new_quote_id(),
            aggregator=self.name,
            chain=request.chain,
            input_token=TokenRef(request.input_token, src.get("symbol") or "UNKNOWN", src.get("decimals")),
            output_token=TokenRef(request.output_token, dst.get("symbol") or "UNKNOWN", dst.get("decimals")),
            input_amount=request.input_amount,
            output_amount=out_amount,
            price_impact_pct=Decimal(0),
            estimated_gas_usd=Decimal(0),
            slippage=request.slippage,
            expires_at=int(created) + self.expiry_seconds,
            route=" > ".join(names) or "1inch",
            kind=self.kind,
            metadata={"gas_units": int(response.get("gas") or 0)},
        )

    def _base(self, chain: str) -> str:
        return f"{self.base_url}/{get_chain(chain).chain_id}"

    def _quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        params = self.quote_params(request.input_token, request.output_token, request.input_amount)
        response = self.http.get_json(f"{self._base(request.chain)}/quote", params=params, headers=self._headers())
        return self.parse_quote(response, request)

    async def gas_usd(self, chain: str, gas_units: int) -> Decimal:
        """Gas units at the chain's reference gas price, valued at the native price."""
        if not gas_units or self.oracle is None:
            return Decimal(0)
        try:
            native = await self.oracle.native_price(chain)
        except PriceUnavailable:
            logger.debug("no native price on %s, gas left unpriced", chain)
            return Decimal(0)
        return Decimal(gas_units) * Decimal(get_chain(chain).gas_price_gwei) * GWEI * native.price_usd

    async def get_quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        quote = await super().get_quote(request)
        if quote is None or quote.estimated_gas_usd:
            return quote
        return replace(quote, estimated_gas_usd=await self.gas_usd(request.chain, quote.metadata.get("gas_units", 0)))

    def _build(self, quote: DexQuote, request: QuoteRequest) -> Optional[DexQuote]:
        params = {
            "src": quote.input_token.address,
            "dst": quote.output_token.address,
            "amount": str(quote.input_amount),
            "from": request.user_address,
            "slippage": str(quote.slippage),
            "disableEstimate": "true",
        }
        response = self.http.get_json(f"{self._base(quote.chain)}/swap", params=params, headers=self._headers())
        tx = response.get("tx") or {}
        if not tx.get("data"):
            return None
        return replace(
            quote,
            calldata=tx["data"],
            metadata={
                **quote.metadata,
                "to": tx.get("to"),
                "value": tx.get("value", "0"),
                "gas": tx.get("gas"),
                "gasPrice": tx.get("gasPrice"),
            },
        )
