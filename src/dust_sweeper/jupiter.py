import logging
import time
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .aggregator import DexAggregator
from .chains import SOLANA, get_chain
from .errors import ProviderError
from .http_client import HttpClient
from .models import DexQuote, QuoteKind, QuoteRequest, TokenRef, new_quote

logger = logging.getLogger(__name__)

WSOL_MINT = get_chain(SOLANA).wrapped_native
# base fee plus a typical priority fee, in USD
SOLANA_TX_COST_USD = Decimal("0.001")
_NATIVE_ALIASES = ("sol", "native", "11111111111111111111111111111111")


def normalize_mint(mint: str) -> str:
    if mint.lower() in _NATIVE_ALIASES:
        return WSOL_MINT
    return mint


class JupiterClient(DexAggregator):
    name = "jupiter"
    kind = QuoteKind.SWAP

    def __init__(
        self,
        http: HttpClient,
        base_url: str,
        tokens_url: str = "https://tokens.jup.ag",
        expiry_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(http, base_url, expiry_seconds, clock)
        self.tokens_url = tokens_url.rstrip("/")
        self._token_cache: Dict[str, Optional[Dict[str, Any]]] = {}

    def is_available(self, chain: str, destination_chain: Optional[str] = None) -> bool:
        return chain == SOLANA and destination_chain in (None, SOLANA)

    def quote_params(self, in_mint: str, out_mint: str, amount: int, slippage_bps: int) -> Dict[str, str]:
        return {
            "inputMint": normalize_mint(in_mint),
            "outputMint": normalize_mint(out_mint),
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "swapMode": "ExactIn",
            "onlyDirectRoutes": "false",
        }

    def token_info(self, mint: str) -> Optional[Dict[str, Any]]:
        """Symbol and decimals for a mint; None when the token list has no entry."""
        if mint not in self._token_cache:
            try:
                self._token_cache[mint] = self.http.get_json(f"{self.tokens_url}/token/{mint}")
            except ProviderError as exc:
                logger.debug("token info for %s unavailable: %s", mint, exc)
                return None
        return self._token_cache[mint]

    def _token_ref(self, mint: str) -> TokenRef:
        info = self.token_info(mint) or {}
        decimals = info.get("decimals")
        return TokenRef(
            address=mint,
            symbol=info.get("symbol") or "UNKNOWN",
            decimals=int(decimals) if decimals is not None else None,
        )

    def parse_quote(self, response: Dict[str, Any], request: QuoteRequest) -> DexQuote:
        out_amount = int(response["outAmount"])
        if out_amount <= 0:
            raise ValueError("Jupiter quote has no output")
        route_plan = response.get("routePlan") or []
        labels = [step["swapInfo"].get("label") or step["swapInfo"]["ammKey"] for step in route_plan]
        created = self.clock()
        return new_quote(
            created,
            quote_id=self._new_quote_id(),
            aggregator=self.name,
            chain=SOLANA,
            input_token=self._token_ref(response.get("inputMint") or normalize_mint(request.input_token)),
            output_token=self._token_ref(response.get("outputMint") or normalize_mint(request.output_token)),
            input_amount=int(response.get("inAmount") or request.input_amount),
            output_amount=out_amount,
            price_impact_pct=Decimal(str(response.get("priceImpactPct") or "0")) * 100,
            estimated_gas_usd=SOLANA_TX_COST_USD,
            slippage=request.slippage,
            expires_at=int(created) + self.expiry_seconds,
            route=" > ".join(labels),
            kind=self.kind,
            metadata={"quoteResponse": response, "contextSlot": response.get("contextSlot")},
        )

    def _quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        params = self.quote_params(
            request.input_token, request.output_token, request.input_amount, request.slippage_bps
        )
        response = self.http.get_json(f"{self.base_url}/quote", params=params)
        return self.parse_quote(response, request)

    def _build(self, quote: DexQuote, request: QuoteRequest) -> Optional[DexQuote]:
        payload = {
            "quoteResponse": quote.metadata["quoteResponse"],
            "userPublicKey": request.user_address,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        response = self.http.post_json(f"{self.base_url}/swap", payload)
        transaction = response.get("swapTransaction")
        if not transaction:
            return None
        return replace(
            quote,
            calldata=transaction,
            metadata={**quote.metadata, "lastValidBlockHeight": response.get("lastValidBlockHeight")},
        )
