import time
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from .aggregator import DexAggregator
from .chains import SOLANA
from .http_client import HttpClient
from .jupiter import SOLANA_TX_COST_USD, normalize_mint
from .models import DexQuote, QuoteKind, QuoteRequest, TokenRef, min_output, new_quote


class OrcaClient(DexAggregator):
    """Single-pool whirlpool quotes."""

    name = "orca"
    kind = QuoteKind.SWAP

    def __init__(
        self,
        http: HttpClient,
        base_url: str,
        expiry_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(http, base_url, expiry_seconds, clock)

    def is_available(self, chain: str, destination_chain: Optional[str] = None) -> bool:
        return chain == SOLANA and destination_chain in (None, SOLANA)

    def quote_params(self, in_mint: str, out_mint: str, amount: int, slippage_bps: int) -> Dict[str, str]:
        return {
            "inputMint": normalize_mint(in_mint),
            "outputMint": normalize_mint(out_mint),
            "amount": str(amount),
            "slippageTolerance": str(Decimal(slippage_bps) / Decimal(10_000)),
            "amountSpecifiedIsInput": "true",
        }

    def parse_quote(self, response: Dict[str, Any], request: QuoteRequest) -> DexQuote:
        quoted_amount = response.get("quotedAmount")
        if quoted_amount is None:
            raise ValueError("Orca quote response missing quotedAmount")

        try:
            out_amount = int(quoted_amount)
        except (TypeError, ValueError):
            raise ValueError("Orca quotedAmount is not parseable as int") from None

        try:
            impact = Decimal(str(response.get("priceImpact") or "0")) * 100
        except InvalidOperation:
            raise ValueError("Orca priceImpact is not a number") from None

        pool_addr = response.get("poolAddress", "")
        if not pool_addr:
            raise ValueError("Orca quote response missing poolAddress")

        created = self.clock()
        return new_quote(
            created,
            quote_id=self._new_quote_id(),
            aggregator=self.name,
            chain=SOLANA,
            input_token=TokenRef(address=normalize_mint(request.input_token)),
            output_token=TokenRef(address=normalize_mint(request.output_token)),
            input_amount=request.input_amount,
            output_amount=out_amount,
            price_impact_pct=impact,
            estimated_gas_usd=SOLANA_TX_COST_USD,
            slippage=request.slippage,
            expires_at=int(created) + self.expiry_seconds,
            route=f"whirlpool:{pool_addr}",
            kind=self.kind,
            metadata={"pool": pool_addr, "tick": str(response.get("tickCurrentIndex", ""))},
        )

    def _quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        params = self.quote_params(
            request.input_token, request.output_token, request.input_amount, request.slippage_bps
        )
        response = self.http.get_json(f"{self.base_url}/whirlpool/quote", params=params)
        return self.parse_quote(response, request)

    def _build(self, quote: DexQuote, request: QuoteRequest) -> Optional[DexQuote]:
        payload = {
            "pool": quote.metadata["pool"],
            "inputMint": quote.input_token.address,
            "outputMint": quote.output_token.address,
            "amount": str(quote.input_amount),
            "otherAmountThreshold": str(min_output(quote)),
            "amountSpecifiedIsInput": True,
            "wallet": request.user_address,
        }
        response = self.http.post_json(f"{self.base_url}/whirlpool/swap", payload)
        transaction = response.get("transaction")
        if not transaction:
            return None
        return replace(quote, calldata=transaction)
