import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from .aggregator import DexAggregator
from .chains import SUPPORTED_CHAINS, get_chain
from .http_client import HttpClient
from .models import DexQuote, QuoteKind, QuoteRequest, TokenRef, new_quote


def _sum_usd(costs: Iterable[Dict[str, Any]]) -> Decimal:
    return sum((Decimal(str(cost.get("amountUSD") or "0")) for cost in costs), Decimal(0))


class LiFiClient(DexAggregator):
    """LI.FI routes: bridges between chains and same-chain swaps.

    A LI.FI quote already carries its transaction request, so every quote it
    returns is executable.
    """

    name = "lifi"
    kind = QuoteKind.BRIDGE

    def __init__(
        self,
        http: HttpClient,
        base_url: str,
        expiry_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(http, base_url, expiry_seconds, clock)

    def is_available(self, chain: str, destination_chain: Optional[str] = None) -> bool:
        return chain in SUPPORTED_CHAINS and (destination_chain is None or destination_chain in SUPPORTED_CHAINS)

    def quote_params(self, request: QuoteRequest) -> Dict[str, str]:
        destination = request.destination_chain or request.chain
        return {
            "fromChain": str(get_chain(request.chain).chain_id),
            "toChain": str(get_chain(destination).chain_id),
            "fromToken": request.input_token,
            "toToken": request.output_token,
            "fromAmount": str(request.input_amount),
            "fromAddress": request.user_address,
            "slippage": str(request.slippage / Decimal(100)),
        }

    def parse_quote(self, response: Dict[str, Any], request: QuoteRequest) -> DexQuote:
        estimate = response["estimate"]
        out_amount = int(estimate["toAmount"])
        if out_amount <= 0:
            raise ValueError("LI.FI quote has no output")
        action = response.get("action") or {}
        src = action.get("fromToken") or {}
        dst = action.get("toToken") or {}
        from_usd = Decimal(str(estimate.get("fromAmountUSD") or "0"))
        to_usd = Decimal(str(estimate.get("toAmountUSD") or "0"))
        impact = (from_usd - to_usd) / from_usd * 100 if from_usd > 0 and to_usd > 0 else Decimal(0)
        cost = _sum_usd(estimate.get("gasCosts") or []) + _sum_usd(estimate.get("feeCosts") or [])
        tx = response.get("transactionRequest") or {}
        created = self.clock()
        return new_quote(
            created,
            quote_id=self._new_quote_id(),
            aggregator=self.name,
            chain=request.chain,
            input_token=TokenRef(request.input_token, src.get("symbol") or "UNKNOWN", src.get("decimals")),
            output_token=TokenRef(dst.get("address") or request.output_token, dst.get("symbol") or "UNKNOWN", dst.get("decimals")),
            input_amount=request.input_amount,
            output_amount=out_amount,
            price_impact_pct=max(impact, Decimal(0)),
            estimated_gas_usd=cost,
            slippage=request.slippage,
            expires_at=int(created) + self.expiry_seconds,
            route=response.get("tool") or "lifi",
            kind=QuoteKind.BRIDGE if request.is_cross_chain else QuoteKind.SWAP,
            destination_chain=request.destination_chain if request.is_cross_chain else None,
            calldata=tx.get("data"),
            metadata={"to": tx.get("to"), "value": tx.get("value", "0"), "tool": response.get("tool")},
        )

    def _quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        response = self.http.get_json(f"{self.base_url}/quote", params=self.quote_params(request))
        return self.parse_quote(response, request)
