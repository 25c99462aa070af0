import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .config import QuoteConfig
from .errors import ProviderError
from .http_client import HttpClient
from .models import DexQuote, QuoteKind, QuoteRequest

logger = logging.getLogger(__name__)

# statuses providers use for "no route for this pair", as opposed to an outage
NO_ROUTE_STATUSES = (400, 404, 422)


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


class DexAggregator(ABC):
    """Adapter for one swap or bridge provider.

    ``get_quote`` returns None when the provider cannot serve the pair or
    chain; it raises ``ProviderError`` only for transient failures of a
    provider that could otherwise answer.
    """

    name: str = ""
    kind: QuoteKind = QuoteKind.SWAP

    def __init__(
        self,
        http: HttpClient,
        base_url: str,
        expiry_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.expiry_seconds = expiry_seconds
        self.clock = clock

    @abstractmethod
    def is_available(self, chain: str, destination_chain: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def _quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        ...

    def _build(self, quote: DexQuote, request: QuoteRequest) -> Optional[DexQuote]:
        return quote if quote.executable else None

    async def get_quote(self, request: QuoteRequest) -> Optional[DexQuote]:
        if not self.is_available(request.chain, request.destination_chain):
            return None
        quote = await asyncio.to_thread(self._quote_or_none, request)
        if quote is not None and request.include_execution_data and not quote.executable:
            quote = await self.build_execution(quote, request)
        return quote

    async def build_execution(self, quote: DexQuote, request: QuoteRequest) -> Optional[DexQuote]:
        """Materialize calldata bound to exactly the quoted route."""
        if quote.executable:
            return quote
        return await asyncio.to_thread(self._build, quote, request)

    def _quote_or_none(self, request: QuoteRequest) -> Optional[DexQuote]:
        try:
            return self._quote(request)
        except ProviderError as exc:
            if exc.http_status in NO_ROUTE_STATUSES:
                logger.debug("%s has no route: %s", self.name, exc)
                return None
            raise
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("%s returned an unusable quote: %r", self.name, exc)
            return None

    def _new_quote_id(self) -> str:
        return f"{self.name}-{uuid.uuid4().hex}"

    def _expires_at(self) -> int:
        return int(self.clock()) + self.expiry_seconds


class QuoteSelector:
    """Queries every available adapter concurrently and keeps the best net output."""

    def __init__(self, adapters: Sequence[DexAggregator], config: Optional[QuoteConfig] = None) -> None:
        self.adapters = list(adapters)
        self.config = config or QuoteConfig()

    def available(self, request: QuoteRequest) -> List[DexAggregator]:
        return [a for a in self.adapters if a.is_available(request.chain, request.destination_chain)]

    async def _quote_with_retry(self, adapter: DexAggregator, request: QuoteRequest) -> Optional[DexQuote]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.adapter_attempts),
            wait=wait_exponential(multiplier=self.config.adapter_backoff_seconds, max=5),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                return await adapter.get_quote(request)
        return None

    async def collect(self, request: QuoteRequest) -> List[Tuple[DexAggregator, DexQuote]]:
        adapters = self.available(request)
        preview = _without_execution(request)
        results = await asyncio.gather(
            *(self._quote_with_retry(adapter, preview) for adapter in adapters),
            return_exceptions=True,
        )
        quotes: List[Tuple[DexAggregator, DexQuote]] = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("quote from %s discarded: %s", adapter.name, result)
            elif result is not None:
                quotes.append((adapter, result))
        return quotes

    @staticmethod
    def net_output(
        quote: DexQuote,
        output_price_usd: Optional[Decimal] = None,
        output_decimals: Optional[int] = None,
    ) -> Decimal:
        """Output in base units less gas converted to base units of the output token.

        ``output_decimals`` applies to every quote being compared. Without an
        output price or decimals gas cannot be converted, so the raw output
        amount is compared instead.
        """
        if not output_price_usd or output_decimals is None:
            return Decimal(quote.output_amount)
        gas_units = quote.estimated_gas_usd / output_price_usd * (Decimal(10) ** output_decimals)
        return Decimal(quote.output_amount) - gas_units

    @staticmethod
    def resolve_decimals(quotes: Sequence[DexQuote], fallback: Optional[int] = None) -> Optional[int]:
        """Output decimals shared by all quotes of one request."""
        for quote in quotes:
            if quote.output_token.decimals is not None:
                return quote.output_token.decimals
        return fallback

    def rank(
        self,
        quotes: Sequence[DexQuote],
        output_price_usd: Optional[Decimal] = None,
        output_decimals: Optional[int] = None,
    ) -> List[DexQuote]:
        decimals = self.resolve_decimals(quotes, output_decimals)
        return sorted(
            quotes,
            key=lambda q: (-self.net_output(q, output_price_usd, decimals), q.price_impact_pct),
        )

    async def best_quote(
        self,
        request: QuoteRequest,
        output_price_usd: Optional[Decimal] = None,
        output_decimals: Optional[int] = None,
    ) -> Optional[DexQuote]:
        collected = await self.collect(request)
        if not collected:
            return None
        by_id = {quote.quote_id: adapter for adapter, quote in collected}
        ranked = self.rank([quote for _, quote in collected], output_price_usd, output_decimals)
        if not request.include_execution_data:
            return ranked[0]
        for quote in ranked:
            adapter = by_id[quote.quote_id]
            try:
                executable = await adapter.build_execution(quote, request)
            except Exception as exc:  # noqa: BLE001 - next-best route is tried instead
                logger.warning("%s could not build execution data: %s", adapter.name, exc)
                continue
            if executable is not None and executable.executable:
                return executable
        logger.warning("no route for %s -> %s on %s produced execution data", request.input_token, request.output_token, request.chain)
        return None


def _without_execution(request: QuoteRequest) -> QuoteRequest:
    if not request.include_execution_data:
        return request
    return QuoteRequest(
        chain=request.chain,
        input_token=request.input_token,
        output_token=request.output_token,
        input_amount=request.input_amount,
        slippage=request.slippage,
        user_address=request.user_address,
        include_execution_data=False,
        destination_chain=request.destination_chain,
    )
