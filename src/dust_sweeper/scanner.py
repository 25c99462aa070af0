import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .chains import address_family, get_chain
from .errors import PriceUnavailable
from .models import ChainBalance, Confidence, ScanFailure, WalletScan, WalletToken
from .oracle import PriceOracle

logger = logging.getLogger(__name__)


def format_units(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


def is_dust(value_usd: Decimal, threshold_usd: Decimal) -> bool:
    return Decimal(0) < value_usd < threshold_usd


class ChainScanner(ABC):
    """Scans one chain for a wallet's fungible balances."""

    def __init__(
        self,
        chain: str,
        oracle: PriceOracle,
        dust_threshold_usd: Decimal,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.family = get_chain(chain).family
        self.oracle = oracle
        self.dust_threshold_usd = dust_threshold_usd
        self.clock = clock

    def accepts(self, address: str) -> bool:
        return address_family(address) == self.family

    @abstractmethod
    async def scan(self, address: str) -> ChainBalance:
        ...

    async def _price_token(
        self,
        token_address: str,
        symbol: str,
        decimals: int,
        raw_balance: int,
        name: str = "",
    ) -> WalletToken:
        formatted = format_units(raw_balance, decimals)
        price = None
        confidence: Optional[Confidence] = None
        value = Decimal(0)
        try:
            validated = await self.oracle.get_validated_price(token_address, self.chain)
        except PriceUnavailable:
            logger.debug("no price for %s on %s", token_address, self.chain)
        else:
            price = validated.price_usd
            confidence = validated.confidence
            value = formatted * price
        return WalletToken(
            chain=self.chain,
            address=token_address,
            symbol=symbol or "???",
            name=name or "Unknown Token",
            decimals=decimals,
            raw_balance=raw_balance,
            formatted_balance=formatted,
            value_usd=value,
            is_dust=is_dust(value, self.dust_threshold_usd),
            price_usd=price,
            price_confidence=confidence,
        )

    async def _native_value(self, raw_balance: int) -> Decimal:
        if raw_balance <= 0:
            return Decimal(0)
        try:
            validated = await self.oracle.native_price(self.chain)
        except PriceUnavailable:
            return Decimal(0)
        return format_units(raw_balance, get_chain(self.chain).native_decimals) * validated.price_usd

    def _build_balance(
        self,
        address: str,
        tokens: Iterable[WalletToken],
        native_balance: int,
        native_value_usd: Decimal,
    ) -> ChainBalance:
        tokens = tuple(tokens)
        dust = [token for token in tokens if token.is_dust]
        return ChainBalance(
            chain=self.chain,
            address=address,
            tokens=tokens,
            native_balance=native_balance,
            native_value_usd=native_value_usd,
            total_value_usd=sum((t.value_usd for t in tokens), Decimal(0)) + native_value_usd,
            dust_value_usd=sum((t.value_usd for t in dust), Decimal(0)),
            dust_token_count=len(dust),
            scanned_at=self.clock(),
        )


class WalletScanner:
    """Fan-out over every chain scanner that understands the wallet's address format.

    A failing chain is reported as a ``ScanFailure`` next to the chains that
    did succeed; it never fails the whole scan.
    """

    def __init__(self, scanners: Sequence[ChainScanner], concurrency: int = 8) -> None:
        self.scanners: Dict[str, ChainScanner] = {scanner.chain: scanner for scanner in scanners}
        self.concurrency = concurrency

    async def scan(self, address: str, chains: Optional[Iterable[str]] = None) -> WalletScan:
        selected = self._select(address, chains)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(scanner: ChainScanner) -> ChainBalance:
            async with semaphore:
                return await scanner.scan(address)

        results = await asyncio.gather(*(bounded(s) for s in selected), return_exceptions=True)
        balances: Dict[str, ChainBalance] = {}
        failures: List[ScanFailure] = []
        for scanner, result in zip(selected, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("scan of %s on %s failed: %s", address, scanner.chain, result)
                failures.append(ScanFailure(chain=scanner.chain, error=str(result)))
            else:
                balances[scanner.chain] = result
        return WalletScan(address=address, balances=balances, failures=tuple(failures))

    def _select(self, address: str, chains: Optional[Iterable[str]]) -> List[ChainScanner]:
        wanted = set(chains) if chains else None
        return [
            scanner
            for name, scanner in self.scanners.items()
            if (wanted is None or name in wanted) and scanner.accepts(address)
        ]
