from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError


@dataclass(frozen=True)
class WalletToken:
    chain: str
    address: str
    symbol: str
    decimals: int
    raw_balance: int
    formatted_balance: Decimal
    value_usd: Decimal
    is_dust: bool
    name: str = ""
    price_usd: Optional[Decimal] = None
    price_confidence: Optional["Confidence"] = None


@dataclass(frozen=True)
class ChainBalance:
    chain: str
    address: str
    tokens: Tuple[WalletToken, ...]
    native_balance: int
    native_value_usd: Decimal
    total_value_usd: Decimal
    dust_value_usd: Decimal
    dust_token_count: int
    scanned_at: float

    @property
    def dust_tokens(self) -> List[WalletToken]:
        return [token for token in self.tokens if token.is_dust]


@dataclass(frozen=True)
class ScanFailure:
    chain: str
    error: str


@dataclass(frozen=True)
class WalletScan:
    address: str
    balances: Dict[str, ChainBalance]
    failures: Tuple[ScanFailure, ...] = ()

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)

    @property
    def total_value_usd(self) -> Decimal:
        return sum((b.total_value_usd for b in self.balances.values()), Decimal(0))

    @property
    def dust_value_usd(self) -> Decimal:
        return sum((b.dust_value_usd for b in self.balances.values()), Decimal(0))

    @property
    def dust_token_count(self) -> int:
        return sum(b.dust_token_count for b in self.balances.values())

    def dust_tokens(self) -> List[WalletToken]:
        tokens: List[WalletToken] = []
        for balance in self.balances.values():
            tokens.extend(balance.dust_tokens)
        return tokens


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNTRUSTED = "UNTRUSTED"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    Confidence.UNTRUSTED: 0,
    Confidence.LOW: 1,
    Confidence.MEDIUM: 2,
    Confidence.HIGH: 3,
}


@dataclass(frozen=True)
class PriceObservation:
    source: str
    price: Decimal
    observed_at: float
    liquidity_usd: Optional[Decimal] = None
    volume_24h: Optional[Decimal] = None


@dataclass(frozen=True)
class ValidatedPrice:
    token: str
    chain: str
    price_usd: Decimal
    confidence: Confidence
    sources: Tuple[PriceObservation, ...]
    liquidity_usd: Decimal
    volume_24h: Decimal
    updated_at: float
    max_deviation: Decimal = Decimal(0)


@dataclass(frozen=True)
class TokenRef:
    address: str
    symbol: str = "UNKNOWN"
    decimals: Optional[int] = None


@dataclass(frozen=True)
class QuoteRequest:
    chain: str
    input_token: str
    output_token: str
    input_amount: int
    slippage: Decimal
    user_address: str
    include_execution_data: bool = False
    destination_chain: Optional[str] = None

    @property
    def is_cross_chain(self) -> bool:
        return self.destination_chain is not None and self.destination_chain != self.chain

    @property
    def slippage_bps(self) -> int:
        return int(self.slippage * 100)


class QuoteKind(str, Enum):
    SWAP = "swap"
    BRIDGE = "bridge"


@dataclass(frozen=True)
class DexQuote:
    quote_id: str
    aggregator: str
    chain: str
    input_token: TokenRef
    output_token: TokenRef
    input_amount: int
    output_amount: int
    price_impact_pct: Decimal
    estimated_gas_usd: Decimal
    slippage: Decimal
    expires_at: int
    route: str
    kind: QuoteKind = QuoteKind.SWAP
    destination_chain: Optional[str] = None
    calldata: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    @property
    def executable(self) -> bool:
        return bool(self.calldata)

    def formatted_output(self) -> Decimal:
        decimals = self.output_token.decimals or 0
        return Decimal(self.output_amount) / (Decimal(10) ** decimals)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        for key in ("price_impact_pct", "estimated_gas_usd", "slippage"):
            data[key] = str(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DexQuote":
        return cls(
            quote_id=data["quote_id"],
            aggregator=data["aggregator"],
            chain=data["chain"],
            input_token=TokenRef(**data["input_token"]),
            output_token=TokenRef(**data["output_token"]),
            input_amount=int(data["input_amount"]),
            output_amount=int(data["output_amount"]),
            price_impact_pct=Decimal(data["price_impact_pct"]),
            estimated_gas_usd=Decimal(data["estimated_gas_usd"]),
            slippage=Decimal(data["slippage"]),
            expires_at=int(data["expires_at"]),
            route=data["route"],
            kind=QuoteKind(data.get("kind", QuoteKind.SWAP.value)),
            destination_chain=data.get("destination_chain"),
            calldata=data.get("calldata"),
            metadata=dict(data.get("metadata") or {}),
        )


def new_quote(created_at: float, **values: Any) -> DexQuote:
    """Build a quote, refusing an ``expires_at`` that is not in the future."""
    quote = DexQuote(**values)
    if quote.expires_at <= created_at:
        raise ValidationError("quote created already expired", {"quote_id": quote.quote_id})
    return quote


def min_output(quote: DexQuote) -> int:
    """Output floor after the quote's slippage percentage."""
    floor = Decimal(quote.output_amount) * (Decimal(100) - quote.slippage) / Decimal(100)
    return int(floor)


class SweepStatus(str, Enum):
    PENDING = "pending"
    QUOTING = "quoting"
    SIGNING = "signing"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SweepStatus.CONFIRMED, SweepStatus.FAILED, SweepStatus.CANCELLED})


class LegStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class LegKind(str, Enum):
    SWAP = "swap"
    BRIDGE = "bridge"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class SweepToken:
    chain: str
    address: str
    symbol: str
    amount: int
    usd_value: Decimal
    decimals: int = 0


@dataclass(frozen=True)
class Destination:
    chain: str
    token: str
    protocol: Optional[str] = None
    vault: Optional[str] = None


@dataclass
class SweepLeg:
    """One chain-scoped step of a sweep.

    Swap and bridge legs carry the quote the user approved; a deposit leg has
    no quote and executes the vault deposit the wallet signed.
    """

    leg_id: str
    chain: str
    kind: LegKind
    quote: Optional[DexQuote] = None
    depends_on: List[str] = field(default_factory=list)
    status: LegStatus = LegStatus.PENDING
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    poll_count: int = 0
    submitted_at: Optional[float] = None
    confirmed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (LegStatus.CONFIRMED, LegStatus.FAILED)

    @property
    def expires_at(self) -> Optional[int]:
        return self.quote.expires_at if self.quote else None

    @property
    def output_amount(self) -> int:
        return self.quote.output_amount if self.quote else 0

    @property
    def min_output(self) -> int:
        return min_output(self.quote) if self.quote else 0

    @property
    def gas_usd(self) -> Decimal:
        return self.quote.estimated_gas_usd if self.quote else Decimal(0)


@dataclass
class Sweep:
    id: str
    wallet: str
    destination: Destination
    tokens: List[SweepToken]
    status: SweepStatus = SweepStatus.PENDING
    legs: List[SweepLeg] = field(default_factory=list)
    unrouted: List[SweepToken] = field(default_factory=list)
    output_token: Optional[str] = None
    output_amount: Optional[int] = None
    output_chain: Optional[str] = None
    fee_paid: Decimal = Decimal(0)
    error: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    completed_at: Optional[float] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def quote_expires_at(self) -> Optional[int]:
        expiries = [leg.expires_at for leg in self.legs if leg.expires_at is not None]
        return min(expiries) if expiries else None

    @property
    def tx_hashes(self) -> Dict[str, List[str]]:
        hashes: Dict[str, List[str]] = {}
        for leg in self.legs:
            if leg.tx_hash:
                hashes.setdefault(leg.chain, []).append(leg.tx_hash)
        return hashes

    @property
    def chain_status(self) -> Dict[str, LegStatus]:
        by_chain: Dict[str, List[LegStatus]] = {}
        for leg in self.legs:
            by_chain.setdefault(leg.chain, []).append(leg.status)
        summary: Dict[str, LegStatus] = {}
        for chain, statuses in by_chain.items():
            if LegStatus.FAILED in statuses:
                summary[chain] = LegStatus.FAILED
            elif all(status == LegStatus.CONFIRMED for status in statuses):
                summary[chain] = LegStatus.CONFIRMED
            elif LegStatus.PENDING in statuses and LegStatus.SUBMITTED not in statuses:
                summary[chain] = LegStatus.PENDING
            else:
                summary[chain] = LegStatus.SUBMITTED
        return summary

    def leg(self, leg_id: str) -> SweepLeg:
        for leg in self.legs:
            if leg.leg_id == leg_id:
                return leg
        raise KeyError(leg_id)

    def dependents_of(self, leg_id: str) -> List[SweepLeg]:
        return [leg for leg in self.legs if leg_id in leg.depends_on]

    def progress(self) -> str:
        confirmed = sum(1 for leg in self.legs if leg.status == LegStatus.CONFIRMED)
        failed = sum(1 for leg in self.legs if leg.status == LegStatus.FAILED)
        text = f"{confirmed} of {len(self.legs)} legs confirmed"
        if failed:
            text += f", {failed} failed"
        return text
