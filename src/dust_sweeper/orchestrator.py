"""Sweep lifecycle: quoting, signing, submission and settlement tracking.

A sweep is a small DAG of legs. Tokens already on the destination chain are
swapped there directly; tokens on any other chain are swapped into that
chain's USDC and bridged, and an optional vault deposit waits for every
other leg. Root legs are enqueued for execution when the signed sweep is
submitted; a dependent leg is enqueued once all of its prerequisites have
confirmed.

Every state change goes through ``_mutate``: reload, validate against the
current record, then write conditionally on the version that was read.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .aggregator import QuoteSelector
from .chains import address_family, get_chain, is_zero_address, normalize_address
from .config import SweeperConfig
from .errors import (
    ConcurrentModification,
    InvalidTransition,
    PaymentRequired,
    PriceUnavailable,
    QuoteExpired,
    SettlementError,
    ValidationError,
)
from .models import (
    Confidence,
    Destination,
    DexQuote,
    LegKind,
    LegStatus,
    QuoteRequest,
    Sweep,
    SweepLeg,
    SweepStatus,
    SweepToken,
)
from .oracle import PriceOracle
from .payment import PaymentAuthorization, PaymentGate
from .queue import BRIDGE_EXECUTE, BRIDGE_TRACK, SWEEP_EXECUTE, SWEEP_TRACK, Job, JobHandle, JobQueue
from .settlement import ReceiptStatus, SettlementTarget
from .store import MemoryStore, SweepRepository

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[SweepStatus, frozenset] = {
    SweepStatus.PENDING: frozenset({SweepStatus.QUOTING, SweepStatus.CANCELLED}),
    SweepStatus.QUOTING: frozenset({SweepStatus.QUOTING, SweepStatus.SIGNING, SweepStatus.CANCELLED}),
    SweepStatus.SIGNING: frozenset({SweepStatus.QUOTING, SweepStatus.SUBMITTED, SweepStatus.CANCELLED}),
    SweepStatus.SUBMITTED: frozenset({SweepStatus.CONFIRMED, SweepStatus.FAILED}),
}


@dataclass(frozen=True)
class SignedAuthorization:
    """What the wallet hands back after reviewing the quoted sweep.

    ``signed_transactions`` maps each leg id to the transaction the wallet
    signed for that leg.
    """

    signature: str
    signed_transactions: Dict[str, str] = field(default_factory=dict)
    payment: Optional[PaymentAuthorization] = None


SignatureVerifier = Callable[[Sweep, SignedAuthorization], bool]


def has_signature(sweep: Sweep, authorization: SignedAuthorization) -> bool:
    return bool(authorization.signature)


def check_transition(sweep: Sweep, target: SweepStatus) -> None:
    if target not in TRANSITIONS.get(sweep.status, frozenset()):
        raise InvalidTransition(
            "transition not allowed",
            {"sweep_id": sweep.id, "from": sweep.status.value, "to": target.value},
        )


def _same_token(chain: str, a: str, b: str) -> bool:
    return normalize_address(chain, a) == normalize_address(chain, b)


class SweepOrchestrator:
    SIGNER_PREFIX = "signer:"

    def __init__(
        self,
        repository: SweepRepository,
        selector: QuoteSelector,
        oracle: PriceOracle,
        queue: JobQueue,
        settlement: SettlementTarget,
        store: MemoryStore,
        config: Optional[SweeperConfig] = None,
        gate: Optional[PaymentGate] = None,
        verifier: SignatureVerifier = has_signature,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.repository = repository
        self.selector = selector
        self.oracle = oracle
        self.queue = queue
        self.settlement = settlement
        self.store = store
        self.config = config or SweeperConfig()
        self.gate = gate
        self.verifier = verifier
        self.clock = clock
        self.id_factory = id_factory

    def register(self, queue: Optional[JobQueue] = None) -> None:
        queue = queue or self.queue
        queue.register(SWEEP_EXECUTE, self.execute_leg, self._on_execute_failure)
        queue.register(BRIDGE_EXECUTE, self.execute_leg, self._on_execute_failure)
        queue.register(SWEEP_TRACK, self.track_leg, self._on_track_failure)
        queue.register(BRIDGE_TRACK, self.track_leg, self._on_track_failure)

    # reads

    def get(self, sweep_id: str) -> Sweep:
        return self.repository.get(sweep_id)

    def list_for_wallet(self, wallet: str) -> List[Sweep]:
        return self.repository.list_for_wallet(wallet)

    # transitions

    async def create_sweep(self, wallet: str, tokens: Iterable[SweepToken], destination: Destination) -> Sweep:
        tokens = list(tokens)
        if not tokens:
            raise ValidationError("no dust tokens selected")
        if not wallet or is_zero_address(wallet) or address_family(wallet) is None:
            raise ValidationError("invalid wallet address", {"wallet": wallet})
        get_chain(destination.chain)
        if not destination.token:
            raise ValidationError("destination token required")
        if destination.vault is not None and is_zero_address(destination.vault):
            raise ValidationError("invalid destination vault", {"vault": destination.vault})
        for token in tokens:
            get_chain(token.chain)
            if token.amount <= 0:
                raise ValidationError("token amount must be positive", {"token": token.address})
        await self._reject_unpriced(tokens)

        now = self.clock()
        sweep = Sweep(
            id=self.id_factory(),
            wallet=wallet,
            destination=destination,
            tokens=tokens,
            output_token=destination.token,
            output_chain=destination.chain,
            created_at=now,
            updated_at=now,
        )
        created = self.repository.insert(sweep)
        logger.info("sweep %s created for %s with %d tokens", created.id, wallet, len(tokens))
        return created

    async def _reject_unpriced(self, tokens: List[SweepToken]) -> None:
        results = await asyncio.gather(
            *(self.oracle.get_validated_price(t.address, t.chain) for t in tokens),
            return_exceptions=True,
        )
        for token, result in zip(tokens, results):
            if isinstance(result, PriceUnavailable):
                raise ValidationError("token has no usable price", {"token": token.address, "chain": token.chain})
            if isinstance(result, BaseException):
                raise result
            if result.confidence == Confidence.UNTRUSTED:
                raise ValidationError("token price is untrusted", {"token": token.address, "chain": token.chain})

    async def request_quotes(self, sweep_id: str) -> Sweep:
        sweep = self.repository.get(sweep_id)
        check_transition(sweep, SweepStatus.QUOTING)
        legs, unrouted = await self._plan_legs(sweep)

        def apply(current: Sweep) -> bool:
            check_transition(current, SweepStatus.QUOTING)
            current.unrouted = unrouted
            if not legs:
                current.error = "no route for any selected token"
                return True
            current.legs = legs
            current.status = SweepStatus.QUOTING
            current.error = None
            return True

        updated = self._mutate(sweep_id, apply)
        logger.info(
            "sweep %s quoted: %d legs, %d unrouted tokens, expires at %s",
            sweep_id,
            len(updated.legs),
            len(updated.unrouted),
            updated.quote_expires_at,
        )
        return updated

    async def begin_signing(self, sweep_id: str) -> Sweep:
        now = self.clock()

        def apply(sweep: Sweep) -> bool:
            check_transition(sweep, SweepStatus.SIGNING)
            if not sweep.legs:
                raise ValidationError("sweep has no quoted legs", {"sweep_id": sweep.id})
            self._require_fresh(sweep, now)
            sweep.status = SweepStatus.SIGNING
            return True

        return self._mutate(sweep_id, apply)

    async def submit(self, sweep_id: str, authorization: SignedAuthorization) -> Sweep:
        now = self.clock()
        self._validate_submission(self.repository.get(sweep_id), authorization, now)
        if self.gate is not None:
            decision = self.gate.admit(authorization.payment)
            if not decision.admitted:
                raise PaymentRequired(decision.reason or "payment required", {"sweep_id": sweep_id})

        def apply(sweep: Sweep) -> bool:
            self._validate_submission(sweep, authorization, now)
            sweep.status = SweepStatus.SUBMITTED
            sweep.fee_paid = sum((leg.gas_usd for leg in sweep.legs), Decimal(0))
            return True

        submitted = self._mutate(sweep_id, apply)
        self.store.set(self.SIGNER_PREFIX + sweep_id, dict(authorization.signed_transactions))
        for leg in submitted.legs:
            if not leg.depends_on:
                await self._enqueue_execution(submitted, leg)
        logger.info("sweep %s submitted with %d legs", sweep_id, len(submitted.legs))
        return submitted

    async def cancel(self, sweep_id: str, reason: str = "cancelled by user") -> Sweep:
        now = self.clock()

        def apply(sweep: Sweep) -> bool:
            check_transition(sweep, SweepStatus.CANCELLED)
            sweep.status = SweepStatus.CANCELLED
            sweep.error = reason
            sweep.completed_at = now
            return True

        return self._mutate(sweep_id, apply)

    def _validate_submission(self, sweep: Sweep, authorization: SignedAuthorization, now: float) -> None:
        check_transition(sweep, SweepStatus.SUBMITTED)
        self._require_fresh(sweep, now)
        for leg in sweep.legs:
            if leg.quote is not None and not leg.quote.executable:
                raise ValidationError("leg has no execution data", {"sweep_id": sweep.id, "leg": leg.leg_id})
            if not authorization.signed_transactions.get(leg.leg_id):
                raise ValidationError("missing signed transaction", {"sweep_id": sweep.id, "leg": leg.leg_id})
        if not self.verifier(sweep, authorization):
            raise ValidationError("invalid signature", {"sweep_id": sweep.id})

    @staticmethod
    def _require_fresh(sweep: Sweep, now: float) -> None:
        expires_at = sweep.quote_expires_at
        if expires_at is not None and now > expires_at:
            raise QuoteExpired("quote expired, re-quote the sweep", {"sweep_id": sweep.id, "expires_at": expires_at})

    def _mutate(self, sweep_id: str, apply: Callable[[Sweep], bool]) -> Sweep:
        for _ in range(max(self.config.sweep.max_transition_retries, 1)):
            sweep = self.repository.get(sweep_id)
            version, status = sweep.version, sweep.status
            if not apply(sweep):
                return sweep
            sweep.updated_at = self.clock()
            try:
                return self.repository.update(sweep, version, status)
            except ConcurrentModification:
                logger.debug("sweep %s changed underneath, retrying", sweep_id)
        raise ConcurrentModification("sweep kept changing, giving up", {"sweep_id": sweep_id})

    # quoting

    async def _plan_legs(self, sweep: Sweep) -> Tuple[List[SweepLeg], List[SweepToken]]:
        by_chain: Dict[str, List[SweepToken]] = {}
        for token in sweep.tokens:
            by_chain.setdefault(token.chain, []).append(token)
        planned = await asyncio.gather(
            *(self._plan_chain(sweep, chain, tokens) for chain, tokens in by_chain.items())
        )
        legs: List[SweepLeg] = []
        unrouted: List[SweepToken] = []
        for chain_legs, chain_unrouted in planned:
            legs.extend(chain_legs)
            unrouted.extend(chain_unrouted)
        destination = sweep.destination
        if legs and destination.vault:
            legs.append(
                SweepLeg(
                    leg_id=f"deposit:{destination.chain}",
                    chain=destination.chain,
                    kind=LegKind.DEPOSIT,
                    depends_on=[leg.leg_id for leg in legs],
                )
            )
        return legs, unrouted

    async def _plan_chain(
        self, sweep: Sweep, chain: str, tokens: List[SweepToken]
    ) -> Tuple[List[SweepLeg], List[SweepToken]]:
        destination = sweep.destination
        local = chain == destination.chain
        target = destination.token if local else get_chain(chain).usdc

        to_swap = [t for t in tokens if not _same_token(chain, t.address, target)]
        carried = sum(t.amount for t in tokens if _same_token(chain, t.address, target))
        quotes = await asyncio.gather(
            *(self._best_quote(sweep, chain, t.address, target, t.amount) for t in to_swap)
        )
        swap_legs: List[SweepLeg] = []
        unrouted: List[SweepToken] = []
        for token, quote in zip(to_swap, quotes):
            if quote is None:
                unrouted.append(token)
                continue
            swap_legs.append(SweepLeg(leg_id=f"swap:{chain}:{token.address}", chain=chain, kind=LegKind.SWAP, quote=quote))
        if local:
            return swap_legs, unrouted

        # bridge input is bounded by each swap's slippage floor
        bridge_amount = carried + sum(leg.min_output for leg in swap_legs)
        if bridge_amount <= 0:
            return [], unrouted
        bridge_quote = await self._best_quote(
            sweep, chain, target, destination.token, bridge_amount, destination_chain=destination.chain
        )
        if bridge_quote is None:
            logger.warning("no bridge from %s to %s for sweep %s", chain, destination.chain, sweep.id)
            return [], [t for t in tokens]
        bridge = SweepLeg(
            leg_id=f"bridge:{chain}",
            chain=chain,
            kind=LegKind.BRIDGE,
            quote=bridge_quote,
            depends_on=[leg.leg_id for leg in swap_legs],
        )
        return swap_legs + [bridge], unrouted

    async def _best_quote(
        self,
        sweep: Sweep,
        chain: str,
        input_token: str,
        output_token: str,
        amount: int,
        destination_chain: Optional[str] = None,
    ) -> Optional[DexQuote]:
        output_chain = destination_chain or chain
        request = QuoteRequest(
            chain=chain,
            input_token=input_token,
            output_token=output_token,
            input_amount=amount,
            slippage=self.config.quote.default_slippage,
            user_address=sweep.wallet,
            include_execution_data=True,
            destination_chain=destination_chain,
        )
        output_price: Optional[Decimal] = None
        try:
            output_price = (await self.oracle.get_validated_price(output_token, output_chain)).price_usd
        except PriceUnavailable:
            logger.debug("output %s on %s unpriced, ranking on raw output", output_token, output_chain)
        output_info = get_chain(output_chain)
        decimals = output_info.usdc_decimals if _same_token(output_chain, output_token, output_info.usdc) else None
        return await self.selector.best_quote(request, output_price, decimals)

    # jobs

    async def _enqueue_execution(self, sweep: Sweep, leg: SweepLeg) -> JobHandle:
        bridge = leg.kind == LegKind.BRIDGE
        queue_name = BRIDGE_EXECUTE if bridge else SWEEP_EXECUTE
        identity = f"{'bridge' if bridge else 'sweep'}-{sweep.id}-{leg.leg_id}"
        payload = {
            "sweep_id": sweep.id,
            "leg_id": leg.leg_id,
            "quote": leg.quote.to_dict() if leg.quote else None,
        }
        return await self.queue.enqueue(queue_name, payload, identity)

    async def _enqueue_tracking(
        self, sweep: Sweep, leg: SweepLeg, poll: int, delay: Optional[float] = None
    ) -> JobHandle:
        bridge = leg.kind == LegKind.BRIDGE
        queue_name = BRIDGE_TRACK if bridge else SWEEP_TRACK
        identity = f"{'bridge-track' if bridge else 'track'}-{sweep.id}-{leg.tx_hash}"
        if poll:
            identity += f"#poll{poll}"
        if delay is None:
            if poll:
                delay = self.config.sweep.track_poll_interval_seconds
            elif bridge:
                delay = self.config.sweep.bridge_track_delay_seconds
            else:
                delay = self.config.sweep.swap_track_delay_seconds
        payload = {"sweep_id": sweep.id, "leg_id": leg.leg_id, "tx_hash": leg.tx_hash, "poll": poll}
        return await self.queue.enqueue(queue_name, payload, identity, delay=delay)

    async def execute_leg(self, job: Job) -> Optional[str]:
        sweep_id = job.payload["sweep_id"]
        leg_id = job.payload["leg_id"]
        sweep = self.repository.get(sweep_id)
        leg = sweep.leg(leg_id)
        if sweep.status != SweepStatus.SUBMITTED or leg.status != LegStatus.PENDING:
            logger.info("leg %s of sweep %s is %s, nothing to execute", leg_id, sweep_id, leg.status.value)
            return leg.tx_hash

        snapshot = job.payload.get("quote")
        quote = DexQuote.from_dict(snapshot) if snapshot else None
        if quote is not None and quote.is_expired(self.clock()):
            raise QuoteExpired("leg quote expired before execution", {"sweep_id": sweep_id, "leg": leg_id})
        signed = (self.store.get(self.SIGNER_PREFIX + sweep_id) or {}).get(leg_id)
        if not signed:
            raise SettlementError("no signed transaction for leg", {"sweep_id": sweep_id, "leg": leg_id})

        tx_hash = await self.settlement.submit(
            leg.chain,
            quote.calldata if quote is not None and quote.calldata else "",
            {"signed_transaction": signed, "wallet": sweep.wallet, "leg_id": leg_id},
        )
        now = self.clock()

        def apply(current: Sweep) -> bool:
            current_leg = current.leg(leg_id)
            if current_leg.status != LegStatus.PENDING:
                return False
            current_leg.status = LegStatus.SUBMITTED
            current_leg.tx_hash = tx_hash
            current_leg.submitted_at = now
            return True

        updated = self._mutate(sweep_id, apply)
        logger.info("leg %s of sweep %s broadcast as %s", leg_id, sweep_id, tx_hash)
        await self._enqueue_tracking(updated, updated.leg(leg_id), poll=0)
        return tx_hash

    async def _on_execute_failure(self, job: Job, exc: BaseException) -> None:
        self._settle_leg(job.payload["sweep_id"], job.payload["leg_id"], LegStatus.FAILED, f"execution failed: {exc}")

    async def track_leg(self, job: Job) -> str:
        sweep_id = job.payload["sweep_id"]
        leg_id = job.payload["leg_id"]
        tx_hash = job.payload["tx_hash"]
        leg = self.repository.get(sweep_id).leg(leg_id)
        if leg.status != LegStatus.SUBMITTED or leg.tx_hash != tx_hash:
            return leg.status.value

        receipt = await self.settlement.get_receipt(leg.chain, tx_hash)
        if receipt.status == ReceiptStatus.CONFIRMED:
            updated = self._settle_leg(sweep_id, leg_id, LegStatus.CONFIRMED)
            await self._enqueue_ready(updated, leg_id)
        elif receipt.status == ReceiptStatus.REVERTED:
            self._settle_leg(sweep_id, leg_id, LegStatus.FAILED, "transaction reverted")
        else:
            await self._schedule_poll(sweep_id, leg_id, job.payload.get("poll", 0) + 1)
        return receipt.status.value

    async def _on_track_failure(self, job: Job, exc: BaseException) -> None:
        await self._schedule_poll(job.payload["sweep_id"], job.payload["leg_id"], job.payload.get("poll", 0) + 1)

    async def _schedule_poll(self, sweep_id: str, leg_id: str, poll: int) -> None:
        if poll >= self.config.sweep.track_max_polls:
            self._settle_leg(sweep_id, leg_id, LegStatus.FAILED, "confirmation timeout")
            return

        def apply(sweep: Sweep) -> bool:
            leg = sweep.leg(leg_id)
            if leg.status != LegStatus.SUBMITTED:
                return False
            leg.poll_count = poll
            return True

        updated = self._mutate(sweep_id, apply)
        leg = updated.leg(leg_id)
        if leg.status == LegStatus.SUBMITTED:
            await self._enqueue_tracking(updated, leg, poll)

    async def _enqueue_ready(self, sweep: Sweep, leg_id: str) -> None:
        if sweep.status != SweepStatus.SUBMITTED:
            return
        for dependent in sweep.dependents_of(leg_id):
            if dependent.status != LegStatus.PENDING:
                continue
            if all(sweep.leg(prerequisite).status == LegStatus.CONFIRMED for prerequisite in dependent.depends_on):
                await self._enqueue_execution(sweep, dependent)

    async def redrive_tracking(self) -> int:
        """Re-enqueue tracking for every broadcast leg still awaiting its receipt."""
        count = 0
        for sweep in self.repository.all():
            if sweep.status != SweepStatus.SUBMITTED:
                continue
            for leg in sweep.legs:
                if leg.status == LegStatus.SUBMITTED and leg.tx_hash:
                    handle = await self._enqueue_tracking(sweep, leg, leg.poll_count, delay=0)
                    if handle.created:
                        count += 1
        return count

    # settlement

    def _settle_leg(self, sweep_id: str, leg_id: str, status: LegStatus, error: Optional[str] = None) -> Sweep:
        now = self.clock()

        def apply(sweep: Sweep) -> bool:
            leg = sweep.leg(leg_id)
            if leg.is_terminal:
                return False
            leg.status = status
            leg.error = error
            if status == LegStatus.CONFIRMED:
                leg.confirmed_at = now
            else:
                self._fail_dependents(sweep, leg_id)
            self._aggregate(sweep, now)
            return True

        updated = self._mutate(sweep_id, apply)
        logger.info("leg %s of sweep %s is %s (%s)", leg_id, sweep_id, status.value, updated.progress())
        return updated

    @staticmethod
    def _fail_dependents(sweep: Sweep, leg_id: str) -> None:
        pending = [leg_id]
        while pending:
            for dependent in sweep.dependents_of(pending.pop()):
                if not dependent.is_terminal:
                    dependent.status = LegStatus.FAILED
                    dependent.error = "prerequisite leg failed"
                    pending.append(dependent.leg_id)

    def _aggregate(self, sweep: Sweep, now: float) -> None:
        if sweep.status != SweepStatus.SUBMITTED or not all(leg.is_terminal for leg in sweep.legs):
            return
        if all(leg.status == LegStatus.CONFIRMED for leg in sweep.legs):
            check_transition(sweep, SweepStatus.CONFIRMED)
            sweep.status = SweepStatus.CONFIRMED
            sweep.output_amount = self._delivered_amount(sweep)
        else:
            check_transition(sweep, SweepStatus.FAILED)
            sweep.status = SweepStatus.FAILED
            first = next(leg for leg in sweep.legs if leg.status == LegStatus.FAILED)
            sweep.error = f"{sweep.progress()}: {first.leg_id} {first.error}"
        sweep.completed_at = now
        logger.info("sweep %s finished %s", sweep.id, sweep.status.value)

    @staticmethod
    def _delivered_amount(sweep: Sweep) -> int:
        destination = sweep.destination
        delivered = sum(
            leg.output_amount
            for leg in sweep.legs
            if leg.kind == LegKind.BRIDGE or (leg.kind == LegKind.SWAP and leg.chain == destination.chain)
        )
        unrouted = {(t.chain, t.address) for t in sweep.unrouted}
        delivered += sum(
            t.amount
            for t in sweep.tokens
            if t.chain == destination.chain
            and (t.chain, t.address) not in unrouted
            and _same_token(t.chain, t.address, destination.token)
        )
        return delivered


def summarize(sweep: Sweep) -> Dict[str, Any]:
    """JSON-ready view of a sweep, with per-chain leg detail."""
    return {
        "id": sweep.id,
        "wallet": sweep.wallet,
        "status": sweep.status.value,
        "progress": sweep.progress(),
        "chain_status": {chain: status.value for chain, status in sweep.chain_status.items()},
        "tx_hashes": sweep.tx_hashes,
        "legs": [
            {
                "leg_id": leg.leg_id,
                "chain": leg.chain,
                "kind": leg.kind.value,
                "status": leg.status.value,
                "aggregator": leg.quote.aggregator if leg.quote else None,
                "output_amount": str(leg.output_amount),
                "tx_hash": leg.tx_hash,
                "error": leg.error,
            }
            for leg in sweep.legs
        ],
        "unrouted": [t.address for t in sweep.unrouted],
        "output_token": sweep.output_token,
        "output_chain": sweep.output_chain,
        "output_amount": str(sweep.output_amount) if sweep.output_amount is not None else None,
        "fee_paid": str(sweep.fee_paid),
        "quote_expires_at": sweep.quote_expires_at,
        "error": sweep.error,
        "created_at": sweep.created_at,
        "updated_at": sweep.updated_at,
        "completed_at": sweep.completed_at,
    }
