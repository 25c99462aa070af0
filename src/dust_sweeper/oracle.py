"""Multi-source price resolution with confidence scoring.

Every source is queried concurrently under a short timeout. The resolved
price is a deviation-weighted median, so a single outlier cannot drag it the
way it would drag a mean, and the confidence tier is derived only from how
far the sources disagree and how deep the reported liquidity is.
"""

import asyncio
import logging
import time
from decimal import Decimal
from itertools import combinations
from typing import Callable, List, Optional, Sequence, Tuple

from .chains import get_chain, normalize_address
from .config import PriceConfig
from .errors import PriceUnavailable
from .models import Confidence, PriceObservation, ValidatedPrice
from .price_sources import PriceSource
from .store import MemoryStore

logger = logging.getLogger(__name__)


def max_relative_deviation(prices: Sequence[Decimal]) -> Decimal:
    """Largest pairwise ``|a - b| / min(a, b)`` across the given prices."""
    worst = Decimal(0)
    for a, b in combinations(prices, 2):
        deviation = abs(a - b) / min(a, b)
        if deviation > worst:
            worst = deviation
    return worst


def score_confidence(
    source_count: int,
    deviation: Decimal,
    liquidity_usd: Decimal,
    volume_24h: Decimal,
    config: PriceConfig,
) -> Confidence:
    if source_count <= 0:
        raise ValueError("cannot score a price without sources")
    if source_count == 1:
        if liquidity_usd < config.untrusted_liquidity_usd:
            return Confidence.UNTRUSTED
        return Confidence.LOW
    if deviation <= config.high_max_deviation:
        if liquidity_usd >= config.min_liquidity_usd and volume_24h >= config.min_volume_usd:
            return Confidence.HIGH
        return Confidence.MEDIUM
    if deviation <= config.medium_max_deviation:
        return Confidence.MEDIUM
    return Confidence.LOW


def weighted_median(prices: Sequence[Decimal], tolerance: Decimal) -> Decimal:
    """Median where each price is weighted down by its distance from the plain median."""
    ordered = sorted(prices)
    count = len(ordered)
    middle = count // 2
    plain = ordered[middle] if count % 2 else (ordered[middle - 1] + ordered[middle]) / 2
    if count < 3:
        return plain

    scale = tolerance if tolerance > 0 else Decimal("0.01")
    weights = [1 / (1 + abs(p - plain) / plain / scale) for p in ordered]
    half = sum(weights) / 2
    cumulative = Decimal(0)
    for index, (price, weight) in enumerate(zip(ordered, weights)):
        cumulative += weight
        if cumulative > half:
            return price
        if cumulative == half:
            return (price + ordered[index + 1]) / 2
    return ordered[-1]


class PriceOracle:
    CACHE_PREFIX = "price:"

    def __init__(
        self,
        sources: Sequence[PriceSource],
        config: Optional[PriceConfig] = None,
        store: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sources = list(sources)
        self.config = config or PriceConfig()
        self.store = store or MemoryStore(clock=clock)
        self.clock = clock

    def _cache_key(self, token: str, chain: str) -> str:
        return f"{self.CACHE_PREFIX}{chain}:{normalize_address(chain, token)}"

    async def get_validated_price(self, token: str, chain: str) -> ValidatedPrice:
        cached = self.store.get(self._cache_key(token, chain))
        if cached is not None:
            return cached
        return await self.refresh(token, chain)

    async def native_price(self, chain: str) -> ValidatedPrice:
        return await self.get_validated_price(get_chain(chain).wrapped_native, chain)

    async def refresh(self, token: str, chain: str) -> ValidatedPrice:
        observations, failures = await self._collect(token, chain)
        if not observations:
            raise PriceUnavailable(
                "no price source returned a usable price",
                {"token": token, "chain": chain, "failures": len(failures)},
            )
        price = self._resolve(token, chain, observations)
        self.store.set(self._cache_key(token, chain), price, ttl=self.config.cache_ttl_seconds)
        return price

    async def _collect(self, token: str, chain: str) -> Tuple[List[PriceObservation], List[str]]:
        sources = [source for source in self.sources if source.supports(chain)]
        results = await asyncio.gather(
            *(
                asyncio.wait_for(source.fetch(token, chain), timeout=self.config.source_timeout_seconds)
                for source in sources
            ),
            return_exceptions=True,
        )
        observations: List[PriceObservation] = []
        failures: List[str] = []
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("price source %s failed for %s on %s: %r", source.name, token, chain, result)
                failures.append(source.name)
            elif result is None or result.price <= 0:
                failures.append(source.name)
            else:
                observations.append(result)
        return observations, failures

    def _resolve(self, token: str, chain: str, observations: List[PriceObservation]) -> ValidatedPrice:
        prices = [obs.price for obs in observations]
        liquidity = max((obs.liquidity_usd or Decimal(0) for obs in observations), default=Decimal(0))
        volume = max((obs.volume_24h or Decimal(0) for obs in observations), default=Decimal(0))
        deviation = max_relative_deviation(prices)
        confidence = score_confidence(len(observations), deviation, liquidity, volume, self.config)
        price = weighted_median(prices, self.config.high_max_deviation)
        if confidence in (Confidence.LOW, Confidence.UNTRUSTED):
            logger.info(
                "low confidence price for %s on %s: %s (sources=%d deviation=%s)",
                token,
                chain,
                confidence.value,
                len(observations),
                deviation,
            )
        return ValidatedPrice(
            token=token,
            chain=chain,
            price_usd=price,
            confidence=confidence,
            sources=tuple(observations),
            liquidity_usd=liquidity,
            volume_24h=volume,
            updated_at=self.clock(),
            max_deviation=deviation,
        )
