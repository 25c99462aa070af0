"""Keyed storage used by the engine.

``MemoryStore`` stands in for the shared cache (price cache, nonce store):
every operation is atomic under one lock, so concurrent resolvers never need
their own locking. The repositories layer the durable-record semantics on top:
conditional updates for sweeps and unique rows for scanned dust.
"""

import copy
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .chains import normalize_address
from .errors import ConcurrentModification, SweepNotFound, ValidationError
from .models import ChainBalance, Sweep, SweepStatus, WalletToken


class MemoryStore:
    def __init__(self, max_size: int = 100_000, clock: Callable[[], float] = time.time) -> None:
        self.max_size = max_size
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()

    def _live(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expiry = entry
        if expiry is not None and self._clock() >= expiry:
            del self._data[key]
            return False
        return True

    def _put(self, key: str, value: Any, ttl: Optional[float]) -> None:
        expiry = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expiry)
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            if not self._live(key):
                return None
            return self._data[key][0]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._put(key, value, ttl)

    def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` only if ``key`` holds nothing live; True when stored."""
        with self._lock:
            if self._live(key):
                return False
            self._put(key, value, ttl)
            return True

    def compare_and_set(self, key: str, expected: Callable[[Any], bool], value: Any) -> bool:
        with self._lock:
            current = self._data[key][0] if self._live(key) else None
            if not expected(current):
                return False
            self._put(key, value, None)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if key.startswith(prefix) and self._live(key)]


class SweepRepository:
    """Sweep records keyed by id. Records are copied in and out, never deleted."""

    PREFIX = "sweep:"

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def insert(self, sweep: Sweep) -> Sweep:
        if not self.store.set_if_absent(self.PREFIX + sweep.id, copy.deepcopy(sweep)):
            raise ValidationError("sweep already exists", {"sweep_id": sweep.id})
        return copy.deepcopy(sweep)

    def get(self, sweep_id: str) -> Sweep:
        record = self.store.get(self.PREFIX + sweep_id)
        if record is None:
            raise SweepNotFound("sweep not found", {"sweep_id": sweep_id})
        return copy.deepcopy(record)

    def update(
        self,
        sweep: Sweep,
        expected_version: int,
        expected_status: Optional[SweepStatus] = None,
    ) -> Sweep:
        """Write ``sweep`` only if the stored copy still has the expected version (and status)."""

        def matches(current: Optional[Sweep]) -> bool:
            if current is None or current.version != expected_version:
                return False
            return expected_status is None or current.status == expected_status

        sweep.version = expected_version + 1
        if not self.store.compare_and_set(self.PREFIX + sweep.id, matches, copy.deepcopy(sweep)):
            sweep.version = expected_version
            raise ConcurrentModification(
                "sweep changed concurrently",
                {"sweep_id": sweep.id, "expected_version": expected_version},
            )
        return copy.deepcopy(sweep)

    def list_for_wallet(self, wallet: str) -> List[Sweep]:
        sweeps = []
        for key in self.store.keys(self.PREFIX):
            record = self.store.get(key)
            if record is not None and record.wallet == wallet:
                sweeps.append(copy.deepcopy(record))
        return sorted(sweeps, key=lambda s: s.created_at)

    def all(self) -> Iterable[Sweep]:
        for key in self.store.keys(self.PREFIX):
            record = self.store.get(key)
            if record is not None:
                yield copy.deepcopy(record)


class DustTokenRepository:
    """Scanned token rows, unique on (owner, chain, token address).

    Saving a chain balance supersedes every row of the previous scan of the
    same (owner, chain).
    """

    PREFIX = "dust:"

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def _key(self, owner: str, chain: str, token_address: str) -> str:
        return f"{self.PREFIX}{owner}:{chain}:{normalize_address(chain, token_address)}"

    def save_scan(self, owner: str, balance: ChainBalance) -> int:
        prefix = f"{self.PREFIX}{owner}:{balance.chain}:"
        rows: Dict[str, WalletToken] = {}
        for token in balance.tokens:
            rows[self._key(owner, balance.chain, token.address)] = token
        for key in self.store.keys(prefix):
            if key not in rows:
                self.store.delete(key)
        for key, token in rows.items():
            self.store.set(key, token)
        return len(rows)

    def list_tokens(self, owner: str, chain: Optional[str] = None) -> List[WalletToken]:
        prefix = f"{self.PREFIX}{owner}:" + (f"{chain}:" if chain else "")
        tokens = [self.store.get(key) for key in self.store.keys(prefix)]
        return [token for token in tokens if token is not None]

    def list_dust(self, owner: str, chain: Optional[str] = None) -> List[WalletToken]:
        return [token for token in self.list_tokens(owner, chain) if token.is_dust]
