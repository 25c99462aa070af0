import unittest
from decimal import Decimal

from dust_sweeper.errors import ConcurrentModification, SweepNotFound, ValidationError
from dust_sweeper.models import ChainBalance, Destination, Sweep, SweepStatus, WalletToken
from dust_sweeper.store import DustTokenRepository, MemoryStore, SweepRepository

from .fakes import FakeClock

OWNER = "0x1111111111111111111111111111111111111112"


def _token(address: str, is_dust: bool = True) -> WalletToken:
    return WalletToken(
        chain="base",
        address=address,
        symbol="T",
        decimals=0,
        raw_balance=1,
        formatted_balance=Decimal(1),
        value_usd=Decimal("0.5") if is_dust else Decimal(50),
        is_dust=is_dust,
    )


def _balance(*tokens: WalletToken) -> ChainBalance:
    return ChainBalance(
        chain="base",
        address=OWNER,
        tokens=tokens,
        native_balance=0,
        native_value_usd=Decimal(0),
        total_value_usd=Decimal(0),
        dust_value_usd=Decimal(0),
        dust_token_count=0,
        scanned_at=0.0,
    )


class MemoryStoreTests(unittest.TestCase):
    def test_ttl_and_set_if_absent(self) -> None:
        clock = FakeClock()
        store = MemoryStore(clock=clock)

        self.assertTrue(store.set_if_absent("k", 1, ttl=10))
        self.assertFalse(store.set_if_absent("k", 2, ttl=10))
        clock.advance(10)
        self.assertIsNone(store.get("k"))
        self.assertTrue(store.set_if_absent("k", 3))

    def test_oldest_entries_are_evicted_past_max_size(self) -> None:
        store = MemoryStore(max_size=2)
        for key in ("a", "b", "c"):
            store.set(key, key)

        self.assertEqual(store.keys(), ["b", "c"])


class SweepRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repository = SweepRepository(MemoryStore())
        self.sweep = self.repository.insert(
            Sweep(id="s1", wallet=OWNER, destination=Destination("base", "0xusdc"), tokens=[])
        )

    def test_insert_is_unique_and_get_copies(self) -> None:
        with self.assertRaises(ValidationError):
            self.repository.insert(self.sweep)
        copy = self.repository.get("s1")
        copy.status = SweepStatus.FAILED
        self.assertEqual(self.repository.get("s1").status, SweepStatus.PENDING)
        with self.assertRaises(SweepNotFound):
            self.repository.get("missing")

    def test_update_is_conditional_on_version_and_status(self) -> None:
        first = self.repository.get("s1")
        second = self.repository.get("s1")
        first.status = SweepStatus.QUOTING

        updated = self.repository.update(first, 0, SweepStatus.PENDING)
        self.assertEqual(updated.version, 1)

        second.status = SweepStatus.CANCELLED
        with self.assertRaises(ConcurrentModification):
            self.repository.update(second, 0)
        with self.assertRaises(ConcurrentModification):
            self.repository.update(self.repository.get("s1"), 1, SweepStatus.PENDING)
        self.assertEqual(self.repository.get("s1").status, SweepStatus.QUOTING)

    def test_list_for_wallet(self) -> None:
        self.assertEqual([s.id for s in self.repository.list_for_wallet(OWNER)], ["s1"])
        self.assertEqual(self.repository.list_for_wallet("someone-else"), [])


class DustTokenRepositoryTests(unittest.TestCase):
    def test_new_scan_supersedes_the_previous_one(self) -> None:
        repository = DustTokenRepository(MemoryStore())
        repository.save_scan(OWNER, _balance(_token("0xAA"), _token("0xbb", is_dust=False)))

        saved = repository.save_scan(OWNER, _balance(_token("0xaa")))

        self.assertEqual(saved, 1)
        self.assertEqual([t.address for t in repository.list_tokens(OWNER)], ["0xaa"])
        self.assertEqual(len(repository.list_dust(OWNER, "base")), 1)
        self.assertEqual(repository.list_tokens(OWNER, "solana"), [])


if __name__ == "__main__":
    unittest.main()
