import unittest
from decimal import Decimal

from dust_sweeper.config import ProviderConfig, SweeperConfig
from dust_sweeper.errors import ConfigurationError
from dust_sweeper.queue import enqueue_wallet_scan
from dust_sweeper.scanner import ChainScanner, WalletScanner
from dust_sweeper.workers import build_runtime, build_scanners, enabled_chains, settlement_urls

from .fakes import FakeClock, FakeOracle, FakeSettlement

WALLET = "0x1111111111111111111111111111111111111112"
DUST = "0x00000000000000000000000000000000000000aa"
WHALE = "0x00000000000000000000000000000000000000bb"


class _HoldingScanner(ChainScanner):
    async def scan(self, address):
        tokens = [
            await self._price_token(DUST, "D", 0, 2),
            await self._price_token(WHALE, "W", 0, 1),
        ]
        return self._build_balance(address, tokens, 0, Decimal(0))


class WiringTests(unittest.TestCase):
    def test_enabled_chains(self) -> None:
        self.assertIn("solana", enabled_chains(SweeperConfig()))
        self.assertEqual(enabled_chains(SweeperConfig(chains=("base",))), ["base"])
        with self.assertRaises(ConfigurationError):
            enabled_chains(SweeperConfig(chains=("fantom",)))

    def test_scanners_without_keys_are_skipped(self) -> None:
        config = SweeperConfig(chains=("base", "solana"), providers=ProviderConfig(helius_api_key="k"))

        scanners = build_scanners(config, http=None, oracle=FakeOracle())

        self.assertEqual([s.chain for s in scanners], ["solana"])

    def test_settlement_urls_prefer_explicit_rpc_urls(self) -> None:
        providers = ProviderConfig(alchemy_api_key="key", rpc_urls={"base": "https://base.example"})

        urls = settlement_urls(SweeperConfig(providers=providers))

        self.assertEqual(urls["base"], "https://base.example")
        self.assertTrue(urls["ethereum"].endswith("/v2/key"))
        self.assertEqual(urls["solana"], providers.solana_rpc_url)


class RuntimeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.runtime = build_runtime(SweeperConfig(), settlement=FakeSettlement(), clock=self.clock)
        self.oracle = FakeOracle({DUST: Decimal("0.10"), WHALE: Decimal("40")})
        self.runtime.oracle = self.oracle
        self.runtime.scanner = WalletScanner([_HoldingScanner("base", self.oracle, Decimal("1.00"), self.clock)])
        self.runtime.queue.start()

    async def asyncTearDown(self) -> None:
        await self.runtime.close()

    async def test_scan_job_saves_rows_and_queues_dust_price_refreshes(self) -> None:
        handle = await enqueue_wallet_scan(self.runtime.queue, WALLET, clock=self.clock)

        summary = await self.runtime.queue.wait_for(handle.id, timeout=1)
        await self.runtime.queue.drain(timeout=1)

        self.assertEqual(summary["dust_token_count"], 1)
        self.assertEqual(summary["dust_value_usd"], "0.20")
        self.assertEqual([t.address for t in self.runtime.dust_tokens.list_dust(WALLET)], [DUST])
        self.assertEqual(len(self.runtime.dust_tokens.list_tokens(WALLET)), 2)

    async def test_gate_is_disabled_by_default(self) -> None:
        self.assertTrue(self.runtime.gate.admit(None).admitted)
        self.assertIs(self.runtime.orchestrator.gate, self.runtime.gate)


if __name__ == "__main__":
    unittest.main()
