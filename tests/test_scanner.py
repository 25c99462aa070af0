import unittest
from decimal import Decimal

from dust_sweeper.errors import ProviderError
from dust_sweeper.evm_scanner import EvmScanner
from dust_sweeper.models import ChainBalance
from dust_sweeper.scanner import ChainScanner, WalletScanner, format_units, is_dust
from dust_sweeper.solana_scanner import SolanaScanner

from .fakes import FakeClock, FakeOracle

WALLET = "0x1111111111111111111111111111111111111112"
TOKEN_X = "0x00000000000000000000000000000000000000aa"
TOKEN_Y = "0x00000000000000000000000000000000000000bb"
TOKEN_Z = "0x00000000000000000000000000000000000000cc"
SOL_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class _FakeRpc:
    def __init__(self, handlers):
        self.handlers = handlers
        self.calls = []

    def rpc(self, url, method, params):
        self.calls.append((method, params))
        handler = self.handlers[method]
        return handler(params) if callable(handler) else handler


class DustRuleTests(unittest.TestCase):
    def test_is_dust_requires_positive_value_below_threshold(self) -> None:
        threshold = Decimal("1.00")
        self.assertTrue(is_dust(Decimal("0.30"), threshold))
        self.assertFalse(is_dust(Decimal("0"), threshold))
        self.assertFalse(is_dust(Decimal("1.00"), threshold))
        self.assertFalse(is_dust(Decimal("15"), threshold))

    def test_format_units_uses_declared_decimals(self) -> None:
        self.assertEqual(format_units(1_500_000, 6), Decimal("1.5"))


class EvmScannerTests(unittest.IsolatedAsyncioTestCase):
    def _scanner(self, http, oracle) -> EvmScanner:
        return EvmScanner("ethereum", http, "https://rpc", oracle, Decimal("1.00"), clock=FakeClock())

    async def test_reports_only_the_sub_threshold_token_as_dust(self) -> None:
        http = _FakeRpc(
            {
                "alchemy_getTokenBalances": {
                    "tokenBalances": [
                        {"contractAddress": TOKEN_X, "tokenBalance": hex(10**18)},
                        {"contractAddress": TOKEN_Y, "tokenBalance": hex(10**18)},
                    ]
                },
                "eth_getBalance": "0x0",
                "alchemy_getTokenMetadata": lambda params: {
                    "decimals": 18,
                    "symbol": "X" if params[0] == TOKEN_X else "Y",
                },
            }
        )
        oracle = FakeOracle({TOKEN_X: Decimal("0.30"), TOKEN_Y: Decimal("15.00")})

        balance = await self._scanner(http, oracle).scan(WALLET)

        self.assertEqual(balance.dust_token_count, 1)
        self.assertEqual([t.symbol for t in balance.dust_tokens], ["X"])
        self.assertEqual(balance.dust_value_usd, Decimal("0.30"))
        self.assertEqual(balance.total_value_usd, Decimal("15.30"))

    async def test_unpriced_token_is_never_dust(self) -> None:
        http = _FakeRpc(
            {
                "alchemy_getTokenBalances": {
                    "tokenBalances": [{"contractAddress": TOKEN_Z, "tokenBalance": hex(5)}]
                },
                "eth_getBalance": "0x0",
                "alchemy_getTokenMetadata": {"decimals": 0, "symbol": "Z"},
            }
        )

        balance = await self._scanner(http, FakeOracle()).scan(WALLET)

        self.assertEqual(len(balance.tokens), 1)
        self.assertEqual(balance.tokens[0].value_usd, Decimal(0))
        self.assertFalse(balance.tokens[0].is_dust)
        self.assertEqual(balance.dust_token_count, 0)

    async def test_follows_page_keys_and_drops_zero_balances(self) -> None:
        pages = iter(
            [
                {
                    "tokenBalances": [{"contractAddress": TOKEN_X, "tokenBalance": hex(1)}] * 2
                    + [{"contractAddress": TOKEN_Y, "tokenBalance": "0x0"}],
                    "pageKey": "next",
                },
                {"tokenBalances": [{"contractAddress": TOKEN_Z, "tokenBalance": hex(3)}]},
            ]
        )
        http = _FakeRpc({"alchemy_getTokenBalances": lambda params: next(pages)})
        scanner = self._scanner(http, FakeOracle())
        scanner.PAGE_SIZE = 3

        balances = scanner.fetch_token_balances(WALLET)

        self.assertEqual([address for address, _ in balances], [TOKEN_X, TOKEN_X, TOKEN_Z])
        self.assertEqual(http.calls[1][1][2]["pageKey"], "next")


class SolanaScannerTests(unittest.IsolatedAsyncioTestCase):
    async def test_paginates_until_short_page_and_skips_non_fungibles(self) -> None:
        def assets(params):
            page = params["page"]
            if page == 1:
                return {
                    "items": [
                        {"id": "MintA", "interface": "FungibleToken", "token_info": {"balance": 10, "decimals": 1}},
                        {"id": "Nft1", "interface": "V1_NFT"},
                    ]
                }
            return {"items": [{"id": "MintB", "interface": "FungibleAsset", "token_info": {"balance": 0}}]}

        http = _FakeRpc({"getAssetsByOwner": assets, "getBalance": {"value": 0}})
        scanner = SolanaScanner(http, "https://helius", FakeOracle({"MintA": Decimal("0.05")}), Decimal("1.00"))
        scanner.PAGE_LIMIT = 2

        balance = await scanner.scan(SOL_WALLET)

        self.assertEqual([t.address for t in balance.tokens], ["MintA"])
        self.assertEqual(balance.tokens[0].formatted_balance, Decimal("1"))
        self.assertTrue(balance.tokens[0].is_dust)
        pages = [params["page"] for method, params in http.calls if method == "getAssetsByOwner"]
        self.assertEqual(pages, [1, 2])

    async def test_asset_without_decimals_is_skipped(self) -> None:
        items = [
            {"id": "MintA", "interface": "FungibleToken", "token_info": {"balance": 10, "decimals": 1}},
            {"id": "MintC", "interface": "FungibleToken", "token_info": {"balance": 5000}},
        ]
        http = _FakeRpc({"getAssetsByOwner": {"items": items}, "getBalance": {"value": 0}})
        oracle = FakeOracle({"MintA": Decimal("0.05"), "MintC": Decimal("0.0001")})
        scanner = SolanaScanner(http, "https://helius", oracle, Decimal("1.00"))

        balance = await scanner.scan(SOL_WALLET)

        self.assertEqual([t.address for t in balance.tokens], ["MintA"])
        self.assertEqual(balance.dust_token_count, 1)


class WalletScannerTests(unittest.IsolatedAsyncioTestCase):
    class _StaticScanner(ChainScanner):
        def __init__(self, chain, error=None):
            super().__init__(chain, FakeOracle(), Decimal("1.00"), clock=FakeClock())
            self.error = error

        async def scan(self, address):
            if self.error:
                raise self.error
            return self._build_balance(address, [], 0, Decimal(0))

    async def test_failed_chain_is_reported_without_failing_the_scan(self) -> None:
        scanner = WalletScanner(
            [
                self._StaticScanner("ethereum"),
                self._StaticScanner("base", error=ProviderError("rate limited", http_status=429)),
                self._StaticScanner("solana"),
            ]
        )

        scan = await scanner.scan(WALLET)

        self.assertEqual(sorted(scan.balances), ["ethereum"])
        self.assertIsInstance(scan.balances["ethereum"], ChainBalance)
        self.assertTrue(scan.is_partial)
        self.assertEqual([f.chain for f in scan.failures], ["base"])

    async def test_chain_filter_limits_the_fan_out(self) -> None:
        scanner = WalletScanner([self._StaticScanner("ethereum"), self._StaticScanner("base")])

        scan = await scanner.scan(WALLET, chains=["base"])

        self.assertEqual(list(scan.balances), ["base"])


if __name__ == "__main__":
    unittest.main()
