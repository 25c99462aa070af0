import unittest
from decimal import Decimal

from dust_sweeper.aggregator import QuoteSelector
from dust_sweeper.cli import build_parser, run_price, run_quote
from dust_sweeper.config import QuoteConfig, SweeperConfig
from dust_sweeper.errors import PriceUnavailable
from dust_sweeper.workers import build_runtime

from .fakes import FakeAdapter, FakeClock, FakeOracle, FakeSettlement

TOKEN = "0x00000000000000000000000000000000000000aa"
OUTPUT = "0x00000000000000000000000000000000000000cc"


class QuoteCommandTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.runtime = build_runtime(SweeperConfig(), settlement=FakeSettlement(), clock=FakeClock())
        self.runtime.oracle = FakeOracle({OUTPUT: Decimal("1")})
        self.runtime.selector = QuoteSelector(
            [FakeAdapter("cheap", 98, gas_usd="1"), FakeAdapter("greedy", 100, gas_usd="4")],
            QuoteConfig(adapter_backoff_seconds=0),
        )

    async def asyncTearDown(self) -> None:
        await self.runtime.close()

    def _args(self, output=OUTPUT, *extra):
        argv = ["quote", "--chain", "base", "--input", TOKEN, "--output", output, "--amount", "1000", *extra]
        return build_parser().parse_args(argv)

    async def test_priced_output_ranks_net_of_gas(self) -> None:
        quote = await run_quote(self.runtime, self._args())

        self.assertEqual(quote["aggregator"], "cheap")
        self.assertEqual(quote["slippage"], str(self.runtime.config.quote.default_slippage))

    async def test_unpriced_output_ranks_on_raw_output(self) -> None:
        quote = await run_quote(self.runtime, self._args("0x00000000000000000000000000000000000000dd"))

        self.assertEqual(quote["aggregator"], "greedy")

    async def test_no_route_prints_nothing(self) -> None:
        self.runtime.selector = QuoteSelector([FakeAdapter("sol", 1, chains=("solana",))])

        self.assertIsNone(await run_quote(self.runtime, self._args()))

    async def test_price_command_reports_confidence(self) -> None:
        result = await run_price(self.runtime, OUTPUT, "base")

        self.assertEqual(result["price_usd"], Decimal("1"))
        self.assertEqual(result["confidence"], "HIGH")
        with self.assertRaises(PriceUnavailable):
            await run_price(self.runtime, TOKEN, "base")


class ParserTests(unittest.TestCase):
    def test_quote_arguments(self) -> None:
        args = build_parser().parse_args(
            ["quote", "--chain", "ethereum", "--input", "A", "--output", "B", "--amount", "5", "--slippage", "1.5", "--to-chain", "base"]
        )

        self.assertEqual(args.amount, 5)
        self.assertEqual(args.slippage, Decimal("1.5"))
        self.assertEqual(args.to_chain, "base")

    def test_command_is_required(self) -> None:
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])
