import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config
from .errors import PriceUnavailable, SweeperError
from .log import configure_logging
from .models import QuoteRequest
from .workers import Runtime, build_runtime

logger = logging.getLogger(__name__)


async def run_scan(runtime: Runtime, address: str, chains: Optional[List[str]]) -> Dict[str, Any]:
    scan = await runtime.scanner.scan(address, chains)
    return {
        "address": scan.address,
        "total_value_usd": scan.total_value_usd,
        "dust_value_usd": scan.dust_value_usd,
        "dust_token_count": scan.dust_token_count,
        "dust": [
            {
                "chain": t.chain,
                "address": t.address,
                "symbol": t.symbol,
                "balance": t.formatted_balance,
                "value_usd": t.value_usd,
                "confidence": t.price_confidence.value if t.price_confidence else None,
            }
            for t in scan.dust_tokens()
        ],
        "failures": {f.chain: f.error for f in scan.failures},
    }


async def run_price(runtime: Runtime, token: str, chain: str) -> Dict[str, Any]:
    price = await runtime.oracle.get_validated_price(token, chain)
    return {
        "token": price.token,
        "chain": price.chain,
        "price_usd": price.price_usd,
        "confidence": price.confidence.value,
        "max_deviation": price.max_deviation,
        "sources": [{"source": s.source, "price": s.price} for s in price.sources],
    }


async def run_quote(runtime: Runtime, args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    request = QuoteRequest(
        chain=args.chain,
        input_token=args.input,
        output_token=args.output,
        input_amount=args.amount,
        slippage=args.slippage if args.slippage is not None else runtime.config.quote.default_slippage,
        user_address=args.user or "",
        destination_chain=args.to_chain,
    )
    output_chain = args.to_chain or args.chain
    output_price: Optional[Decimal] = None
    try:
        output_price = (await runtime.oracle.get_validated_price(args.output, output_chain)).price_usd
    except PriceUnavailable:
        logger.warning("output %s on %s unpriced, ranking on raw output", args.output, output_chain)
    quote = await runtime.selector.best_quote(request, output_price)
    return quote.to_dict() if quote else None


async def dispatch(args: argparse.Namespace) -> Any:
    config = load_config(args.config)
    runtime = build_runtime(config)
    try:
        if args.command == "scan":
            return await run_scan(runtime, args.address, args.chains)
        if args.command == "price":
            return await run_price(runtime, args.token, args.chain)
        return await run_quote(runtime, args)
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dust-sweeper", description="Multi-chain dust sweep engine")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan a wallet for dust balances")
    scan.add_argument("address")
    scan.add_argument("--chains", nargs="*", default=None)

    price = sub.add_parser("price", help="Resolve a validated token price")
    price.add_argument("token")
    price.add_argument("--chain", required=True)

    quote = sub.add_parser("quote", help="Best quote across aggregators")
    quote.add_argument("--chain", required=True)
    quote.add_argument("--input", required=True)
    quote.add_argument("--output", required=True)
    quote.add_argument("--amount", type=int, required=True, help="Input amount in base units")
    quote.add_argument("--slippage", type=Decimal, default=None, help="Percent")
    quote.add_argument("--user", default=None)
    quote.add_argument("--to-chain", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper())
    try:
        result = asyncio.run(dispatch(args))
    except SweeperError as exc:
        logger.error("%s", exc)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
