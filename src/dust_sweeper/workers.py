"""Wiring of the sweep engine and the background job handlers."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .aggregator import DexAggregator, QuoteSelector
from .chains import EVM, SOLANA, SUPPORTED_CHAINS
from .config import SweeperConfig
from .errors import ConfigurationError
from .evm_scanner import EvmScanner
from .http_client import HttpClient
from .jupiter import JupiterClient
from .lifi import LiFiClient
from .oneinch import OneInchClient
from .oracle import PriceOracle
from .orca import OrcaClient
from .orchestrator import SweepOrchestrator
from .payment import PaymentGate
from .price_sources import CoinGeckoSource, DefiLlamaSource, DexScreenerSource, JupiterPriceSource
from .queue import PRICE_UPDATE, WALLET_SCAN, Job, JobQueue, enqueue_price_updates
from .scanner import ChainScanner, WalletScanner
from .settlement import JsonRpcSettlement, SettlementTarget
from .solana_scanner import SolanaScanner
from .store import DustTokenRepository, MemoryStore, SweepRepository

logger = logging.getLogger(__name__)

USER_AGENT = "dust-sweeper/0.1"


@dataclass
class Runtime:
    config: SweeperConfig
    store: MemoryStore
    http: HttpClient
    oracle: PriceOracle
    scanner: WalletScanner
    selector: QuoteSelector
    queue: JobQueue
    settlement: SettlementTarget
    gate: PaymentGate
    sweeps: SweepRepository
    dust_tokens: DustTokenRepository
    orchestrator: SweepOrchestrator

    async def scan_wallet(self, job: Job) -> Dict[str, Any]:
        address = job.payload["address"]
        scan = await self.scanner.scan(address, job.payload.get("chains"))
        for balance in scan.balances.values():
            self.dust_tokens.save_scan(address, balance)
        await enqueue_price_updates(self.queue, [(t.address, t.chain) for t in scan.dust_tokens()])
        logger.info(
            "scan of %s: %d dust tokens worth %s across %d chains",
            address,
            scan.dust_token_count,
            scan.dust_value_usd,
            len(scan.balances),
        )
        return {
            "address": address,
            "chains": sorted(scan.balances),
            "dust_token_count": scan.dust_token_count,
            "dust_value_usd": str(scan.dust_value_usd),
            "failures": {f.chain: f.error for f in scan.failures},
        }

    async def refresh_price(self, job: Job) -> str:
        price = await self.oracle.refresh(job.payload["token"], job.payload["chain"])
        return str(price.price_usd)

    def register(self) -> None:
        self.queue.register(WALLET_SCAN, self.scan_wallet)
        self.queue.register(PRICE_UPDATE, self.refresh_price)
        self.orchestrator.register(self.queue)

    async def close(self) -> None:
        await self.queue.close()
        self.http.close()


def enabled_chains(config: SweeperConfig) -> List[str]:
    if not config.chains:
        return list(SUPPORTED_CHAINS)
    unknown = [name for name in config.chains if name not in SUPPORTED_CHAINS]
    if unknown:
        raise ConfigurationError("unsupported chains in config", {"chains": unknown})
    return list(config.chains)


def build_scanners(
    config: SweeperConfig, http: HttpClient, oracle: PriceOracle, clock: Callable[[], float] = time.time
) -> List[ChainScanner]:
    providers = config.providers
    threshold = config.sweep.dust_threshold_usd
    scanners: List[ChainScanner] = []
    for name in enabled_chains(config):
        info = SUPPORTED_CHAINS[name]
        try:
            if info.family == SOLANA:
                scanners.append(SolanaScanner(http, providers.helius_url(), oracle, threshold, clock))
            elif info.family == EVM and info.alchemy_network:
                url = providers.alchemy_url(info.alchemy_network)
                scanners.append(EvmScanner(name, http, url, oracle, threshold, clock))
        except ConfigurationError as exc:
            logger.warning("scanner for %s disabled: %s", name, exc)
    return scanners


def build_adapters(
    config: SweeperConfig, http: HttpClient, oracle: PriceOracle, clock: Callable[[], float] = time.time
) -> List[DexAggregator]:
    providers = config.providers
    expiry = config.quote.expiry_seconds
    return [
        JupiterClient(http, providers.jupiter_base_url, providers.jupiter_tokens_url, expiry, clock),
        OrcaClient(http, providers.orca_base_url, expiry, clock),
        OneInchClient(http, providers.oneinch_base_url, providers.oneinch_api_key, oracle, expiry, clock),
        LiFiClient(http, providers.lifi_base_url, expiry, clock),
    ]


def settlement_urls(config: SweeperConfig) -> Dict[str, str]:
    providers = config.providers
    urls: Dict[str, str] = {SOLANA: providers.solana_rpc_url}
    for name, info in SUPPORTED_CHAINS.items():
        if info.family == EVM and info.alchemy_network and providers.alchemy_api_key:
            urls[name] = providers.alchemy_url(info.alchemy_network)
    urls.update(providers.rpc_urls)
    return urls


def build_runtime(
    config: SweeperConfig,
    http: Optional[HttpClient] = None,
    settlement: Optional[SettlementTarget] = None,
    queue: Optional[JobQueue] = None,
    clock: Callable[[], float] = time.time,
) -> Runtime:
    providers = config.providers
    store = MemoryStore(clock=clock)
    http = http or HttpClient(providers.request_timeout, providers.retries, USER_AGENT)
    oracle = PriceOracle(
        [
            CoinGeckoSource(http, providers.coingecko_base_url, clock),
            DexScreenerSource(http, providers.dexscreener_base_url, clock),
            DefiLlamaSource(http, providers.defillama_base_url, clock),
            JupiterPriceSource(http, providers.jupiter_price_url, clock),
        ],
        config.price,
        store,
        clock,
    )
    scanner = WalletScanner(build_scanners(config, http, oracle, clock), config.sweep.scan_concurrency)
    selector = QuoteSelector(build_adapters(config, http, oracle, clock), config.quote)
    queue = queue or JobQueue(concurrency=config.queue_concurrency, clock=clock)
    settlement = settlement or JsonRpcSettlement(http, settlement_urls(config))
    gate = PaymentGate(config.payment, store, clock=clock)
    sweeps = SweepRepository(store)
    orchestrator = SweepOrchestrator(
        sweeps,
        selector,
        oracle,
        queue,
        settlement,
        store,
        config=config,
        gate=gate,
        clock=clock,
    )
    runtime = Runtime(
        config=config,
        store=store,
        http=http,
        oracle=oracle,
        scanner=scanner,
        selector=selector,
        queue=queue,
        settlement=settlement,
        gate=gate,
        sweeps=sweeps,
        dust_tokens=DustTokenRepository(store),
        orchestrator=orchestrator,
    )
    runtime.register()
    return runtime
