from .aggregator import DexAggregator, QuoteSelector
from .config import SweeperConfig, load_config
from .models import DexQuote, QuoteRequest, Sweep, SweepStatus, ValidatedPrice, WalletScan, WalletToken
from .oracle import PriceOracle
from .orchestrator import SignedAuthorization, SweepOrchestrator
from .payment import PaymentAuthorization, PaymentGate
from .queue import JobQueue, close_job_queue, get_job_queue
from .scanner import ChainScanner, WalletScanner
from .workers import Runtime, build_runtime

__all__ = [
    "ChainScanner",
    "DexAggregator",
    "DexQuote",
    "JobQueue",
    "PaymentAuthorization",
    "PaymentGate",
    "PriceOracle",
    "QuoteRequest",
    "QuoteSelector",
    "Runtime",
    "SignedAuthorization",
    "Sweep",
    "SweepOrchestrator",
    "SweepStatus",
    "SweeperConfig",
    "ValidatedPrice",
    "WalletScan",
    "WalletScanner",
    "WalletToken",
    "build_runtime",
    "close_job_queue",
    "get_job_queue",
    "load_config",
]
