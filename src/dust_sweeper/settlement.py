import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

from .chains import SOLANA, get_chain
from .errors import ConfigurationError, SettlementError
from .http_client import HttpClient


class ReceiptStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass(frozen=True)
class Receipt:
    status: ReceiptStatus
    details: Dict[str, Any] = field(default_factory=dict)


class SettlementTarget(ABC):
    """Where signed transactions are broadcast and their outcome observed."""

    @abstractmethod
    async def submit(self, chain: str, calldata: str, signer_context: Mapping[str, Any]) -> str:
        ...

    @abstractmethod
    async def get_receipt(self, chain: str, tx_hash: str) -> Receipt:
        ...


class JsonRpcSettlement(SettlementTarget):
    """Broadcasts wallet-signed payloads over each chain's JSON-RPC endpoint.

    Signing happens in the user's wallet; the signer context must carry the
    signed transaction under ``signed_transaction``.
    """

    def __init__(self, http: HttpClient, rpc_urls: Mapping[str, str]) -> None:
        self.http = http
        self.rpc_urls = dict(rpc_urls)

    def _url(self, chain: str) -> str:
        get_chain(chain)
        url = self.rpc_urls.get(chain)
        if not url:
            raise ConfigurationError("no RPC endpoint configured", {"chain": chain})
        return url

    def _submit(self, chain: str, signed: str) -> str:
        if chain == SOLANA:
            tx_hash = self.http.rpc(self._url(chain), "sendTransaction", [signed, {"encoding": "base64"}])
        else:
            tx_hash = self.http.rpc(self._url(chain), "eth_sendRawTransaction", [signed])
        if not tx_hash:
            raise SettlementError("node returned no transaction hash", {"chain": chain})
        return str(tx_hash)

    def _receipt(self, chain: str, tx_hash: str) -> Receipt:
        if chain == SOLANA:
            result = self.http.rpc(
                self._url(chain),
                "getSignatureStatuses",
                [[tx_hash], {"searchTransactionHistory": True}],
            )
            status = ((result or {}).get("value") or [None])[0]
            if not status:
                return Receipt(ReceiptStatus.PENDING)
            if status.get("err"):
                return Receipt(ReceiptStatus.REVERTED, {"err": status["err"]})
            if status.get("confirmationStatus") in ("confirmed", "finalized"):
                return Receipt(ReceiptStatus.CONFIRMED, {"slot": status.get("slot")})
            return Receipt(ReceiptStatus.PENDING)

        receipt = self.http.rpc(self._url(chain), "eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return Receipt(ReceiptStatus.PENDING)
        details = {"blockNumber": receipt.get("blockNumber"), "gasUsed": receipt.get("gasUsed")}
        if receipt.get("status") == "0x1":
            return Receipt(ReceiptStatus.CONFIRMED, details)
        return Receipt(ReceiptStatus.REVERTED, details)

    async def submit(self, chain: str, calldata: str, signer_context: Mapping[str, Any]) -> str:
        signed = signer_context.get("signed_transaction")
        if not signed:
            raise SettlementError("signer context carries no signed transaction", {"chain": chain})
        return await asyncio.to_thread(self._submit, chain, signed)

    async def get_receipt(self, chain: str, tx_hash: str) -> Receipt:
        return await asyncio.to_thread(self._receipt, chain, tx_hash)
