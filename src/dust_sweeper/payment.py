"""Admission control for paid sweep execution (x402 "exact" scheme).

The gate checks an EIP-3009 style USDC transfer authorization against the
configured receiver and price, then burns its nonce so the same
authorization can never admit a second request.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import PaymentConfig
from .errors import ValidationError
from .store import MemoryStore

logger = logging.getLogger(__name__)

USDC_DECIMALS = 6
NONCE_TTL_BUFFER_SECONDS = 3600
X402_VERSION = 1


def cents_to_usdc_units(cents: int) -> int:
    return cents * 10 ** (USDC_DECIMALS - 2)


@dataclass(frozen=True)
class PaymentAuthorization:
    payer: str
    receiver: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str
    signature: str
    network: str = "eip155:8453"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PaymentAuthorization":
        try:
            inner = payload["payload"]
            auth = inner["authorization"]
            return cls(
                payer=auth["from"],
                receiver=auth["to"],
                value=int(auth["value"]),
                valid_after=int(auth["validAfter"]),
                valid_before=int(auth["validBefore"]),
                nonce=str(auth["nonce"]),
                signature=inner["signature"],
                network=payload.get("network", "eip155:8453"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("malformed payment payload", {"error": exc}) from None

    @classmethod
    def from_header(cls, header: str) -> "PaymentAuthorization":
        """Decode the base64 JSON carried in an ``X-PAYMENT`` header."""
        try:
            payload = json.loads(base64.b64decode(header).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise ValidationError("invalid payment header format") from None
        if not isinstance(payload, dict):
            raise ValidationError("invalid payment header format")
        return cls.from_payload(payload)


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: Optional[str] = None
    payer: Optional[str] = None
    amount: Optional[int] = None


SignatureVerifier = Callable[[PaymentAuthorization], bool]


def has_signature(authorization: PaymentAuthorization) -> bool:
    return bool(authorization.signature)


class PaymentGate:
    NONCE_PREFIX = "x402:nonce:"

    def __init__(
        self,
        config: PaymentConfig,
        store: MemoryStore,
        verifier: SignatureVerifier = has_signature,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.verifier = verifier
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def required_amount(self) -> int:
        return cents_to_usdc_units(self.config.amount_cents)

    def admit(self, authorization: Optional[PaymentAuthorization]) -> AdmissionDecision:
        if not self.config.enabled:
            return AdmissionDecision(True)
        if authorization is None:
            return AdmissionDecision(False, "payment required")
        if authorization.receiver.lower() != self.config.receiver_address.lower():
            return AdmissionDecision(False, "invalid receiver address")
        if authorization.value < self.required_amount:
            return AdmissionDecision(False, "insufficient payment amount")

        now = int(self.clock())
        if now < authorization.valid_after:
            return AdmissionDecision(False, "payment not yet valid")
        if now > authorization.valid_before:
            return AdmissionDecision(False, "payment expired")
        if not self.verifier(authorization):
            return AdmissionDecision(False, "invalid payment signature")

        key = f"{self.NONCE_PREFIX}{authorization.payer}:{authorization.nonce}"
        ttl = authorization.valid_before - now + NONCE_TTL_BUFFER_SECONDS
        if not self.store.set_if_absent(key, True, ttl=ttl):
            logger.warning("replayed payment nonce from %s", authorization.payer)
            return AdmissionDecision(False, "nonce already used")
        return AdmissionDecision(True, payer=authorization.payer, amount=authorization.value)

    def requirement(self, resource: str) -> Dict[str, Any]:
        """Body of a 402 response describing the payment this gate accepts."""
        description = self.config.description or f"Payment required: ${self.config.amount_cents / 100:.2f}"
        accepts = {
            "scheme": "exact",
            "network": self.config.network,
            "maxAmountRequired": str(self.required_amount),
            "resource": resource,
            "description": description,
            "mimeType": "application/json",
            "payTo": self.config.receiver_address,
            "maxTimeoutSeconds": self.config.max_timeout_seconds,
            "asset": self.config.asset,
        }
        return {
            "x402Version": X402_VERSION,
            "error": "Payment required",
            "code": "PAYMENT_REQUIRED",
            "accepts": [accepts],
        }
