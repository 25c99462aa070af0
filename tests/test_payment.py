import base64
import json
import unittest

from dust_sweeper.config import PaymentConfig
from dust_sweeper.errors import ValidationError
from dust_sweeper.payment import PaymentAuthorization, PaymentGate, cents_to_usdc_units
from dust_sweeper.store import MemoryStore

from .fakes import FakeClock

PAYER = "0x1111111111111111111111111111111111111112"
RECEIVER = "0x2222222222222222222222222222222222222222"


class PaymentGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = MemoryStore(clock=self.clock)
        self.gate = PaymentGate(
            PaymentConfig(enabled=True, receiver_address=RECEIVER, amount_cents=10), self.store, clock=self.clock
        )

    def _authorization(self, **overrides) -> PaymentAuthorization:
        now = int(self.clock())
        values = dict(
            payer=PAYER,
            receiver=RECEIVER.upper().replace("0X", "0x"),
            value=100_000,
            valid_after=now - 60,
            valid_before=now + 300,
            nonce="0xabc",
            signature="0xsigned",
        )
        values.update(overrides)
        return PaymentAuthorization(**values)

    def test_ten_cents_is_one_hundred_thousand_units(self) -> None:
        self.assertEqual(cents_to_usdc_units(10), 100_000)

    def test_disabled_gate_admits_without_payment(self) -> None:
        gate = PaymentGate(PaymentConfig(enabled=False), self.store, clock=self.clock)
        self.assertTrue(gate.admit(None).admitted)

    def test_valid_authorization_is_admitted_once(self) -> None:
        first = self.gate.admit(self._authorization())
        replay = self.gate.admit(self._authorization())

        self.assertTrue(first.admitted)
        self.assertEqual(first.payer, PAYER)
        self.assertEqual(first.amount, 100_000)
        self.assertFalse(replay.admitted)
        self.assertEqual(replay.reason, "nonce already used")

    def test_nonce_is_burned_until_after_the_validity_window(self) -> None:
        self.gate.admit(self._authorization())

        self.clock.advance(300 + 3600 - 1)
        self.assertIsNotNone(self.store.get(f"x402:nonce:{PAYER}:0xabc"))
        self.clock.advance(2)
        self.assertIsNone(self.store.get(f"x402:nonce:{PAYER}:0xabc"))

    def test_rejections(self) -> None:
        now = int(self.clock())
        cases = {
            "payment required": None,
            "invalid receiver address": self._authorization(receiver=PAYER),
            "insufficient payment amount": self._authorization(value=99_999),
            "payment not yet valid": self._authorization(valid_after=now + 10),
            "payment expired": self._authorization(valid_before=now - 1),
            "invalid payment signature": self._authorization(signature=""),
        }
        for reason, authorization in cases.items():
            with self.subTest(reason=reason):
                decision = self.gate.admit(authorization)
                self.assertFalse(decision.admitted)
                self.assertEqual(decision.reason, reason)
        self.assertEqual(self.store.keys("x402:nonce:"), [])

    def test_custom_verifier_is_consulted(self) -> None:
        gate = PaymentGate(self.gate.config, self.store, verifier=lambda auth: False, clock=self.clock)
        self.assertEqual(gate.admit(self._authorization()).reason, "invalid payment signature")

    def test_requirement_document(self) -> None:
        body = self.gate.requirement("/api/sweeps/execute")

        self.assertEqual(body["x402Version"], 1)
        self.assertEqual(body["code"], "PAYMENT_REQUIRED")
        accepts = body["accepts"][0]
        self.assertEqual(accepts["scheme"], "exact")
        self.assertEqual(accepts["maxAmountRequired"], "100000")
        self.assertEqual(accepts["payTo"], RECEIVER)
        self.assertEqual(accepts["resource"], "/api/sweeps/execute")


class PaymentHeaderTests(unittest.TestCase):
    def test_decodes_base64_json_header(self) -> None:
        payload = {
            "x402Version": 1,
            "scheme": "exact",
            "network": "eip155:8453",
            "payload": {
                "signature": "0xsigned",
                "authorization": {
                    "from": PAYER,
                    "to": RECEIVER,
                    "value": "100000",
                    "validAfter": "0",
                    "validBefore": "1700000300",
                    "nonce": "0xabc",
                },
            },
        }
        header = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

        authorization = PaymentAuthorization.from_header(header)

        self.assertEqual(authorization.payer, PAYER)
        self.assertEqual(authorization.value, 100_000)
        self.assertEqual(authorization.valid_before, 1_700_000_300)

    def test_malformed_headers_are_validation_errors(self) -> None:
        missing_authorization = base64.b64encode(b'{"payload": {"signature": "0x"}}').decode("ascii")
        for header in ("%%%not-base64", base64.b64encode(b"[1, 2]").decode("ascii"), missing_authorization):
            with self.subTest(header=header):
                with self.assertRaises(ValidationError):
                    PaymentAuthorization.from_header(header)


if __name__ == "__main__":
    unittest.main()
