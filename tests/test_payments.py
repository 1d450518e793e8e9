"""
`payments` の番号検証とゲートウェイ連携を検証するテスト。
Tests for mobile-money validation and the gateway adapters in `payments`.
"""
import unittest
from unittest import mock

import requests

from dreamtrip.errors import InvalidRequest, PaymentGatewayError
from dreamtrip.payments import (
    METHOD_CARD,
    METHOD_MOBILE_MONEY,
    NETWORK_MTN,
    NETWORK_ORANGE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    ChargeRequest,
    HttpPaymentGateway,
    SandboxPaymentGateway,
    build_charge_request,
    detect_network,
    normalize_phone,
)


class PhoneNumberTests(unittest.TestCase):
    def test_normalize_accepts_common_formats(self):
        self.assertEqual(normalize_phone("677123456"), "677123456")
        self.assertEqual(normalize_phone("237677123456"), "677123456")
        self.assertEqual(normalize_phone("+237 677 12 34 56"), "677123456")
        self.assertEqual(normalize_phone("699-123-456"), "699123456")

    def test_normalize_rejects_malformed(self):
        for raw in ("12345", "577123456", "2376771234567", "", None, 677123456):
            with self.assertRaises(InvalidRequest):
                normalize_phone(raw)

    def test_detect_network(self):
        self.assertEqual(detect_network("677123456"), NETWORK_MTN)
        self.assertEqual(detect_network("650000000"), NETWORK_MTN)
        self.assertEqual(detect_network("699123456"), NETWORK_ORANGE)
        self.assertEqual(detect_network("655123456"), NETWORK_MTN)
        self.assertIsNone(detect_network("620000000"))


class ChargeRequestTests(unittest.TestCase):
    def test_mobile_money_request(self):
        request = build_charge_request("u-1", "pro", 5000, "XAF", METHOD_MOBILE_MONEY, "+237699123456")
        self.assertEqual(request.account, "699123456")
        self.assertEqual(request.network, NETWORK_ORANGE)
        self.assertTrue(request.reference.startswith("txn_"))

    def test_unsupported_network_is_rejected(self):
        with self.assertRaises(InvalidRequest):
            build_charge_request("u-1", "pro", 5000, "XAF", METHOD_MOBILE_MONEY, "620000000")

    def test_card_requires_token(self):
        request = build_charge_request("u-1", "pro", 5000, "XAF", METHOD_CARD, " tok_abc ")
        self.assertEqual(request.account, "tok_abc")
        self.assertIsNone(request.network)
        with self.assertRaises(InvalidRequest):
            build_charge_request("u-1", "pro", 5000, "XAF", METHOD_CARD, "  ")

    def test_unknown_method(self):
        with self.assertRaises(InvalidRequest):
            build_charge_request("u-1", "pro", 5000, "XAF", "paypal", "x")


def _response(status_code, data):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.json.return_value = data
    return resp


class HttpPaymentGatewayTests(unittest.TestCase):
    def setUp(self):
        self.gateway = HttpPaymentGateway("https://pay.local/charge", api_key="key", timeout=2)
        self.request = ChargeRequest("u-1", "pro", 5000, "XAF", METHOD_MOBILE_MONEY, "677123456", NETWORK_MTN)

    @mock.patch("dreamtrip.payments.requests.post")
    def test_completed_charge(self, post):
        post.return_value = _response(200, {"status": "COMPLETED", "transactionId": "gw-1"})
        result = self.gateway.charge(self.request)

        self.assertTrue(result.completed)
        self.assertEqual(result.reference, "gw-1")
        _, kwargs = post.call_args
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer key")
        self.assertEqual(kwargs["json"]["reference"], self.request.reference)
        self.assertEqual(kwargs["timeout"], 2)

    @mock.patch("dreamtrip.payments.requests.post")
    def test_pending_charge(self, post):
        post.return_value = _response(202, {"status": "pending"})
        result = self.gateway.charge(self.request)
        self.assertEqual(result.status, STATUS_PENDING)
        self.assertEqual(result.reference, self.request.reference)

    @mock.patch("dreamtrip.payments.requests.post")
    def test_client_error_and_unknown_status_are_failures(self, post):
        post.return_value = _response(400, {"status": "completed", "message": "insufficient funds"})
        self.assertEqual(self.gateway.charge(self.request).status, STATUS_FAILED)
        post.return_value = _response(200, {"status": "weird"})
        self.assertEqual(self.gateway.charge(self.request).status, STATUS_FAILED)

    @mock.patch("dreamtrip.payments.requests.post")
    def test_unreachable_gateway_raises(self, post):
        post.side_effect = requests.exceptions.ConnectTimeout("timed out")
        with self.assertRaises(PaymentGatewayError):
            self.gateway.charge(self.request)

    @mock.patch("dreamtrip.payments.requests.post")
    def test_server_error_and_bad_json_raise(self, post):
        post.return_value = _response(503, {})
        with self.assertRaises(PaymentGatewayError):
            self.gateway.charge(self.request)

        bad_json = _response(200, None)
        bad_json.json.side_effect = ValueError("no json")
        post.return_value = bad_json
        with self.assertRaises(PaymentGatewayError):
            self.gateway.charge(self.request)

    def test_callbacks_must_be_authenticated(self):
        self.assertTrue(self.gateway.requires_callback_secret)


class SandboxPaymentGatewayTests(unittest.TestCase):
    def test_sandbox_approves_and_warns(self):
        request = ChargeRequest("u-1", "pro", 5000, "XAF", METHOD_CARD, "tok")
        with self.assertLogs("dreamtrip.payments", level="WARNING"):
            result = SandboxPaymentGateway().charge(request)
        self.assertEqual(result.status, STATUS_COMPLETED)
        self.assertFalse(SandboxPaymentGateway().requires_callback_secret)


if __name__ == "__main__":
    unittest.main()
