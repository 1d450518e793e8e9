"""
決済処理（モバイルマネー / カード）とゲートウェイ連携。
Payment handling: Cameroonian mobile-money validation and the gateway adapters
that charge for plan upgrades.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from dreamtrip import config
from dreamtrip.errors import InvalidRequest, PaymentGatewayError

logger = logging.getLogger(__name__)

METHOD_MOBILE_MONEY = "momo"
METHOD_CARD = "card"
PAYMENT_METHODS = (METHOD_MOBILE_MONEY, METHOD_CARD)

STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
_STATUSES = (STATUS_COMPLETED, STATUS_PENDING, STATUS_FAILED)

NETWORK_MTN = "mtn"
NETWORK_ORANGE = "orange"

# カメルーンの携帯番号：国番号237（任意）+ 9桁
# Cameroonian mobile numbers: optional 237 country code + 9 digits
_PHONE_RE = re.compile(r"^(?:237)?([67]\d{8})$")
_MTN_PREFIXES = ("65", "66", "67", "68")
_ORANGE_PREFIXES = ("69", "77", "78", "79")


def normalize_phone(raw: Any) -> str:
    """
    電話番号を9桁の国内形式に正規化する
    Normalize a mobile-money number to its 9-digit national form.
    """
    if not isinstance(raw, str):
        raise InvalidRequest("phone number missing", public_message="A mobile money number is required.")
    digits = re.sub(r"[\s\-().]", "", raw)
    if digits.startswith("+"):
        digits = digits[1:]
    match = _PHONE_RE.match(digits)
    if not match:
        raise InvalidRequest(
            f"malformed phone number {raw!r}",
            public_message="Please enter a valid Cameroonian mobile money number.",
        )
    return match.group(1)


def detect_network(phone: str) -> Optional[str]:
    # 67xxxxxxx → MTN、69xxxxxxx → Orange
    national = phone[-9:]
    if national[:2] in _MTN_PREFIXES:
        return NETWORK_MTN
    if national[:2] in _ORANGE_PREFIXES:
        return NETWORK_ORANGE
    return None


@dataclass
class ChargeRequest:
    user_id: str
    tier: str
    amount: int
    currency: str
    method: str
    account: str
    network: Optional[str] = None
    reference: str = ""

    def __post_init__(self):
        if not self.reference:
            self.reference = f"txn_{uuid.uuid4().hex[:16]}"


@dataclass
class ChargeResult:
    status: str
    reference: str
    message: str = ""

    @property
    def completed(self) -> bool:
        return self.status == STATUS_COMPLETED


def build_charge_request(
    user_id: str,
    tier: str,
    amount: int,
    currency: str,
    method: Any,
    account: Any,
) -> ChargeRequest:
    if method not in PAYMENT_METHODS:
        raise InvalidRequest(f"unknown payment method {method!r}", public_message="Unsupported payment method.")
    if method == METHOD_MOBILE_MONEY:
        phone = normalize_phone(account)
        network = detect_network(phone)
        if network is None:
            raise InvalidRequest(
                f"unsupported network for {phone}",
                public_message="Only MTN and Orange mobile money numbers are supported.",
            )
        return ChargeRequest(user_id, tier, amount, currency, method, phone, network)

    if not isinstance(account, str) or not account.strip():
        raise InvalidRequest("card token missing", public_message="A card token is required.")
    return ChargeRequest(user_id, tier, amount, currency, method, account.strip())


class PaymentGateway:
    name = "base"
    # 非同期に完了する決済はコールバックの認証が必須
    requires_callback_secret = True

    def charge(self, request: ChargeRequest) -> ChargeResult:
        raise NotImplementedError


class SandboxPaymentGateway(PaymentGateway):
    """
    ゲートウェイ未設定時の開発用。すべて承認します。
    Development gateway used when no URL is configured; approves every charge.
    """
    name = "sandbox"
    requires_callback_secret = False

    def charge(self, request: ChargeRequest) -> ChargeResult:
        logger.warning(
            "Sandbox payment gateway approved %s %s for %s (no PAYMENT_GATEWAY_URL set)",
            request.amount, request.currency, request.user_id,
        )
        return ChargeResult(STATUS_COMPLETED, request.reference, "Payment processed successfully")


class HttpPaymentGateway(PaymentGateway):
    """外部決済APIへの委譲 / Delegates the charge to an HTTP payment provider."""
    name = "http"

    def __init__(self, url: str, api_key: str = "", timeout: float = 15.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def charge(self, request: ChargeRequest) -> ChargeResult:
        payload = {
            "reference": request.reference,
            "amount": request.amount,
            "currency": request.currency,
            "method": request.method,
            "network": request.network,
            "account": request.account,
            "description": f"DreamTrip {request.tier} plan",
        }
        try:
            resp = requests.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("Payment gateway request failed: %s", e)
            raise PaymentGatewayError(f"gateway unreachable: {type(e).__name__}") from e

        if resp.status_code >= 500:
            logger.error("Payment gateway returned %s", resp.status_code)
            raise PaymentGatewayError(f"gateway status {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise PaymentGatewayError("gateway returned invalid JSON") from e
        if not isinstance(data, dict):
            raise PaymentGatewayError("gateway returned an unexpected payload")

        status = str(data.get("status", "")).lower()
        if resp.status_code >= 400 or status not in _STATUSES:
            status = STATUS_FAILED
        reference = str(data.get("transactionId") or request.reference)
        return ChargeResult(status, reference, str(data.get("message") or ""))


def build_gateway() -> PaymentGateway:
    if config.PAYMENT_GATEWAY_URL:
        return HttpPaymentGateway(
            config.PAYMENT_GATEWAY_URL,
            api_key=config.PAYMENT_GATEWAY_API_KEY,
            timeout=config.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        )
    return SandboxPaymentGateway()
