"""
アプリケーション例外の定義。
Application error taxonomy. Each error carries the HTTP status and a message
that is safe to show to end users; internal details stay in the logs.
"""

from typing import Any, Dict, Optional


class DreamTripError(Exception):
    status = 500
    code = "internal_error"
    public_message = "Something went wrong on our side. Please try again in a moment."

    def __init__(self, detail: str = "", public_message: Optional[str] = None):
        super().__init__(detail or self.public_message)
        self.detail = detail
        if public_message is not None:
            self.public_message = public_message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.public_message}


class InvalidRequest(DreamTripError):
    status = 400
    code = "invalid_request"
    public_message = "The request is missing required information."


class Unauthorized(DreamTripError):
    status = 401
    code = "unauthorized"
    public_message = "Unauthorized"


class PaymentDeclined(DreamTripError):
    status = 402
    code = "payment_declined"
    public_message = "Payment failed. Please try again."


class UnknownUser(DreamTripError):
    status = 404
    code = "unknown_user"
    public_message = "No subscription exists for this user."


class SessionBusy(DreamTripError):
    status = 409
    code = "request_in_progress"
    public_message = "Another request for this conversation is still being processed."


class QuotaExceeded(DreamTripError):
    """
    利用上限に達した場合の例外。判定結果（リセット時刻など）を保持します。
    Raised when admission is denied; carries the decision with its reset time.
    """
    status = 429
    code = "quota_exceeded"
    public_message = "Trip limit reached."

    def __init__(self, decision: Any, detail: str = ""):
        super().__init__(detail or "admission denied")
        self.decision = decision


class UpstreamModelError(DreamTripError):
    status = 500
    code = "upstream_model_error"
    public_message = "I'm experiencing technical difficulties. Please try again in a moment."


class PaymentGatewayError(DreamTripError):
    status = 502
    code = "payment_gateway_error"
    public_message = "The payment provider could not be reached. Please try again later."


class StoreUnavailable(DreamTripError):
    status = 503
    code = "store_unavailable"
    public_message = "Usage information is temporarily unavailable. Please try again shortly."
