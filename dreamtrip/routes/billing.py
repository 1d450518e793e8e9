"""
料金プラン、アップグレード、決済コールバック、ユーザー登録のAPI。
Pricing, upgrade, payment-callback and user-registration endpoints.
"""

import logging

from flask import Blueprint, jsonify, request

from dreamtrip import config, security
from dreamtrip.errors import DreamTripError, Unauthorized
from dreamtrip.routes import ResponseOrTuple, error_response, internal_error_response, json_body, services
from dreamtrip.subscription import PLANS

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__)


@billing_bp.route("/api/pricing", methods=["GET"])
def pricing() -> ResponseOrTuple:
    return jsonify({"plans": [plan.to_payload() for plan in PLANS.values()]})


@billing_bp.route("/api/users", methods=["POST"])
def create_user() -> ResponseOrTuple:
    """
    既定プランのサブスクリプション記録を作成する（冪等）
    Create the caller's default subscription record; idempotent.
    """
    body = json_body()
    try:
        user_id = security.require_user_id(request, body)
        record = services()["admission"].ensure_user(user_id)
        return jsonify({
            "userId": record.user_id,
            "tier": record.tier.value,
            "planLimits": record.plan_limits(),
            "remaining": record.remaining(),
        })
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("User creation failed: %s", e, exc_info=True)
        return internal_error_response()


@billing_bp.route("/api/upgrade", methods=["POST"])
def upgrade() -> ResponseOrTuple:
    """
    決済を行い、プランをアップグレードする
    Pay for and activate a higher plan.

    本文: {userId, newTier, paymentMethod, amount, phoneOrCardToken}
    Body: {userId, newTier, paymentMethod, amount, phoneOrCardToken}
    """
    body = json_body()
    try:
        user_id = security.require_user_id(request, body)
        status, payload = services()["billing"].process_upgrade(user_id, body)
        return jsonify(payload), status
    except DreamTripError as e:
        if e.status >= 500:
            logger.error("Upgrade failed: %s", e.detail)
        return error_response(e)
    except Exception as e:
        logger.error("Upgrade failed: %s", e, exc_info=True)
        return internal_error_response()


@billing_bp.route("/api/payment/callback", methods=["POST"])
def payment_callback() -> ResponseOrTuple:
    body = json_body()
    try:
        billing = services()["billing"]
        required = billing.gateway.requires_callback_secret
        if not security.callback_secret_valid(request, config.PAYMENT_CALLBACK_SECRET, required=required):
            if not config.PAYMENT_CALLBACK_SECRET:
                logger.error(
                    "Rejected payment callback: PAYMENT_CALLBACK_SECRET is not set for gateway %s",
                    billing.gateway.name,
                )
            raise Unauthorized("invalid callback secret")
        payload = billing.handle_callback(body.get("transactionId"), body.get("status"))
        return jsonify(payload)
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("Payment callback failed: %s", e, exc_info=True)
        return internal_error_response()
