"""
トリップ作成可否の確認API。
Trip-limit endpoints: consume one trip (POST) or report the status (GET).
"""

import logging

from flask import Blueprint, jsonify, request

from dreamtrip import security
from dreamtrip.errors import DreamTripError
from dreamtrip.routes import ResponseOrTuple, error_response, internal_error_response, services

logger = logging.getLogger(__name__)

trip_limit_bp = Blueprint("trip_limit", __name__)


@trip_limit_bp.route("/api/trip-limit", methods=["POST"])
def check_trip_limit() -> ResponseOrTuple:
    """
    トリップ作成の可否を判定し、許可されれば1回分を消費する
    Admit one trip creation for the caller, or answer 429 with the reset time.
    """
    try:
        user_id = security.require_user_id(request)
        decision = services()["admission"].check_and_consume(user_id)
        if not decision.allowed:
            payload = decision.to_denial_payload()
            payload["error"] = "Trip limit reached"
            return jsonify(payload), 429
        return jsonify(decision.to_payload())
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("Trip limit check failed: %s", e, exc_info=True)
        return internal_error_response()


@trip_limit_bp.route("/api/trip-limit", methods=["GET"])
def trip_limit_status() -> ResponseOrTuple:
    try:
        user_id = security.require_user_id(request)
        decision = services()["admission"].peek(user_id)
        payload = decision.to_payload()
        payload["canCreateTrip"] = decision.allowed
        del payload["allowed"]
        return jsonify(payload)
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("Trip limit status failed: %s", e, exc_info=True)
        return internal_error_response()
