"""
旅行計画チャットAPI。
Chat endpoint driving the trip-planning conversation.
"""

import logging

from flask import Blueprint, jsonify, request

from dreamtrip import security
from dreamtrip.entities import sanitize_field
from dreamtrip.errors import DreamTripError, QuotaExceeded, UpstreamModelError
from dreamtrip.flow_controller import model_error_payload, quota_exceeded_payload
from dreamtrip.routes import ResponseOrTuple, error_response, json_body, services

logger = logging.getLogger(__name__)

chat_bp = Blueprint("chat", __name__)


@chat_bp.route("/api/aimodel", methods=["POST"])
def aimodel() -> ResponseOrTuple:
    """
    チャットの1ターンを処理する
    Handle one chat turn.

    本文: {messages | message, userId?, sessionId?}
    Body: {messages | message, userId?, sessionId?}
    """
    body = json_body()
    try:
        user_id = security.require_user_id(request, body)
        messages = body.get("messages", body.get("message"))
        session_id = sanitize_field(body.get("sessionId"), max_length=128)
        result = services()["flow"].handle_turn(user_id, messages, session_id=session_id)
        return jsonify(result.payload), result.status
    except QuotaExceeded as e:
        return jsonify(quota_exceeded_payload(e.decision)), e.status
    except UpstreamModelError as e:
        logger.error("Chat turn failed upstream: %s", e.detail)
        return jsonify(model_error_payload(e)), e.status
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("Chat turn failed: %s", e, exc_info=True)
        return jsonify(model_error_payload(UpstreamModelError())), 500
