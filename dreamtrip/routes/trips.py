"""
旅行プランの保存・一覧API。
Endpoints that save trip plans and list them.
"""

import logging

from flask import Blueprint, jsonify, request

from dreamtrip import security, trips
from dreamtrip.entities import sanitize_field
from dreamtrip.errors import DreamTripError
from dreamtrip.routes import ResponseOrTuple, error_response, internal_error_response, json_body, services

logger = logging.getLogger(__name__)

trips_bp = Blueprint("trips", __name__)


@trips_bp.route("/api/trips/save", methods=["POST"])
def save_trip() -> ResponseOrTuple:
    """
    旅行プランを保存する。tripData がなければ会話の下書きを保存します。
    Save the given trip data, or the conversation draft when none is given.
    """
    body = json_body()
    try:
        user_id = security.require_user_id(request, body)
        session_id = sanitize_field(body.get("sessionId"), max_length=128)
        if body.get("tripData") is not None:
            data = trips.parse_trip_data(body.get("tripData"))
        else:
            draft = services()["flow"].session_draft(session_id or user_id)
            data = trips.TripData.from_draft(draft)
        trip = trips.save_trip(user_id, data, session_id=session_id, is_public=body.get("isPublic") is True)
        return jsonify({"success": True, "tripId": trip["id"], "trip": trip}), 201
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("Saving trip failed: %s", e, exc_info=True)
        return internal_error_response()


@trips_bp.route("/api/trips", methods=["GET"])
def my_trips() -> ResponseOrTuple:
    try:
        user_id = security.require_user_id(request)
        return jsonify({"trips": trips.list_user_trips(user_id)})
    except DreamTripError as e:
        return error_response(e)
    except Exception as e:
        logger.error("Listing trips failed: %s", e, exc_info=True)
        return internal_error_response()


@trips_bp.route("/api/trips/public", methods=["GET"])
def public_trips() -> ResponseOrTuple:
    try:
        return jsonify({"trips": trips.list_public_trips(request.args.get("destination"))})
    except Exception as e:
        logger.error("Listing public trips failed: %s", e, exc_info=True)
        return internal_error_response()
