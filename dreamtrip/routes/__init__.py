"""
APIルート（Flask Blueprint）と共通ヘルパー。
API blueprints and the helpers they share.
"""

import logging
from typing import Any, Dict, Tuple, Union

from flask import Response, current_app, jsonify, request

from dreamtrip.errors import DreamTripError

logger = logging.getLogger(__name__)

ResponseOrTuple = Union[Response, Tuple[Response, int]]

INTERNAL_ERROR_MESSAGE = "Something went wrong on our side. Please try again in a moment."


def services() -> Dict[str, Any]:
    """create_app で登録したサービス / Services registered by `create_app`."""
    return current_app.extensions["dreamtrip"]


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def error_response(err: DreamTripError) -> ResponseOrTuple:
    """アプリケーション例外をJSONレスポンスに変換する / Render an application error."""
    return jsonify(err.to_payload()), err.status


def internal_error_response() -> ResponseOrTuple:
    return jsonify({"error": "internal_error", "message": INTERNAL_ERROR_MESSAGE}), 500
