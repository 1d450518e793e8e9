"""
Flaskアプリケーションの生成。
Application factory: logging, CORS, services and blueprints.
"""

import logging
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify
from flask_cors import CORS

from dreamtrip import config, database, redis_client, security
from dreamtrip.billing import BillingService
from dreamtrip.flow_controller import FlowController
from dreamtrip.limit_manager import AdmissionController
from dreamtrip.notifications import NotificationDispatcher, default_collaborators
from dreamtrip.rate_limit_policy import build_policy
from dreamtrip.routes.billing import billing_bp
from dreamtrip.routes.chat import chat_bp
from dreamtrip.routes.trip_limit import trip_limit_bp
from dreamtrip.routes.trips import trips_bp

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    """
    ルートロガーを一度だけ設定する
    Configure the root logger once; repeated calls only adjust the level.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    # リロード時にハンドラーが重複しないようにする
    # Prevent duplicate handlers when the app is created again
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


def build_services(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    設定値からサービスを組み立てる。テストでは個別に差し替え可能です。
    Build the services from configuration; tests override individual entries.
    """
    overrides = dict(overrides or {})
    admission = overrides.pop("admission", None) or AdmissionController(
        policy=build_policy(
            config.RATE_LIMIT_POLICY,
            capacity=config.BURST_CAPACITY,
            refill_tokens=config.BURST_REFILL_TOKENS,
            refill_interval=config.BURST_REFILL_SECONDS,
        ),
        lock_timeout=config.ADMISSION_LOCK_TIMEOUT_SECONDS,
    )
    flow = overrides.pop("flow", None) or FlowController(
        admission,
        dispatcher=NotificationDispatcher(config.NOTIFICATION_WORKERS, config.NOTIFICATION_MAX_PENDING),
        collaborators=default_collaborators(),
        quota_consumption=config.QUOTA_CONSUMPTION,
    )
    billing = overrides.pop("billing", None) or BillingService(admission)
    if overrides:
        raise ValueError(f"Unknown services: {sorted(overrides)}")
    return {"admission": admission, "flow": flow, "billing": billing}


def create_app(services: Optional[Dict[str, Any]] = None, init_database: bool = True) -> Flask:
    configure_logging()

    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(
        app,
        resources={r"/api/*": {"origins": security.get_allowed_origins()}},
        allow_headers=["Content-Type", "Authorization"],
    )

    if init_database:
        database.init_db()

    app.extensions["dreamtrip"] = build_services(services)

    app.register_blueprint(trip_limit_bp)
    app.register_blueprint(chat_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(trips_bp)

    @app.route("/api/health", methods=["GET"])
    def health() -> Response:
        redis_ok = redis_client.is_available()
        return jsonify({
            "status": "ok",
            "redis": "connected" if redis_ok else "fallback",
        })

    @app.after_request
    def add_security_headers(response: Response) -> Response:
        return security.apply_security_headers(response)

    logger.info("DreamTrip API ready (policy=%s, quota=%s)", config.RATE_LIMIT_POLICY, config.QUOTA_CONSUMPTION)
    return app
