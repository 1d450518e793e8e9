"""
CORS許可オリジン、呼び出し元の識別、セキュリティヘッダー。
Allowed origins, caller identification and security headers for the JSON API.
"""

import hmac
import os
from typing import Any, Dict, List, Optional

from flask import Request, Response

from dreamtrip.errors import Unauthorized

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000",)

MAX_USER_ID_LENGTH = 128


def get_allowed_origins() -> List[str]:
    """
    許可されたオリジンのリストを取得する
    Merge `ALLOWED_ORIGINS` (comma separated) with the local development origin.
    """
    frontend_origin = os.getenv("FRONTEND_ORIGIN", DEFAULT_ALLOWED_ORIGINS[0])
    raw_origins = os.getenv("ALLOWED_ORIGINS", frontend_origin).split(",")
    allowed = [origin.strip() for origin in raw_origins if origin.strip()]
    for origin in DEFAULT_ALLOWED_ORIGINS:
        if origin not in allowed:
            allowed.append(origin)
    return allowed


def _clean_user_id(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or len(value) > MAX_USER_ID_LENGTH:
        return None
    return value


def bearer_user_id(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return _clean_user_id(token)


def require_user_id(request: Request, body: Optional[Dict[str, Any]] = None) -> str:
    """
    呼び出し元のユーザーIDを取得する（Bearer ヘッダー、次に本文の userId）
    Resolve the caller: the Bearer token first, then `userId` in the body.
    """
    user_id = bearer_user_id(request)
    if user_id is None and body is not None:
        user_id = _clean_user_id(body.get("userId"))
    if user_id is None:
        raise Unauthorized("missing caller identity")
    return user_id


def callback_secret_valid(request: Request, secret: str, required: bool = False) -> bool:
    """
    決済コールバックの共有シークレットを検証する。
    Check the payment callback shared secret. With no secret configured the
    callback is accepted only when `required` is False (sandbox gateway).
    """
    if not secret:
        return not required
    provided = request.headers.get("X-Callback-Secret", "")
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


def build_csp() -> str:
    # JSONのみを返すAPI
    return "default-src 'none'; frame-ancestors 'none'; base-uri 'none'; form-action 'none';"


def apply_security_headers(response: Response) -> Response:
    """
    レスポンスに各種セキュリティヘッダーを付与する
    Attach the security headers to every response.
    """
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
    response.headers.setdefault("Cache-Control", "no-store")

    csp = os.getenv("CONTENT_SECURITY_POLICY")
    if not csp:
        csp = build_csp()
    response.headers.setdefault("Content-Security-Policy", csp)

    if os.getenv("ENABLE_HSTS", "false").lower() in ("1", "true", "yes"):
        response.headers.setdefault(
            "Strict-Transport-Security",
            "max-age=63072000; includeSubDomains",
        )

    return response
