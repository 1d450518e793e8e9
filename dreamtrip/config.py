"""
アプリ全体で共有する設定値。
Shared configuration values read from the environment (and `.env`).
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# LLM（OpenAI互換API）設定
# OpenAI-compatible completion endpoint
LLM_API_KEY = _env_str("LLM_API_KEY") or _env_str("OPENROUTER_API_KEY")
LLM_BASE_URL = _env_str("LLM_BASE_URL", "https://openrouter.ai/api/v1")
LLM_MODEL_NAME = _env_str("LLM_MODEL_NAME", "openai/gpt-4o-mini")
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.7)
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 2000)
LLM_TIMEOUT_SECONDS = _env_float("LLM_TIMEOUT_SECONDS", 30.0)
LLM_MAX_RETRIES = _env_int("LLM_MAX_RETRIES", 1)
TURN_LOCK_TIMEOUT_SECONDS = _env_float("TURN_LOCK_TIMEOUT_SECONDS", 120.0)
MAX_MESSAGE_CHARS = _env_int("MAX_MESSAGE_CHARS", 3000)
MAX_HISTORY_MESSAGES = _env_int("MAX_HISTORY_MESSAGES", 60)

# 利用制限
# Admission control
RATE_LIMIT_POLICY = _env_str("RATE_LIMIT_POLICY", "token_bucket").lower()
BURST_CAPACITY = _env_int("BURST_CAPACITY", 1)
BURST_REFILL_TOKENS = _env_int("BURST_REFILL_TOKENS", 1)
BURST_REFILL_SECONDS = _env_int("BURST_REFILL_SECONDS", 86400)
ADMISSION_LOCK_TIMEOUT_SECONDS = _env_float("ADMISSION_LOCK_TIMEOUT_SECONDS", 5.0)
QUOTA_CONSUMPTION = _env_str("QUOTA_CONSUMPTION", "trip").lower()

# 外部連携（天気・安全・おすすめ）
# Fan-out collaborators
WEATHER_SERVICE_URL = _env_str("WEATHER_SERVICE_URL")
SAFETY_SERVICE_URL = _env_str("SAFETY_SERVICE_URL")
RECOMMENDATION_SERVICE_URL = _env_str("RECOMMENDATION_SERVICE_URL")
NOTIFICATION_TIMEOUT_SECONDS = _env_float("NOTIFICATION_TIMEOUT_SECONDS", 5.0)
NOTIFICATION_WORKERS = _env_int("NOTIFICATION_WORKERS", 4)
NOTIFICATION_MAX_PENDING = _env_int("NOTIFICATION_MAX_PENDING", 64)

# 決済ゲートウェイ
# Payment gateway
PAYMENT_GATEWAY_URL = _env_str("PAYMENT_GATEWAY_URL")
PAYMENT_GATEWAY_API_KEY = _env_str("PAYMENT_GATEWAY_API_KEY")
PAYMENT_GATEWAY_TIMEOUT_SECONDS = _env_float("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 15.0)
PAYMENT_CALLBACK_SECRET = _env_str("PAYMENT_CALLBACK_SECRET")

LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()
