"""
Redisアクセスと簡易フォールバック（インメモリ）の管理。
Redis access for JSON documents and per-key locks, with an in-memory fallback.

All mutable per-user state (subscription records, burst buckets, conversation
sessions) is stored as an opaque JSON document under a namespaced key.
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import redis

from dreamtrip.config import _env_bool, _env_float, _env_int
from dreamtrip.errors import SessionBusy, StoreUnavailable

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_SESSION_TTL_SECONDS = _env_int("REDIS_SESSION_TTL_SECONDS", 172800)
REDIS_SOCKET_TIMEOUT_SECONDS = _env_float("REDIS_SOCKET_TIMEOUT_SECONDS", 2.0)
REDIS_CONNECT_TIMEOUT_SECONDS = _env_float("REDIS_CONNECT_TIMEOUT_SECONDS", 2.0)
REDIS_HEALTH_CHECK_INTERVAL = _env_int("REDIS_HEALTH_CHECK_INTERVAL", 30)
REDIS_RECONNECT_MIN_INTERVAL_SECONDS = _env_float("REDIS_RECONNECT_MIN_INTERVAL_SECONDS", 2.0)
REDIS_ALLOW_FALLBACK = _env_bool("REDIS_ALLOW_FALLBACK", True)

# Redisクライアントの状態管理
# Redis client state tracking
redis_client: Optional[Any] = None
_redis_lock = threading.Lock()
_last_health_check = 0.0
_last_reconnect_attempt = 0.0

# Redisが使えない場合の簡易フォールバック（単一プロセス限定）
# In-memory fallback when Redis is unavailable (single-process only)
_memory_store: Dict[str, Tuple[str, Optional[float]]] = {}
_memory_locks: Dict[str, List[Any]] = {}
_memory_guard = threading.Lock()


def _create_redis_client() -> Optional[Any]:
    try:
        client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
            retry_on_timeout=True,
            health_check_interval=REDIS_HEALTH_CHECK_INTERVAL,
        )
        client.ping()
        return client
    except redis.RedisError as e:
        logger.error("Failed to connect to Redis: %s", e)
        return None


def get_redis_client() -> Optional[Any]:
    """
    Redisクライアントを取得する（ヘルスチェックと再接続の間引き付き）
    Return the live client, pinging it periodically and throttling reconnects.
    """
    global redis_client, _last_health_check, _last_reconnect_attempt
    now = time.time()

    with _redis_lock:
        if redis_client is not None and REDIS_HEALTH_CHECK_INTERVAL > 0:
            if now - _last_health_check >= REDIS_HEALTH_CHECK_INTERVAL:
                _last_health_check = now
                try:
                    redis_client.ping()
                except redis.RedisError as e:
                    logger.warning("Redis health check failed: %s", e)
                    redis_client = None

        if redis_client is not None:
            return redis_client

        if now - _last_reconnect_attempt < REDIS_RECONNECT_MIN_INTERVAL_SECONDS:
            return None
        _last_reconnect_attempt = now
        redis_client = _create_redis_client()
        if redis_client is not None:
            _last_health_check = now
        return redis_client


def _mark_unhealthy(reason: str, err: Exception) -> None:
    global redis_client, _last_health_check
    logger.error("Redis %s failed: %s", reason, err)
    with _redis_lock:
        redis_client = None
        _last_health_check = 0.0


def is_available() -> bool:
    return get_redis_client() is not None


def _require_fallback(operation: str) -> None:
    if not REDIS_ALLOW_FALLBACK:
        raise StoreUnavailable(f"Redis unavailable during {operation}")


def _memory_set(key: str, value: str, ttl: Optional[int]) -> None:
    expires_at = time.time() + ttl if ttl else None
    with _memory_guard:
        _memory_store[key] = (value, expires_at)


def _memory_get(key: str) -> Optional[str]:
    with _memory_guard:
        item = _memory_store.get(key)
        if not item:
            return None
        value, expires_at = item
        if expires_at and time.time() > expires_at:
            _memory_store.pop(key, None)
            return None
        return value


def build_key(namespace: str, identifier: str, key_type: str) -> str:
    """
    名前空間付きのRedisキーを生成する
    Build a namespaced key, e.g. `user:abc-123:subscription`.
    """
    return f"{namespace}:{identifier}:{key_type}"


def get_document(key: str) -> Optional[Dict[str, Any]]:
    """
    JSONドキュメントを取得する（存在しなければ None）
    Load a JSON document, or None when it does not exist.
    """
    client = get_redis_client()
    raw: Optional[str] = None
    if client is not None:
        try:
            raw = client.get(key)
        except redis.RedisError as e:
            _mark_unhealthy("get", e)
            client = None
    if client is None:
        _require_fallback("get")
        raw = _memory_get(key)

    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("Discarding corrupt document at %s", key)
        return None
    return data if isinstance(data, dict) else None


def save_document(key: str, document: Dict[str, Any], ttl: Optional[int] = None) -> None:
    """
    JSONドキュメントを保存する。ttl を省略すると期限なしで保存します。
    Persist a JSON document; without `ttl` it never expires.
    """
    payload = json.dumps(document, ensure_ascii=False)
    client = get_redis_client()
    if client is not None:
        try:
            if ttl and ttl > 0:
                client.setex(key, ttl, payload)
            else:
                client.set(key, payload)
            return
        except redis.RedisError as e:
            _mark_unhealthy("set", e)
    _require_fallback("set")
    _memory_set(key, payload, ttl if ttl and ttl > 0 else None)


def _checkout_memory_lock(name: str) -> threading.Lock:
    # 待機中も含めた利用者数を数え、最後の利用者が返却したら破棄する
    # Entries are counted per user (holder or waiter) and dropped by the last one.
    with _memory_guard:
        entry = _memory_locks.setdefault(name, [threading.Lock(), 0])
        entry[1] += 1
        return entry[0]


def _return_memory_lock(name: str) -> None:
    with _memory_guard:
        entry = _memory_locks.get(name)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            _memory_locks.pop(name, None)


@contextmanager
def document_lock(
    name: str,
    timeout: float = 10.0,
    blocking_timeout: float = 5.0,
    blocking: bool = True,
) -> Iterator[None]:
    """
    キー単位の排他ロック（Redis分散ロック、またはプロセス内ロック）
    Mutual exclusion for one key: a Redis lock, or an in-process lock in fallback mode.

    Raises `SessionBusy` when the lock cannot be acquired within `blocking_timeout`
    (immediately when `blocking` is False).
    """
    client = get_redis_client()
    if client is not None:
        lock = client.lock(f"lock:{name}", timeout=timeout, blocking_timeout=blocking_timeout)
        try:
            if blocking:
                acquired = lock.acquire(blocking=True, blocking_timeout=blocking_timeout)
            else:
                acquired = lock.acquire(blocking=False)
        except redis.RedisError as e:
            _mark_unhealthy("lock", e)
            raise StoreUnavailable("Redis lock unavailable") from e
        if not acquired:
            raise SessionBusy(f"Lock {name} is held elsewhere")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.RedisError as e:
                # 期限切れ後の解放はエラーになるが、データは既に書き込み済み
                # Releasing an expired lock fails; the write already happened.
                logger.warning("Failed to release lock %s: %s", name, e)
        return

    _require_fallback("lock")
    local_lock = _checkout_memory_lock(name)
    if blocking:
        acquired = local_lock.acquire(timeout=blocking_timeout)
    else:
        acquired = local_lock.acquire(blocking=False)
    if not acquired:
        _return_memory_lock(name)
        raise SessionBusy(f"Lock {name} is held elsewhere")
    try:
        yield
    finally:
        local_lock.release()
        _return_memory_lock(name)


def reset_memory_store() -> None:
    """インメモリのフォールバックを空にする / Clear the in-memory fallback."""
    with _memory_guard:
        _memory_store.clear()
        _memory_locks.clear()


# 初期接続（失敗時はフォールバック）
# Initial connection (falls back to memory on failure)
if redis_client is None:
    redis_client = _create_redis_client()
