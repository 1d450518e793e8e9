"""
会話セッション単位で同時リクエストを防ぐロックユーティリティ。
Locks that keep chat turns of one conversation strictly sequential across workers.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from dreamtrip import config, redis_client
from dreamtrip.errors import SessionBusy


def _lock_name(conversation_key: str) -> str:
    return f"turn:{conversation_key}"


@contextmanager
def exclusive_turn(conversation_key: str, timeout: Optional[float] = None) -> Iterator[None]:
    """
    1つの会話につき同時に1ターンだけ処理する。取得できなければ SessionBusy。
    Run one turn at a time per conversation; raises `SessionBusy` otherwise.

    Redis が使える場合はワーカー間で共有される分散ロックになる。
    With Redis available the lock is shared by every worker process; `timeout`
    bounds how long a crashed worker can keep the conversation locked.
    """
    if not conversation_key:
        raise SessionBusy("conversation key is required")

    lock_timeout = config.TURN_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    with redis_client.document_lock(_lock_name(conversation_key), timeout=lock_timeout, blocking=False):
        yield
