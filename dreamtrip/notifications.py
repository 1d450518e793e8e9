"""
目的地確定時の外部サービス通知（天気・安全・おすすめ）。
Fire-and-forget notifications to the weather, safety and recommendation
services when a conversation's destination becomes known.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests

from dreamtrip import config

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    上限付きのバックグラウンド実行。満杯なら破棄してログに残す。
    Bounded background executor. `submit` never blocks: when the queue is
    full the task is dropped and logged.
    """

    def __init__(self, max_workers: int = 4, max_pending: int = 64):
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="dreamtrip-notify",
        )
        self._slots = threading.BoundedSemaphore(max(1, max_pending))
        self._pending = 0
        self._pending_lock = threading.Lock()

    def pending(self) -> int:
        with self._pending_lock:
            return self._pending

    def submit(self, name: str, task: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        if not self._slots.acquire(blocking=False):
            logger.warning("Notification queue full; dropping %s", name)
            return False
        with self._pending_lock:
            self._pending += 1
        try:
            self._executor.submit(self._run, name, task, args, kwargs)
        except RuntimeError as e:
            # shutdown 後の投入
            self._finish()
            logger.warning("Notification executor unavailable; dropping %s: %s", name, e)
            return False
        return True

    def _finish(self) -> None:
        with self._pending_lock:
            self._pending -= 1
        self._slots.release()

    def _run(self, name: str, task: Callable[..., Any], args: tuple, kwargs: Dict[str, Any]) -> None:
        try:
            task(*args, **kwargs)
        except Exception as e:
            logger.error("Notification %s failed: %s", name, e, exc_info=True)
        finally:
            self._finish()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class HttpCollaborator:
    """外部サービスへの通知 / POSTs destination updates to one collaborator."""

    def __init__(self, name: str, url: str, timeout: float = 5.0):
        self.name = name
        self.url = url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, destination: str, user_id: str) -> None:
        resp = requests.post(
            self.url,
            json={"destination": destination, "userId": user_id},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        logger.info("Notified %s about destination %s", self.name, destination)


def default_collaborators() -> List[HttpCollaborator]:
    return [
        HttpCollaborator("weather", config.WEATHER_SERVICE_URL, config.NOTIFICATION_TIMEOUT_SECONDS),
        HttpCollaborator("safety", config.SAFETY_SERVICE_URL, config.NOTIFICATION_TIMEOUT_SECONDS),
        HttpCollaborator(
            "recommendations",
            config.RECOMMENDATION_SERVICE_URL,
            config.NOTIFICATION_TIMEOUT_SECONDS,
        ),
    ]


def announce_destination(
    dispatcher: NotificationDispatcher,
    collaborators: Optional[List[Any]],
    destination: str,
    user_id: str,
) -> int:
    """
    設定済みの連携先すべてに通知を投入する。投入できた件数を返す。
    Queue a notification for every configured collaborator; returns how many
    were queued.
    """
    queued = 0
    for collaborator in collaborators or []:
        if not getattr(collaborator, "enabled", True):
            continue
        if dispatcher.submit(collaborator.name, collaborator.notify, destination, user_id):
            queued += 1
    return queued
