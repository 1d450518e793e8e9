"""
利用制限（トリップ作成の可否）を管理するモジュール。
Admission control for trip creation: per-user subscription quota plus a burst
token bucket, evaluated and persisted under a per-user lock.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from dreamtrip import redis_client
from dreamtrip.errors import InvalidRequest, UnknownUser
from dreamtrip.rate_limit_policy import RateLimitPolicy, TokenBucketPolicy
from dreamtrip.subscription import (
    PLANS,
    BucketState,
    SubscriptionRecord,
    Tier,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def format_reset_time(value: float) -> str:
    """人が読めるリセット時刻 / Human-readable reset time."""
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


@dataclass
class AdmissionDecision:
    allowed: bool
    remaining: Optional[int]
    reset_at: float
    tier: Tier
    plan_limits: Dict[str, Any]
    reason: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.remaining is None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "unlimited": self.unlimited,
            "resetAt": format_timestamp(self.reset_at),
            "tier": self.tier.value,
        }

    def denial_message(self) -> str:
        reset_text = format_reset_time(self.reset_at)
        if self.reason == "burst":
            return (
                f"You can only start one new trip per day. Try again after {reset_text}, "
                "or upgrade your plan for more trips."
            )
        trips = self.plan_limits.get("trips")
        period = self.plan_limits.get("period", "")
        return (
            f"You have used all {trips} trips included in your plan {period}. "
            f"Your quota resets at {reset_text}. Upgrade your plan to create more trips."
        )

    def to_denial_payload(self) -> Dict[str, Any]:
        payload = self.to_payload()
        payload.update({
            "message": self.denial_message(),
            "planLimits": self.plan_limits,
            "reason": self.reason,
            "upgradeUrl": "/pricing",
        })
        return payload


def subscription_key(user_id: str) -> str:
    return redis_client.build_key("user", user_id, "subscription")


def bucket_key(user_id: str) -> str:
    return redis_client.build_key("user", user_id, "burst_bucket")


class AdmissionController:
    """
    トリップ作成の可否を判定し、利用数を記録する
    Decides whether a user may start a new trip and records consumption.

    サブスクリプション記録はこのクラス経由でのみ更新されます。
    Subscription records are only ever mutated through this class.
    """

    def __init__(
        self,
        policy: Optional[RateLimitPolicy] = None,
        clock: Clock = time.time,
        lock_timeout: float = 5.0,
    ):
        self.policy = policy or TokenBucketPolicy()
        self.clock = clock
        self.lock_timeout = lock_timeout

    def _lock(self, user_id: str):
        return redis_client.document_lock(
            f"admission:{user_id}",
            timeout=max(self.lock_timeout * 2, 1.0),
            blocking_timeout=self.lock_timeout,
        )

    def _load(self, user_id: str) -> Tuple[Optional[SubscriptionRecord], Optional[BucketState]]:
        record_doc = redis_client.get_document(subscription_key(user_id))
        bucket_doc = redis_client.get_document(bucket_key(user_id))
        record = SubscriptionRecord.from_document(record_doc) if record_doc else None
        bucket = BucketState.from_document(bucket_doc) if bucket_doc else None
        return record, bucket

    def _save_record(self, record: SubscriptionRecord) -> None:
        redis_client.save_document(subscription_key(record.user_id), record.to_document())

    def _save_bucket(self, user_id: str, bucket: Optional[BucketState]) -> None:
        if bucket is not None:
            redis_client.save_document(bucket_key(user_id), bucket.to_document())

    @staticmethod
    def _require_user_id(user_id: Any) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidRequest("user id is required", public_message="A user identifier is required.")
        return user_id.strip()

    def ensure_user(self, user_id: str) -> SubscriptionRecord:
        """
        既定（basic）プランの記録を作成する。既に存在すればそのまま返す。
        Create the default basic-tier record; idempotent.
        """
        user_id = self._require_user_id(user_id)
        with self._lock(user_id):
            record, _ = self._load(user_id)
            if record is None:
                record = SubscriptionRecord.new_default(user_id, self.clock())
                self._save_record(record)
                logger.info("Created subscription record for %s (tier=%s)", user_id, record.tier.value)
            return record

    def has_user(self, user_id: str) -> bool:
        user_id = self._require_user_id(user_id)
        return redis_client.get_document(subscription_key(user_id)) is not None

    def check_and_consume(self, user_id: str) -> AdmissionDecision:
        """
        利用可否を確認し、許可された場合は1回分を消費する
        Check admission and, when allowed, consume one trip.

        1. レコードの取得（なければ basic で作成）
        2. 期間終了ならリセット
        3. ポリシーで判定（バースト → 上限）
        4. 許可時のみ消費して保存
        1) Load the record (lazily created on the basic tier)
        2) Roll the interval over when it has elapsed
        3) Let the policy decide (burst bucket, then quota)
        4) Consume and persist only when allowed
        """
        user_id = self._require_user_id(user_id)
        with self._lock(user_id):
            now = self.clock()
            record, bucket = self._load(user_id)
            dirty = False
            if record is None:
                record = SubscriptionRecord.new_default(user_id, now)
                dirty = True
            if record.roll_over(now):
                dirty = True

            outcome = self.policy.evaluate(record, bucket, now)
            if outcome.allowed and outcome.consume:
                record.consumed += 1
                record.updated_at = now
                dirty = True
            if dirty:
                self._save_record(record)
            if outcome.bucket is not None and outcome.bucket != bucket:
                self._save_bucket(user_id, outcome.bucket)

        decision = AdmissionDecision(
            allowed=outcome.allowed,
            remaining=record.remaining(),
            reset_at=outcome.reset_at if outcome.reset_at is not None else record.interval_end,
            tier=record.tier,
            plan_limits=record.plan_limits(),
            reason=outcome.reason,
        )
        logger.info(
            "Admission %s for %s (tier=%s, remaining=%s, reason=%s)",
            "allowed" if decision.allowed else "denied",
            user_id,
            decision.tier.value,
            decision.remaining,
            decision.reason,
        )
        return decision

    def peek(self, user_id: str) -> AdmissionDecision:
        """
        消費せずに現在の状態を返す（ロールオーバーも保存しない）
        Report the current status without consuming or persisting anything.
        """
        user_id = self._require_user_id(user_id)
        now = self.clock()
        record, bucket = self._load(user_id)
        if record is None:
            record = SubscriptionRecord.new_default(user_id, now)
        else:
            record = record.model_copy()
            record.roll_over(now)
        outcome = self.policy.evaluate(record, bucket, now)
        return AdmissionDecision(
            allowed=outcome.allowed,
            remaining=record.remaining(),
            reset_at=outcome.reset_at if outcome.reset_at is not None else record.interval_end,
            tier=record.tier,
            plan_limits=record.plan_limits(),
            reason=outcome.reason,
        )

    def record_upgrade(
        self,
        user_id: str,
        tier: Tier,
        quota: Optional[int],
        interval_seconds: int,
    ) -> SubscriptionRecord:
        """
        支払い完了後にプランを切り替え、利用数と期間をリセットする
        Apply a paid upgrade: replace the plan fields, reset the counter and
        interval, and refill the burst bucket.
        """
        user_id = self._require_user_id(user_id)
        if quota is not None and quota < 0:
            raise InvalidRequest("quota must be non-negative")
        if interval_seconds <= 0:
            raise InvalidRequest("interval must be positive")

        with self._lock(user_id):
            now = self.clock()
            record, _ = self._load(user_id)
            if record is None:
                raise UnknownUser(f"no subscription record for {user_id}")
            record.tier = tier
            record.quota = quota
            record.interval_seconds = interval_seconds
            record.consumed = 0
            record.interval_start = now
            record.updated_at = now
            self._save_record(record)
            self._save_bucket(user_id, self.policy.fresh_bucket(now))

        logger.info("Upgraded %s to %s", user_id, tier.value)
        return record

    def upgrade_to_plan(self, user_id: str, tier: Tier) -> SubscriptionRecord:
        plan = PLANS[tier]
        return self.record_upgrade(user_id, plan.tier, plan.quota, plan.interval_seconds)
