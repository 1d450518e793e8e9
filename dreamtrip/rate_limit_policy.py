"""
利用可否の判定ポリシー（ストラテジー）。
Admission policies. The controller owns locking and persistence; a policy only
decides, given the current records, whether a trip may start.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from dreamtrip.subscription import BucketState, SubscriptionRecord

logger = logging.getLogger(__name__)

REASON_BURST = "burst"
REASON_QUOTA = "quota"


@dataclass
class PolicyOutcome:
    allowed: bool
    # 許可時に消費するかどうか / whether an allowed request consumes quota
    consume: bool
    bucket: Optional[BucketState]
    reason: Optional[str] = None
    reset_at: Optional[float] = None


class RateLimitPolicy:
    name = "base"

    def evaluate(
        self,
        record: SubscriptionRecord,
        bucket: Optional[BucketState],
        now: float,
    ) -> PolicyOutcome:
        raise NotImplementedError

    def fresh_bucket(self, now: float) -> Optional[BucketState]:
        return None


class AlwaysAllowPolicy(RateLimitPolicy):
    """
    ローカル検証用：常に許可し、何も消費しない
    Local-testing policy: admits every request and consumes nothing.
    """
    name = "always_allow"

    def evaluate(self, record, bucket, now):
        return PolicyOutcome(allowed=True, consume=False, bucket=bucket)


class TokenBucketPolicy(RateLimitPolicy):
    """
    バースト制御（トークンバケット）とサブスクリプション上限の両方を確認する
    Burst token bucket plus subscription quota; a request passes only when both
    have capacity, and nothing is taken from either unless both do.

    The bucket refills in discrete steps: `refill_tokens` every
    `refill_interval` seconds, capped at `capacity`.
    """
    name = "token_bucket"

    def __init__(self, capacity: int = 1, refill_tokens: int = 1, refill_interval: int = 86400):
        if capacity < 1 or refill_tokens < 1 or refill_interval < 1:
            raise ValueError("token bucket parameters must be positive")
        self.capacity = capacity
        self.refill_tokens = refill_tokens
        self.refill_interval = refill_interval

    def fresh_bucket(self, now: float) -> BucketState:
        return BucketState(tokens=self.capacity, last_refill=now)

    def refill(self, bucket: Optional[BucketState], now: float) -> BucketState:
        if bucket is None:
            return self.fresh_bucket(now)
        elapsed = now - bucket.last_refill
        if elapsed < self.refill_interval:
            return bucket.model_copy()
        steps = int(elapsed // self.refill_interval)
        tokens = min(self.capacity, bucket.tokens + steps * self.refill_tokens)
        if tokens >= self.capacity:
            last_refill = now
        else:
            last_refill = bucket.last_refill + steps * self.refill_interval
        return BucketState(tokens=tokens, last_refill=last_refill)

    def next_refill_at(self, bucket: BucketState) -> float:
        return bucket.last_refill + self.refill_interval

    def evaluate(self, record, bucket, now):
        current = self.refill(bucket, now)
        if current.tokens < 1:
            return PolicyOutcome(
                allowed=False,
                consume=False,
                bucket=current,
                reason=REASON_BURST,
                reset_at=self.next_refill_at(current),
            )

        if not record.has_capacity():
            return PolicyOutcome(
                allowed=False,
                consume=False,
                bucket=current,
                reason=REASON_QUOTA,
                reset_at=record.interval_end,
            )

        # 満タンから減らす場合は、そこから補充周期を数え始める
        # Draining a full bucket starts its refill clock now.
        last_refill = now if current.tokens >= self.capacity else current.last_refill
        drained = BucketState(tokens=current.tokens - 1, last_refill=last_refill)
        return PolicyOutcome(allowed=True, consume=True, bucket=drained)


def build_policy(
    name: str,
    capacity: int = 1,
    refill_tokens: int = 1,
    refill_interval: int = 86400,
) -> RateLimitPolicy:
    """
    設定値からポリシーを生成する
    Build the policy selected by configuration.
    """
    normalized = (name or "").strip().lower()
    if normalized == AlwaysAllowPolicy.name:
        logger.warning("Rate limiting is disabled (RATE_LIMIT_POLICY=always_allow).")
        return AlwaysAllowPolicy()
    if normalized and normalized != TokenBucketPolicy.name:
        raise ValueError(f"Unknown rate limit policy: {name}")
    return TokenBucketPolicy(
        capacity=capacity,
        refill_tokens=refill_tokens,
        refill_interval=refill_interval,
    )
