"""
サブスクリプションの種別・プラン・利用記録の定義。
Subscription tiers, the plan catalogue and the persisted per-user records.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

DAY_SECONDS = 86400

# 無制限を表す番兵値（大きな数値では表現しない）
# Sentinel for "no quota"; never modelled as a large number.
UNLIMITED: Optional[int] = None
UNLIMITED_MARKER = "unlimited"


class Tier(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class IntervalLength(str, Enum):
    DAY = "day"
    MONTH = "month"
    TWO_MONTHS = "two_months"
    YEAR = "year"

    @property
    def seconds(self) -> int:
        return _INTERVAL_SECONDS[self]


_INTERVAL_SECONDS = {
    IntervalLength.DAY: DAY_SECONDS,
    IntervalLength.MONTH: 30 * DAY_SECONDS,
    IntervalLength.TWO_MONTHS: 60 * DAY_SECONDS,
    IntervalLength.YEAR: 365 * DAY_SECONDS,
}

_TIER_ALIASES = {"free": Tier.BASIC}


class Plan(BaseModel):
    tier: Tier
    name: str
    quota: Optional[int] = Field(default=UNLIMITED, ge=0)
    interval: IntervalLength
    price: int = Field(ge=0)
    currency: str = "XAF"
    period_label: str

    @property
    def interval_seconds(self) -> int:
        return self.interval.seconds

    def limits(self) -> Dict[str, Any]:
        return {
            "trips": UNLIMITED_MARKER if self.quota is UNLIMITED else self.quota,
            "period": self.period_label,
        }

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.tier.value,
            "name": self.name,
            "price": self.price,
            "currency": self.currency,
            "limits": self.limits(),
        }


PLANS: Dict[Tier, Plan] = {
    Tier.BASIC: Plan(
        tier=Tier.BASIC, name="Basic", quota=1, interval=IntervalLength.DAY,
        price=0, period_label="per day",
    ),
    Tier.PRO: Plan(
        tier=Tier.PRO, name="Pro", quota=10, interval=IntervalLength.MONTH,
        price=5000, period_label="per month",
    ),
    Tier.PREMIUM: Plan(
        tier=Tier.PREMIUM, name="Premium", quota=20, interval=IntervalLength.TWO_MONTHS,
        price=9000, period_label="per 2 months",
    ),
    Tier.ENTERPRISE: Plan(
        tier=Tier.ENTERPRISE, name="Enterprise", quota=UNLIMITED, interval=IntervalLength.YEAR,
        price=25000, period_label="per year",
    ),
}

DEFAULT_TIER = Tier.BASIC


def parse_tier(value: Any) -> Optional[Tier]:
    """
    ユーザー入力のプラン名を正規化する（不明なら None）
    Normalize a tier name from user input; None when it is not a known tier.
    """
    if not value or not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in _TIER_ALIASES:
        return _TIER_ALIASES[normalized]
    try:
        return Tier(normalized)
    except ValueError:
        return None


class SubscriptionRecord(BaseModel):
    """
    ユーザーごとのサブスクリプション利用記録
    Per-user subscription record. Invariant: consumed <= quota unless unlimited.
    """
    user_id: str
    tier: Tier = DEFAULT_TIER
    quota: Optional[int] = Field(default=1, ge=0)
    interval_seconds: int = Field(default=DAY_SECONDS, gt=0)
    consumed: int = Field(default=0, ge=0)
    interval_start: float
    created_at: float
    updated_at: float

    @classmethod
    def new_default(cls, user_id: str, now: float) -> "SubscriptionRecord":
        plan = PLANS[DEFAULT_TIER]
        return cls(
            user_id=user_id,
            tier=plan.tier,
            quota=plan.quota,
            interval_seconds=plan.interval_seconds,
            consumed=0,
            interval_start=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def unlimited(self) -> bool:
        return self.quota is UNLIMITED

    @property
    def interval_end(self) -> float:
        return self.interval_start + self.interval_seconds

    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(self.quota - self.consumed, 0)

    def has_capacity(self) -> bool:
        return self.unlimited or self.consumed < self.quota

    def roll_over(self, now: float) -> bool:
        """
        期間が終了していれば利用数をリセットする。リセットした場合は True。
        Reset the counter when the interval has elapsed; True when it did.
        """
        if now >= self.interval_end:
            self.consumed = 0
            self.interval_start = now
            self.updated_at = now
            return True
        return False

    def plan_limits(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "trips": UNLIMITED_MARKER if self.unlimited else self.quota,
            "period": PLANS[self.tier].period_label,
        }

    def to_document(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if self.unlimited:
            data["quota"] = UNLIMITED_MARKER
        return data

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "SubscriptionRecord":
        data = dict(document)
        if data.get("quota") == UNLIMITED_MARKER:
            data["quota"] = UNLIMITED
        return cls.model_validate(data)


class BucketState(BaseModel):
    """バースト制御用トークンバケットの状態 / Burst limiter token bucket."""
    tokens: int = Field(ge=0)
    last_refill: float

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "BucketState":
        return cls.model_validate(document)
