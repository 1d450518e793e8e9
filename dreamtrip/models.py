"""
SQLAlchemyモデル定義。
SQLAlchemy model definitions.
"""

import time
from typing import Any, Dict

from sqlalchemy import Boolean, Column, Float, Integer, String, Text

from dreamtrip.database import Base


class TripPlan(Base):
    """
    保存された旅行プラン
    A trip plan saved by a user.

    会話で集めた情報（目的地、予算、人数など）をそのまま保持します。
    Holds the facts gathered in the conversation (destination, budget, group...).
    """
    __tablename__ = "trip_plans"

    id: Column = Column(Integer, primary_key=True, index=True)
    user_id: Column = Column(String(128), index=True, nullable=False)
    session_id: Column = Column(String(128), index=True, nullable=True)

    destination: Column = Column(String(200), index=True, nullable=False)
    source: Column = Column(String(200), nullable=True)
    budget: Column = Column(String(32), nullable=True)
    group_size: Column = Column(String(32), nullable=True)
    duration_days: Column = Column(Integer, nullable=True)
    interests: Column = Column(Text, nullable=True)   # カンマ区切り / comma separated
    itinerary: Column = Column(Text, nullable=True)   # JSON文字列 / JSON text
    is_public: Column = Column(Boolean, default=False, nullable=False)
    created_at: Column = Column(Float, default=time.time, nullable=False)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "destination": self.destination,
            "sourceLocation": self.source,
            "budget": self.budget,
            "groupSize": self.group_size,
            "duration": self.duration_days,
            "interests": [i for i in (self.interests or "").split(",") if i],
            "isPublic": bool(self.is_public),
            "createdAt": self.created_at,
        }


class PaymentTransaction(Base):
    """
    決済の試行記録（成功・保留・失敗すべて）
    Every payment attempt, whatever its outcome.
    """
    __tablename__ = "payment_transactions"

    id: Column = Column(String(64), primary_key=True)
    user_id: Column = Column(String(128), index=True, nullable=False)
    tier: Column = Column(String(32), nullable=False)
    amount: Column = Column(Integer, nullable=False)
    currency: Column = Column(String(8), nullable=False, default="XAF")
    method: Column = Column(String(16), nullable=False)
    network: Column = Column(String(16), nullable=True)
    status: Column = Column(String(16), nullable=False)
    gateway_reference: Column = Column(String(128), nullable=True)
    created_at: Column = Column(Float, default=time.time, nullable=False)
    updated_at: Column = Column(Float, default=time.time, nullable=False)
