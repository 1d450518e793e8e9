"""
旅行プランの保存と取得。
Saving trip plans and listing them back.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import func

from dreamtrip import database
from dreamtrip.entities import TripDraft, sanitize_field
from dreamtrip.errors import InvalidRequest
from dreamtrip.models import TripPlan

logger = logging.getLogger(__name__)

PUBLIC_TRIPS_LIMIT = 10


class TripData(BaseModel):
    """
    保存リクエストの旅行データ
    Trip data accepted by the save endpoint (client field names).
    """
    destination: Optional[str] = None
    sourceLocation: Optional[str] = None
    budget: Optional[str] = None
    groupSize: Optional[str] = None
    duration: Optional[int] = Field(default=None, gt=0)
    interests: List[str] = Field(default_factory=list)
    tripPlan: Optional[Dict[str, Any]] = None

    @field_validator("destination", "sourceLocation", "budget", "groupSize", mode="before")
    @classmethod
    def _sanitize(cls, value: Any) -> Optional[str]:
        return sanitize_field(value)

    @classmethod
    def from_draft(cls, draft: TripDraft) -> "TripData":
        return cls(
            destination=draft.destination,
            sourceLocation=draft.source,
            budget=draft.budget,
            groupSize=draft.group_size,
            duration=draft.duration,
            interests=list(draft.interests),
        )


def parse_trip_data(raw: Any) -> TripData:
    if not isinstance(raw, dict):
        raise InvalidRequest("tripData must be an object", public_message="Trip data is invalid.")
    try:
        return TripData.model_validate(raw)
    except ValidationError as e:
        raise InvalidRequest(
            f"invalid tripData: {e.error_count()} errors",
            public_message="Trip data is invalid.",
        ) from e


def save_trip(
    user_id: str,
    data: TripData,
    session_id: Optional[str] = None,
    is_public: bool = False,
) -> Dict[str, Any]:
    """
    旅行プランを保存する。目的地がなければ InvalidRequest。
    Persist a trip plan; a destination is required.
    """
    if not data.destination:
        raise InvalidRequest("trip destination missing", public_message="Trip destination is required")

    db = database.SessionLocal()
    try:
        plan = TripPlan(
            user_id=user_id,
            session_id=session_id,
            destination=data.destination,
            source=data.sourceLocation,
            budget=data.budget,
            group_size=data.groupSize,
            duration_days=data.duration,
            interests=",".join(data.interests),
            itinerary=json.dumps(data.tripPlan, ensure_ascii=False) if data.tripPlan else None,
            is_public=bool(is_public),
            created_at=time.time(),
        )
        db.add(plan)
        db.commit()
        db.refresh(plan)
        logger.info("Saved trip %s for %s (%s)", plan.id, user_id, plan.destination)
        return plan.to_payload()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def list_user_trips(user_id: str) -> List[Dict[str, Any]]:
    db = database.SessionLocal()
    try:
        plans = (
            db.query(TripPlan)
            .filter(TripPlan.user_id == user_id)
            .order_by(TripPlan.created_at.desc(), TripPlan.id.desc())
            .all()
        )
        return [plan.to_payload() for plan in plans]
    finally:
        db.close()


def list_public_trips(destination: Optional[str] = None, limit: int = PUBLIC_TRIPS_LIMIT) -> List[Dict[str, Any]]:
    """
    公開された最新の旅行プラン（目的地で絞り込み可）
    Latest public trips, optionally filtered by destination (case-insensitive).
    """
    db = database.SessionLocal()
    try:
        query = db.query(TripPlan).filter(TripPlan.is_public.is_(True))
        destination = sanitize_field(destination)
        if destination:
            query = query.filter(func.lower(TripPlan.destination) == destination.lower())
        plans = query.order_by(TripPlan.created_at.desc(), TripPlan.id.desc()).limit(limit).all()
        return [plan.to_payload() for plan in plans]
    finally:
        db.close()
