"""
会話から抽出される旅行情報（下書き）の定義とマージ処理。
The trip draft accumulated from a conversation, and the parsers that feed it.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

MAX_FIELD_LENGTH = 200

BUDGET_OPTIONS = [
    {"id": "low", "label": "Budget Friendly", "range": "$500 - $1,500"},
    {"id": "medium", "label": "Moderate", "range": "$1,500 - $5,000"},
    {"id": "high", "label": "Luxury", "range": "$5,000+"},
]

GROUP_SIZE_OPTIONS = [
    {"id": "solo", "label": "Solo Travel", "count": "1 person"},
    {"id": "couple", "label": "Couple", "count": "2 people"},
    {"id": "family", "label": "Family", "count": "3-6 people"},
    {"id": "friends", "label": "Friends", "count": "3-8 people"},
]

DURATION_OPTIONS = [
    {"days": 3, "label": "Weekend Getaway"},
    {"days": 7, "label": "One Week"},
    {"days": 14, "label": "Two Weeks"},
    {"days": 21, "label": "Three Weeks"},
    {"days": 30, "label": "One Month"},
]

INTEREST_OPTIONS = [
    {"id": "sightseeing", "label": "Sightseeing"},
    {"id": "culture", "label": "Cultural Experiences"},
    {"id": "adventure", "label": "Adventure Activities"},
    {"id": "food", "label": "Food & Dining"},
    {"id": "nightlife", "label": "Nightlife"},
    {"id": "shopping", "label": "Shopping"},
    {"id": "relaxation", "label": "Relaxation"},
    {"id": "history", "label": "Historical Sites"},
]

SELECTION_RE = re.compile(
    r"^\s*I selected:\s*(?P<value>.+?)\s+for\s+(?P<kind>budget|group size|trip duration|trip interests)\s*\.?\s*$",
    re.IGNORECASE | re.DOTALL,
)


def sanitize_field(value: Any, max_length: int = MAX_FIELD_LENGTH) -> Optional[str]:
    """
    制御文字の除去、空白の正規化、最大長の制限を行う
    Strip control characters, collapse whitespace and cap the length.
    """
    if value is None or not isinstance(value, (str, int, float)):
        return None
    text = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", str(value))
    text = " ".join(text.split())
    if not text:
        return None
    return text[:max_length]


def _match_option(value: str, options: List[Dict[str, Any]]) -> Optional[str]:
    lowered = value.strip().lower()
    for option in options:
        if lowered in (option["id"], option["label"].lower()):
            return option["id"]
    return None


def _parse_duration(value: str) -> Optional[int]:
    lowered = value.strip().lower()
    for option in DURATION_OPTIONS:
        if lowered == option["label"].lower():
            return option["days"]
    digits = re.search(r"\d+", value)
    if digits:
        days = int(digits.group(0))
        return days if days > 0 else None
    return None


def _parse_interests(value: str) -> List[str]:
    interests: List[str] = []
    for part in re.split(r"\s*,\s*", value):
        if not part:
            continue
        matched = _match_option(part, INTEREST_OPTIONS)
        interest = matched or sanitize_field(part.lower(), max_length=60)
        if interest and interest not in interests:
            interests.append(interest)
    return interests


class TripDraft(BaseModel):
    """
    会話から集めた旅行情報。値は上書きされるが、消去はされない。
    Trip facts gathered so far. Fields are overwritten, never cleared.
    """
    destination: Optional[str] = None
    source: Optional[str] = None
    budget: Optional[str] = None
    group_size: Optional[str] = None
    duration: Optional[int] = Field(default=None, gt=0)
    interests: List[str] = Field(default_factory=list)

    def merge(self, **updates: Any) -> List[str]:
        """
        None 以外の値を上書きする。変更されたフィールド名を返す。
        Apply non-empty updates (last write wins); returns the changed fields.
        """
        changed: List[str] = []
        for field_name, value in updates.items():
            if field_name not in type(self).model_fields:
                raise KeyError(field_name)
            if value is None or value == [] or value == "":
                continue
            if field_name == "interests":
                value = sorted(set(value))
            if getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed.append(field_name)
        return changed

    def to_payload(self) -> Dict[str, Any]:
        return {
            "destination": self.destination,
            "sourceLocation": self.source,
            "budget": self.budget,
            "groupSize": self.group_size,
            "duration": self.duration,
            "interests": list(self.interests),
        }


def parse_selection(message: str) -> Dict[str, Any]:
    """
    「I selected: <label> for <type>」形式のユーザー選択を解析する
    Parse a UI selection message such as "I selected: Moderate for budget".
    """
    if not message:
        return {}
    match = SELECTION_RE.match(message)
    if not match:
        return {}
    value = match.group("value")
    kind = match.group("kind").lower()
    if kind == "budget":
        return {"budget": _match_option(value, BUDGET_OPTIONS)}
    if kind == "group size":
        return {"group_size": _match_option(value, GROUP_SIZE_OPTIONS)}
    if kind == "trip duration":
        return {"duration": _parse_duration(value)}
    return {"interests": _parse_interests(value)}


def same_place(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return left is right
    return left.strip().casefold() == right.strip().casefold()
