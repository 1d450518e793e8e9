"""
旅行計画の会話ステージと、その遷移ルール。
Conversation stages of the trip planner and the transition rule that keeps the
flow moving forward one step at a time.
"""

from enum import Enum
from typing import Any, Callable, Dict, Optional

from dreamtrip.entities import (
    BUDGET_OPTIONS,
    DURATION_OPTIONS,
    GROUP_SIZE_OPTIONS,
    INTEREST_OPTIONS,
    TripDraft,
)


class Stage(str, Enum):
    WELCOME = "welcome"
    ASK_SOURCE = "ask-source"
    ASK_DESTINATION = "ask-destination"
    BUDGET = "budget"
    GROUP_SIZE = "group-size"
    DURATION = "duration"
    INTERESTS = "interests"
    HOTELS = "hotels"
    GALLERY = "gallery"
    MAP = "map"
    VIRTUAL_TOUR = "virtual-tour"
    FINAL_PLAN = "final-plan"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER = list(Stage)

# 旧クライアントのUIタグ名
# Tag names used by older clients
_ALIASES = {
    "welcome-consultation": Stage.WELCOME,
    "budgeting": Stage.BUDGET,
    "groupsize": Stage.GROUP_SIZE,
    "trip-duration": Stage.DURATION,
    "trip-details": Stage.INTERESTS,
    "trip-gallery": Stage.GALLERY,
    "trip-map": Stage.MAP,
}


def normalize_tag(tag: Any) -> Optional[Stage]:
    """
    UIタグをステージに変換する。空・不明なタグは None（提案なし）。
    Map a UI tag to a stage; empty or unknown tags mean "no proposal".
    """
    if not tag or not isinstance(tag, str):
        return None
    cleaned = tag.strip()
    try:
        return Stage(cleaned.lower())
    except ValueError:
        return _ALIASES.get(cleaned.lower())


def advance(previous: Optional[Stage], proposed: Optional[Stage]) -> Stage:
    """
    提案されたステージを前方1ステップまでに制限する
    Clamp a proposed stage so the flow never regresses and never skips ahead.

    - 前のステージがない場合は welcome
    - 提案なし、または後退する提案は前のステージのまま
    - 2ステップ以上先の提案は次のステージ
    - no previous stage: welcome
    - no proposal, or a proposal behind the previous stage: stay put
    - more than one step ahead: the single next stage
    """
    if previous is None:
        return Stage.WELCOME
    if proposed is None or proposed.position <= previous.position:
        return previous
    if proposed.position > previous.position + 1:
        return STAGE_ORDER[previous.position + 1]
    return proposed


def _no_data(draft: TripDraft) -> Dict[str, Any]:
    return {}


def _destination_data(draft: TripDraft) -> Dict[str, Any]:
    return {"sourceLocation": draft.source}


def _budget_data(draft: TripDraft) -> Dict[str, Any]:
    return {"options": BUDGET_OPTIONS, "destination": draft.destination}


def _group_size_data(draft: TripDraft) -> Dict[str, Any]:
    return {"options": GROUP_SIZE_OPTIONS}


def _duration_data(draft: TripDraft) -> Dict[str, Any]:
    return {"options": DURATION_OPTIONS}


def _interests_data(draft: TripDraft) -> Dict[str, Any]:
    return {"options": INTEREST_OPTIONS, "selected": list(draft.interests)}


def _destination_only(draft: TripDraft) -> Dict[str, Any]:
    return {"destination": draft.destination}


def _hotels_data(draft: TripDraft) -> Dict[str, Any]:
    return {
        "destination": draft.destination,
        "budget": draft.budget,
        "groupSize": draft.group_size,
    }


def _map_data(draft: TripDraft) -> Dict[str, Any]:
    return {"destination": draft.destination, "sourceLocation": draft.source}


def _final_plan_data(draft: TripDraft) -> Dict[str, Any]:
    return {"tripDraft": draft.to_payload()}


StageDataBuilder = Callable[[TripDraft], Dict[str, Any]]

STAGE_DATA_BUILDERS: Dict[Stage, StageDataBuilder] = {
    Stage.WELCOME: _no_data,
    Stage.ASK_SOURCE: _no_data,
    Stage.ASK_DESTINATION: _destination_data,
    Stage.BUDGET: _budget_data,
    Stage.GROUP_SIZE: _group_size_data,
    Stage.DURATION: _duration_data,
    Stage.INTERESTS: _interests_data,
    Stage.HOTELS: _hotels_data,
    Stage.GALLERY: _destination_only,
    Stage.MAP: _map_data,
    Stage.VIRTUAL_TOUR: _destination_only,
    Stage.FINAL_PLAN: _final_plan_data,
}

_missing = set(Stage) - set(STAGE_DATA_BUILDERS)
if _missing:
    raise RuntimeError(f"No stage data builder for: {sorted(stage.value for stage in _missing)}")


def stage_data(stage: Stage, draft: TripDraft) -> Dict[str, Any]:
    return STAGE_DATA_BUILDERS[stage](draft)


AUTOMATION_SUMMARY = {
    "booking": "Auto-booking available for hotels and flights",
    "tracking": "Real-time expense tracking enabled",
    "safety": "Emergency monitoring activated",
    "notifications": "Smart alerts configured",
}


def automation_summary() -> Dict[str, str]:
    return dict(AUTOMATION_SUMMARY)
