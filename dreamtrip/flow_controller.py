"""
旅行計画チャットの1ターン処理（利用制限、LLM呼び出し、ステージ遷移）。
One turn of the trip-planning conversation: admission, the model call, stage
clamping, entity merging and destination fan-out.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from dreamtrip import config, redis_client
from dreamtrip.entities import TripDraft, parse_selection, same_place, sanitize_field
from dreamtrip.errors import QuotaExceeded, UpstreamModelError
from dreamtrip.flow_prompts import build_system_prompt
from dreamtrip.limit_manager import AdmissionController, AdmissionDecision
from dreamtrip.notifications import NotificationDispatcher, announce_destination
from dreamtrip.openai_client import complete_json
from dreamtrip.session_request_lock import exclusive_turn
from dreamtrip.stages import Stage, advance, automation_summary, normalize_tag, stage_data

logger = logging.getLogger(__name__)

CLARIFICATION_MESSAGE = (
    "I'd love to help you plan your trip! Could you tell me a little about "
    "where you would like to go?"
)

QUOTA_PER_TRIP = "trip"
QUOTA_PER_TURN = "turn"

LLMCall = Callable[[List[Dict[str, str]]], str]


@dataclass
class TurnResult:
    status: int
    payload: Dict[str, Any] = field(default_factory=dict)


class ModelReply(BaseModel):
    """LLMのJSON応答 / The JSON object the model must answer with."""
    resp: str = Field(min_length=1)
    ui: Optional[str] = ""
    destination: Optional[Any] = None
    source: Optional[Any] = None


class SessionState(BaseModel):
    furthest_stage: Optional[Stage] = None
    draft: TripDraft = Field(default_factory=TripDraft)
    admitted: bool = False
    turns: int = 0

    @property
    def has_progress(self) -> bool:
        return self.furthest_stage is not None


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].startswith("```"):
        return "\n".join(lines[1:-1]).strip()
    return stripped


def _extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    文字列からJSONオブジェクトを抽出して返す
    Parse a JSON object out of free-form model text.
    """
    if not text:
        return None
    cleaned = _strip_code_fences(str(text))
    try:
        obj = json.loads(cleaned)
        return obj if isinstance(obj, dict) else None
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            obj = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            return None
        return obj if isinstance(obj, dict) else None


def parse_model_reply(raw: str) -> ModelReply:
    data = _extract_json_object(raw)
    if data is None:
        raise UpstreamModelError("model reply is not a JSON object")
    try:
        reply = ModelReply.model_validate(data)
    except ValidationError as e:
        raise UpstreamModelError(f"model reply has an invalid shape: {e.error_count()} errors") from e
    if not reply.resp.strip():
        raise UpstreamModelError("model reply has an empty resp")
    return reply


def clean_history(messages: Any) -> List[Dict[str, Any]]:
    """
    クライアント履歴を検証・整形する。system ロールは破棄します。
    Keep only well-formed user/assistant messages; client `system` messages
    are dropped and long contents are truncated.
    """
    if not isinstance(messages, list):
        return []
    cleaned: List[Dict[str, Any]] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        content = message.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str):
            continue
        content = content.strip()
        if not content:
            continue
        cleaned.append({"role": role, "content": content[: config.MAX_MESSAGE_CHARS]})
    return cleaned


def quota_exceeded_payload(decision: AdmissionDecision) -> Dict[str, Any]:
    payload = decision.to_denial_payload()
    payload.update({
        "resp": decision.denial_message(),
        "ui": "pricing-redirect",
        "upgradeRequired": True,
        "error": QuotaExceeded.code,
    })
    return payload


def model_error_payload(err: UpstreamModelError) -> Dict[str, Any]:
    return {"resp": err.public_message, "ui": "", "error": err.code}


def session_key(key: str) -> str:
    return redis_client.build_key("session", key, "flow")


class FlowController:
    """
    会話フロー制御。LLM呼び出しと通知先は差し替え可能です。
    Conversation flow controller; the model call, admission controller,
    dispatcher and collaborators are injected.
    """

    def __init__(
        self,
        admission: AdmissionController,
        llm: Optional[LLMCall] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        collaborators: Optional[List[Any]] = None,
        quota_consumption: str = QUOTA_PER_TRIP,
        session_ttl: Optional[int] = None,
    ):
        if quota_consumption not in (QUOTA_PER_TRIP, QUOTA_PER_TURN):
            raise ValueError(f"Unknown quota consumption mode: {quota_consumption}")
        self.admission = admission
        self.llm = llm or complete_json
        self.dispatcher = dispatcher
        self.collaborators = collaborators or []
        self.quota_consumption = quota_consumption
        self.session_ttl = session_ttl if session_ttl is not None else redis_client.REDIS_SESSION_TTL_SECONDS

    def load_state(self, key: str) -> SessionState:
        document = redis_client.get_document(session_key(key))
        if not document:
            return SessionState()
        try:
            return SessionState.model_validate(document)
        except ValidationError:
            logger.error("Discarding invalid session state for %s", key)
            return SessionState()

    def save_state(self, key: str, state: SessionState) -> None:
        redis_client.save_document(session_key(key), state.model_dump(mode="json"), ttl=self.session_ttl)

    def _should_charge(self, state: SessionState) -> bool:
        # トリップ単位：新しい会話（未承認のセッション）でのみ消費
        # Per trip: only a session that has not been admitted yet is charged.
        if self.quota_consumption == QUOTA_PER_TURN:
            return True
        return not state.admitted

    def _admit(self, user_id: str) -> AdmissionDecision:
        decision = self.admission.check_and_consume(user_id)
        if not decision.allowed:
            raise QuotaExceeded(decision, detail=f"admission denied for {user_id} ({decision.reason})")
        return decision

    def _call_model(self, furthest_stage: Optional[Stage], history: List[Dict[str, Any]]) -> ModelReply:
        messages = [{"role": "system", "content": build_system_prompt(furthest_stage)}]
        recent = history[-config.MAX_HISTORY_MESSAGES:]
        messages.extend({"role": m["role"], "content": m["content"]} for m in recent)
        try:
            raw = self.llm(messages)
        except UpstreamModelError:
            raise
        except Exception as e:
            logger.error("Model call failed: %s", e, exc_info=True)
            raise UpstreamModelError(f"model call failed: {type(e).__name__}") from e
        return parse_model_reply(raw)

    def handle_turn(self, user_id: str, messages: Any, session_id: Optional[str] = None) -> TurnResult:
        """
        チャットの1ターンを処理する
        Handle one chat turn.

        1. 履歴の検証（ユーザー発言がなければ確認メッセージ）
        2. 会話ロックの取得と状態の読み込み
        3. 利用制限の確認（モデル呼び出し前）
        4. LLM呼び出しとステージの制限
        5. 旅行情報のマージと通知、状態保存
        1) Validate the history (clarify when there is no user message)
        2) Take the conversation lock and load the session state
        3) Admission, before any model call
        4) Call the model and clamp the proposed stage
        5) Merge trip facts, fan out, persist
        """
        history = clean_history(messages)
        user_messages = [m for m in history if m["role"] == "user"]
        if not user_messages:
            return TurnResult(200, {"resp": CLARIFICATION_MESSAGE, "ui": ""})

        key = session_id or user_id
        with exclusive_turn(key):
            state = self.load_state(key)
            first_turn = len(user_messages) == 1
            if first_turn and state.has_progress:
                # 新しい会話の開始
                state = SessionState()

            if self._should_charge(state):
                self._admit(user_id)
                if not state.admitted:
                    state.admitted = True
                    self.save_state(key, state)

            # 進捗はサーバー側の状態のみを信頼する（クライアントのUIタグは使わない）
            # Progress comes from stored state only; client-sent ui tags are ignored.
            previous = state.furthest_stage
            reply = self._call_model(previous, history)
            stage = advance(previous, normalize_tag(reply.ui))

            updates = parse_selection(user_messages[-1]["content"])
            updates["destination"] = sanitize_field(reply.destination)
            updates["source"] = sanitize_field(reply.source)
            previous_destination = state.draft.destination
            changed = state.draft.merge(**updates)
            destination_moved = "destination" in changed and not same_place(
                previous_destination, state.draft.destination
            )

            state.furthest_stage = stage
            state.turns += 1
            self.save_state(key, state)

        if destination_moved and self.dispatcher is not None:
            announce_destination(self.dispatcher, self.collaborators, state.draft.destination, user_id)

        logger.info("Turn for %s: stage=%s changed=%s", key, stage.value, changed)
        return TurnResult(200, self._response_payload(reply, stage, state.draft))

    def _response_payload(self, reply: ModelReply, stage: Stage, draft: TripDraft) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "resp": reply.resp.strip(),
            "ui": stage.value,
            "stageData": stage_data(stage, draft),
            "tripDraft": draft.to_payload(),
        }
        if draft.destination:
            payload["destination"] = draft.destination
        if draft.source:
            payload["source"] = draft.source
        if stage is Stage.FINAL_PLAN:
            payload["automation"] = automation_summary()
        return payload

    def session_draft(self, key: str) -> TripDraft:
        return self.load_state(key).draft
