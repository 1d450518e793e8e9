"""
OpenAI互換クライアントの生成と再利用、およびチャット補完の呼び出し。
Factory for an OpenAI-compatible client (OpenRouter by default) and the JSON
chat-completion call used by the flow controller.
"""

import logging
from typing import Any, Dict, List, Optional

import openai

from dreamtrip import config
from dreamtrip.errors import UpstreamModelError

logger = logging.getLogger(__name__)

_client: Optional[openai.OpenAI] = None


def get_llm_client() -> openai.OpenAI:
    """
    クライアントを生成・再利用する
    Create and reuse a singleton client.
    """
    global _client
    if _client is None:
        if not config.LLM_API_KEY:
            raise UpstreamModelError("LLM_API_KEY / OPENROUTER_API_KEY is not configured")
        _client = openai.OpenAI(
            base_url=config.LLM_BASE_URL,
            api_key=config.LLM_API_KEY,
            timeout=config.LLM_TIMEOUT_SECONDS,
            max_retries=config.LLM_MAX_RETRIES,
        )
    return _client


def _extract_message_content(completion: Any) -> str:
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None) or ""


def complete_json(messages: List[Dict[str, str]], timeout: Optional[float] = None) -> str:
    """
    JSON形式の応答を要求してチャット補完を実行する
    Run a chat completion that must answer with a JSON object.

    Every client-side failure (timeout, connection, API status) surfaces as
    `UpstreamModelError`.
    """
    client = get_llm_client()
    try:
        completion = client.chat.completions.create(
            model=config.LLM_MODEL_NAME,
            messages=messages,
            response_format={"type": "json_object"},
            temperature=config.LLM_TEMPERATURE,
            max_tokens=config.LLM_MAX_TOKENS,
            timeout=timeout if timeout is not None else config.LLM_TIMEOUT_SECONDS,
        )
    except openai.APITimeoutError as e:
        logger.warning("LLM request timed out: %s", e)
        raise UpstreamModelError("model call timed out") from e
    except openai.OpenAIError as e:
        logger.error("LLM request failed: %s", e)
        raise UpstreamModelError(f"model call failed: {type(e).__name__}") from e

    content = _extract_message_content(completion)
    if not content:
        raise UpstreamModelError("model returned an empty reply")
    return content
