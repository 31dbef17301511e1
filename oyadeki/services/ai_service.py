import json
import os
import re
from typing import Any, Optional

from oyadeki.config import settings
from oyadeki.logging_config import get_logger
from oyadeki.services.llm import GeminiProvider

logger = get_logger("ai_service")

CLASSIFY_TIMEOUT_SECONDS = float(os.environ.get("CLASSIFY_TIMEOUT_SECONDS", "8"))
DIALOGUE_TIMEOUT_SECONDS = float(os.environ.get("DIALOGUE_TIMEOUT_SECONDS", "20"))

# Affirmations accepted on the confirmation card. Whole-reply matches only.
YES_CONFIRMATION_PHRASES = {
    "はい",
    "はい そうです",
    "はいそうです",
    "そう",
    "そうです",
    "そうそう",
    "そうだよ",
    "うん",
    "ええ",
    "正解",
    "合ってる",
    "あってる",
    "合ってます",
    "あってます",
    "それです",
    "ok",
    "okay",
    "yes",
    "yep",
    "yeah",
    "correct",
    "right",
    "that's right",
    "thats right",
    "that's it",
}

NO_CONFIRMATION_PHRASES = {
    "いいえ",
    "違う",
    "ちがう",
    "違います",
    "ちがいます",
    "違うよ",
    "ううん",
    "no",
    "nope",
    "wrong",
    "not it",
}

CANCEL_PHRASES = {
    "キャンセル",
    "やめる",
    "やめて",
    "やめます",
    "終了",
    "おわり",
    "cancel",
    "stop",
    "quit",
}

# Global LLM provider instance
_llm_provider = None


def get_llm_provider() -> GeminiProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = GeminiProvider(
            api_key=settings.gemini_api_key,
            default_model=settings.gemini_model,
            fallback_models=settings.fallback_models,
        )
    return _llm_provider


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    # "はい、そうです！" -> "はい そうです", "yes." -> "yes"
    normalized = re.sub(r"[、。，,.!！?？]+", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    normalized = re.sub(r"^[^\w']+|[^\w']+$", "", normalized)
    return normalized


def classify_confirmation(text: str) -> str:
    """Classify a reply to a yes/no prompt as yes/no/unknown (literal match)."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return "unknown"

    if normalized in YES_CONFIRMATION_PHRASES:
        return "yes"
    if normalized in NO_CONFIRMATION_PHRASES:
        return "no"

    if re.search(r"\b(no|nope|wrong)\b", normalized):
        return "no"
    if any(phrase in normalized for phrase in NO_CONFIRMATION_PHRASES if not phrase.isascii()):
        return "no"

    return "unknown"


def is_cancel_message(text: str) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized:
        return False
    return normalized in CANCEL_PHRASES


def parse_json_response(content: str) -> Optional[Any]:
    """Parse model JSON output, tolerating a surrounding markdown code fence."""
    if not content:
        return None
    cleaned = content.strip()
    fence = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
    if fence:
        cleaned = fence.group(1)
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"LLM JSON decode failed: {e}", extra={"context": {"content": cleaned[:200]}})
        return None


def format_history(history: list[dict], limit: int) -> str:
    """Render the most recent turns for a prompt. Storage keeps the full history."""
    recent = history[-limit:] if limit > 0 else []
    return json.dumps(
        [{"role": turn.get("speaker"), "text": turn.get("text")} for turn in recent],
        ensure_ascii=False,
    )
