"""
classifier.py
-------------
Intent classification for chat turns and the chat-mode decision that follows it.

`classify_user_intent` never raises: rule fast path first, then a single LLM
call, and a fixed `simple_search` fallback on any failure.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Sequence

from ..models import (
    MODE_DEEP,
    MODE_TEXT,
    ChatMessage,
    IntentClassificationResult,
    ModeResolution,
)
from .guardrails import should_bypass_classifier
from .nodes import parse_json_block
from .prompts import QUESTION_CLASSIFIER, load_prompt

logger = logging.getLogger(__name__)

MAX_CONTEXT_MESSAGES = 6
MAX_CONTEXT_CHARS = 280
RULE_CONFIDENCE = 0.85
FALLBACK_REASON = "LLM 分类失败，回落到默认检索"

_INTENTS = {"simple_search", "deep_search", "other"}


def _fallback(reason: str = FALLBACK_REASON, confidence: float = 0.5, raw: Optional[str] = None) -> IntentClassificationResult:
    return IntentClassificationResult(
        intent="simple_search", confidence=confidence, reason=reason, source="rule", raw_output=raw
    )


def _clamp(value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.5
    if v != v:  # NaN
        return 0.5
    return min(1.0, max(0.0, v))


def summarize_messages(messages: Optional[Sequence[ChatMessage]]) -> str:
    if not messages:
        return ""
    lines = []
    for m in list(messages)[-MAX_CONTEXT_MESSAGES:]:
        normalized = re.sub(r"\s+", " ", m.content).strip()[:MAX_CONTEXT_CHARS]
        lines.append(f"[{m.role}] {normalized}")
    return "\n".join(lines)


def build_classifier_prompt(user_input: str, messages: Optional[Sequence[ChatMessage]] = None) -> str:
    sections = ["# 当前用户输入", user_input.strip()]
    history = summarize_messages(messages)
    if history:
        sections += ["\n\n# 历史对话", history]
    return "\n".join(sections)


def parse_classifier_output(text: str) -> IntentClassificationResult:
    raw = text.strip()
    try:
        parsed = parse_json_block(raw)
        if not isinstance(parsed, dict):
            raise ValueError("classifier output is not a JSON object")
    except ValueError as e:
        logger.error(f"Could not parse classifier output ({e}): {raw[:200]!r}")
        return _fallback(raw=raw)

    intent = parsed.get("intent")
    reason = parsed.get("reason")
    suggested = parsed.get("suggested_query")
    return IntentClassificationResult(
        intent=intent if intent in _INTENTS else "simple_search",
        confidence=_clamp(parsed.get("confidence")),
        reason=reason if isinstance(reason, str) else None,
        suggested_query=suggested if isinstance(suggested, str) else None,
        source="model",
        raw_output=raw,
    )


async def classify_user_intent(
    llm,
    user_input: str,
    messages: Optional[Sequence[ChatMessage]] = None,
    previous_mode: Optional[str] = None,
    prompt_dir: Optional[str] = None,
) -> IntentClassificationResult:
    """
    Label the latest utterance as simple_search, deep_search or other.

    `llm` is anything with an async `generate(system, prompt, label=None)`.
    """
    trimmed = user_input.strip()
    if not trimmed:
        return _fallback(reason="输入为空", confidence=0.0)

    if should_bypass_classifier(trimmed, previous_mode):
        intent = "deep_search" if previous_mode == MODE_DEEP else "simple_search"
        logger.info(f"Classifier bypassed: continuing {previous_mode} mode")
        return IntentClassificationResult(
            intent=intent,
            confidence=RULE_CONFIDENCE,
            reason=f"延续上一轮 {previous_mode} 模式",
            source="rule",
        )

    try:
        system = load_prompt(QUESTION_CLASSIFIER, prompt_dir)
        text = await llm.generate(system, build_classifier_prompt(trimmed, messages), label="classify intent")
    except Exception as e:
        logger.error(f"Intent classification call failed: {e}")
        return _fallback()
    return parse_classifier_output(text)


def pick_draft(draft_markdown: Optional[str], deep_metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the first non-blank draft: the explicit field, then deep_metadata["draftMarkdown"]."""
    if draft_markdown and draft_markdown.strip():
        return draft_markdown
    meta_draft = (deep_metadata or {}).get("draftMarkdown")
    if isinstance(meta_draft, str) and meta_draft.strip():
        return meta_draft
    return None


def resolve_chat_mode(
    intent: str,
    requested_mode: str,
    draft_markdown: Optional[str] = None,
    deep_metadata: Optional[Dict[str, Any]] = None,
) -> ModeResolution:
    """Pick the retrieval mode for a chat turn; deep mode requires a draft."""
    if intent == "deep_search":
        wanted = MODE_DEEP
    elif intent == "simple_search":
        wanted = MODE_TEXT
    else:
        wanted = requested_mode if requested_mode in (MODE_TEXT, MODE_DEEP) else MODE_TEXT

    if wanted == MODE_DEEP and pick_draft(draft_markdown, deep_metadata) is None:
        return ModeResolution(mode=MODE_TEXT, downgraded=True)
    return ModeResolution(mode=wanted)
