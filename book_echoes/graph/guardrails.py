"""
guardrails.py
-------------
Input-side guardrails for the chat classifier: prompt-injection detection and
the rule that lets short "continue" replies reuse the previous mode without an
LLM call.
"""
from __future__ import annotations
import re
from typing import List, Optional, Pattern

from ..models import MODE_DEEP, MODE_TEXT

INJECTION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"ignore\s+previous", re.IGNORECASE),
    re.compile(r"forget\s+instructions?", re.IGNORECASE),
    re.compile(r"system\s+prompt", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
    re.compile(r"越狱"),
    re.compile(r"提示词"),
    re.compile(r"注入"),
    re.compile(r"指令"),
    re.compile(r"act\s+as", re.IGNORECASE),
]

CONTINUE_KEYWORDS = ["继续", "下一步", "接着", "继续执行", "go on", "next", "proceed", "确认执行"]
QUICK_ACK_KEYWORDS = ["继续", "ok", "收到"]
GREETINGS = ["你好", "您好", "hello", "hi", "嗨", "在吗", "在不在"]

MAX_DEEP_CONTINUE_LEN = 24
MAX_TEXT_ACK_LEN = 12


def has_prompt_injection_risk(content: str) -> bool:
    if not content.strip():
        return False
    return any(p.search(content) for p in INJECTION_PATTERNS)


def _is_greeting(lowered: str) -> bool:
    return any(lowered == g or lowered.startswith(g) for g in GREETINGS)


def should_bypass_classifier(content: str, previous_mode: Optional[str]) -> bool:
    """
    True when `content` is a bare continuation of the previous mode, so the
    caller can reuse that mode instead of classifying again.
    """
    if not previous_mode:
        return False
    trimmed = content.strip()
    if not trimmed or has_prompt_injection_risk(trimmed):
        return False
    lowered = trimmed.lower()
    if _is_greeting(lowered):
        return False

    if previous_mode == MODE_DEEP:
        return len(trimmed) <= MAX_DEEP_CONTINUE_LEN and any(
            lowered == k.lower() or lowered.endswith(k.lower()) for k in CONTINUE_KEYWORDS
        )
    if previous_mode == MODE_TEXT:
        return len(trimmed) <= MAX_TEXT_ACK_LEN and any(lowered == k.lower() for k in QUICK_ACK_KEYWORDS)
    return False
