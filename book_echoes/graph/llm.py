"""
llm.py
------
Thin adapter over an OpenAI-compatible chat completion endpoint.

Connection settings are resolved on first use, so a missing configuration
surfaces as LLMConfigError from `generate`/`stream` rather than at construction.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from langchain_openai import ChatOpenAI
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..config import Settings, resolve_llm_config
from ..models import ChatMessage, LLMConfig

logger = logging.getLogger(__name__)


def to_langchain_messages(system: str, messages: Sequence[ChatMessage]) -> List[BaseMessage]:
    msgs: List[BaseMessage] = [SystemMessage(content=system)]
    for m in messages:
        if m.role == "assistant":
            msgs.append(AIMessage(content=m.content))
        else:
            msgs.append(HumanMessage(content=m.content))
    return msgs


def _chunk_text(content: Any) -> str:
    # Some providers stream content as a list of typed parts.
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p.get("text", "") if isinstance(p, dict) else str(p) for p in content)
    return ""


class LLMClient:
    def __init__(
        self,
        settings: Settings,
        hint: Optional[Dict[str, Any]] = None,
        **overrides: Any,
    ) -> None:
        self.settings = settings
        self.hint = hint
        self.overrides = overrides
        self._llm: Optional[ChatOpenAI] = None
        self._config: Optional[LLMConfig] = None

    @property
    def config(self) -> LLMConfig:
        if self._config is None:
            self._config = resolve_llm_config(self.settings, self.hint, **self.overrides)
        return self._config

    def _model(self) -> ChatOpenAI:
        if self._llm is None:
            cfg = self.config
            kwargs: Dict[str, Any] = {
                "model": cfg.model,
                "base_url": cfg.base_url,
                "api_key": cfg.api_key,
                "timeout": self.settings.llm_timeout,
                "max_retries": 1,
            }
            if cfg.temperature is not None:
                kwargs["temperature"] = cfg.temperature
            logger.info(f"Creating chat model {cfg.model} at {cfg.base_url}")
            self._llm = ChatOpenAI(**kwargs)
        return self._llm

    async def generate(self, system: str, prompt: str, label: Optional[str] = None) -> str:
        """One-shot completion; returns the stripped response text."""
        if label:
            logger.info(f"LLM: {label}")
        out = await self._model().ainvoke([SystemMessage(content=system), HumanMessage(content=prompt)])
        text = _chunk_text(out.content)
        logger.info(f"LLM response: {len(text)} chars")
        return text.strip()

    async def stream(
        self,
        system: str,
        prompt: Optional[str] = None,
        messages: Optional[Sequence[ChatMessage]] = None,
    ) -> AsyncIterator[str]:
        """Yield text chunks in arrival order. Pass either `prompt` or `messages`."""
        if messages is not None:
            msgs = to_langchain_messages(system, messages)
        else:
            msgs = [SystemMessage(content=system), HumanMessage(content=prompt or "")]
        async for chunk in self._model().astream(msgs):
            text = _chunk_text(chunk.content)
            if text:
                yield text
