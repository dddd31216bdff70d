"""
config.py
-----------
Typed configuration loader for environment variables and LLM connection settings.
This centralizes settings so other modules can import a single authoritative source.

Settings are cheap to build; route handlers resolve a fresh instance per request
through `get_settings` so environment changes apply to the next request.
"""
from __future__ import annotations
import logging
import os
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from .models import LLMConfig

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PLAIN_TEXT_TEMPLATE = "【{title}】{highlights} - {rating}分"


class AIBotDisabledError(Exception):
    """Raised when the local AIBot feature flag is off."""

    def __init__(self, message: str = "AIBot 本地模式未启用") -> None:
        super().__init__(message)


class LLMConfigError(Exception):
    """Raised when base URL, API key or model cannot be resolved."""


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, "") or default)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, "") or default)
    except ValueError:
        return default


class Settings(BaseModel):
    aibot_enabled: bool = Field(default_factory=lambda: os.getenv("AIBOT_LOCAL_ENABLED", "") == "1")
    llm_base_url: str = Field(default_factory=lambda: os.getenv("AIBOT_LLM_BASE_URL", ""))
    llm_api_key: str = Field(default_factory=lambda: os.getenv("AIBOT_LLM_API_KEY", ""))
    llm_model: str = Field(default_factory=lambda: os.getenv("AIBOT_LLM_MODEL", ""))
    classifier_model: str = Field(default_factory=lambda: os.getenv("AIBOT_CLASSIFIER_MODEL", ""))
    llm_timeout: float = Field(default_factory=lambda: _env_float("AIBOT_LLM_TIMEOUT", 60.0))
    book_api_base_url: str = Field(default_factory=lambda: os.getenv("BOOK_API_BASE_URL", "http://127.0.0.1:8000"))
    http_timeout: float = Field(default_factory=lambda: _env_float("AIBOT_HTTP_TIMEOUT", 30.0))
    snippets_per_keyword: int = Field(default_factory=lambda: _env_int("DEEP_SEARCH_SNIPPETS_PER_KEYWORD", 5))
    plain_text_template: str = Field(
        default_factory=lambda: os.getenv("AIBOT_PLAIN_TEXT_TEMPLATE", "") or DEFAULT_PLAIN_TEXT_TEMPLATE
    )
    use_jina_search: bool = Field(default_factory=lambda: os.getenv("USE_JINA_SEARCH", "") != "false")
    jina_api_key: str = Field(default_factory=lambda: os.getenv("JINA_API_KEY", ""))
    prompt_dir: str = Field(default_factory=lambda: os.getenv("AIBOT_PROMPT_DIR", ""))
    log_level: str = Field(default_factory=lambda: os.getenv("AIBOT_LOG_LEVEL", "INFO"))

    def assert_enabled(self) -> None:
        if not self.aibot_enabled:
            logger.info("Rejecting local AIBot request: AIBOT_LOCAL_ENABLED is off")
            raise AIBotDisabledError()


def get_settings() -> Settings:
    return Settings()


def _read_env(key: Optional[str]) -> Optional[str]:
    if not key:
        return None
    return os.getenv(key) or None


def resolve_llm_config(
    settings: Settings,
    hint: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> LLMConfig:
    """
    Merge LLM connection settings.

    Precedence per field: explicit overrides, literal values from the retrieval
    backend's `llm_hint`, the environment variable the hint names, then the
    AIBOT_LLM_* settings.
    """
    hint = hint or {}

    def pick(field: str, env_field: str, fallback: str) -> str:
        return (
            overrides.get(field)
            or hint.get(field)
            or _read_env(hint.get(env_field))
            or fallback
        )

    base_url = pick("base_url", "base_url_env", settings.llm_base_url)
    api_key = pick("api_key", "api_key_env", settings.llm_api_key)
    model = pick("model", "model_env", settings.llm_model)

    if not base_url or not api_key or not model:
        logger.error(
            f"LLM config incomplete (base_url={bool(base_url)}, api_key={bool(api_key)}, model={bool(model)})"
        )
        raise LLMConfigError("AIBot LLM 环境变量未配置完整")

    temperature = overrides.get("temperature")
    if temperature is None:
        temperature = hint.get("suggested_temperature")

    return LLMConfig(base_url=base_url, api_key=api_key, model=model, temperature=temperature)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
