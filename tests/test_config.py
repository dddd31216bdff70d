import pytest

from book_echoes.config import AIBotDisabledError, LLMConfigError, Settings, resolve_llm_config
from book_echoes.graph.prompts import KEYWORD_GENERATION, clear_prompt_cache, load_prompt


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("AIBOT_LOCAL_ENABLED", "1")
    monkeypatch.setenv("BOOK_API_BASE_URL", "http://backend:9000")
    monkeypatch.setenv("DEEP_SEARCH_SNIPPETS_PER_KEYWORD", "7")
    monkeypatch.setenv("USE_JINA_SEARCH", "false")
    monkeypatch.setenv("AIBOT_HTTP_TIMEOUT", "not-a-number")

    s = Settings()
    assert s.aibot_enabled is True
    assert s.book_api_base_url == "http://backend:9000"
    assert s.snippets_per_keyword == 7
    assert s.use_jina_search is False
    assert s.http_timeout == 30.0


def test_disabled_flag_raises(monkeypatch):
    monkeypatch.setenv("AIBOT_LOCAL_ENABLED", "true")
    with pytest.raises(AIBotDisabledError):
        Settings().assert_enabled()


def test_llm_config_precedence(settings, monkeypatch):
    monkeypatch.setenv("HINTED_MODEL", "env-hinted-model")
    hint = {"base_url": "http://hinted/v1", "model_env": "HINTED_MODEL", "suggested_temperature": 0.3}

    cfg = resolve_llm_config(settings, hint)
    assert cfg.base_url == "http://hinted/v1"
    assert cfg.api_key == "sk-test"
    assert cfg.model == "env-hinted-model"
    assert cfg.temperature == 0.3

    cfg = resolve_llm_config(settings, hint, model="override", temperature=0.9)
    assert cfg.model == "override"
    assert cfg.temperature == 0.9


def test_missing_llm_config_raises():
    s = Settings(llm_base_url="", llm_api_key="", llm_model="")
    with pytest.raises(LLMConfigError):
        resolve_llm_config(s)


def test_prompt_override_file_wins(tmp_path):
    (tmp_path / f"{KEYWORD_GENERATION}.md").write_text("自定义关键词提示词", encoding="utf-8")
    assert load_prompt(KEYWORD_GENERATION, str(tmp_path)) == "自定义关键词提示词"
    clear_prompt_cache()
    assert load_prompt(KEYWORD_GENERATION) != "自定义关键词提示词"
    with pytest.raises(KeyError):
        load_prompt("no_such_prompt")
