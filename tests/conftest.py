import pytest

from book_echoes.config import Settings
from book_echoes.graph.prompts import clear_prompt_cache


@pytest.fixture(autouse=True)
def _fresh_prompts():
    clear_prompt_cache()
    yield
    clear_prompt_cache()


@pytest.fixture
def settings():
    return Settings(
        aibot_enabled=True,
        llm_base_url="http://llm.local/v1",
        llm_api_key="sk-test",
        llm_model="test-model",
        classifier_model="",
        book_api_base_url="http://books.local",
        snippets_per_keyword=3,
        use_jina_search=False,
        jina_api_key="",
        prompt_dir="",
    )
