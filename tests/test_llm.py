import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from book_echoes.config import LLMConfigError, Settings
from book_echoes.graph.llm import LLMClient, to_langchain_messages
from book_echoes.models import ChatMessage


def test_messages_map_to_langchain_roles():
    msgs = to_langchain_messages(
        "系统", [ChatMessage(role="user", content="问"), ChatMessage(role="assistant", content="答")]
    )
    assert [type(m) for m in msgs] == [SystemMessage, HumanMessage, AIMessage]
    assert msgs[2].content == "答"


@pytest.mark.asyncio
async def test_missing_config_surfaces_on_first_call():
    client = LLMClient(Settings(llm_base_url="", llm_api_key="", llm_model=""))
    with pytest.raises(LLMConfigError):
        await client.generate("系统", "问题")


def test_hint_and_overrides_feed_the_config(settings):
    client = LLMClient(settings, hint={"model": "hinted", "suggested_temperature": 0.2})
    assert client.config.model == "hinted"
    assert client.config.temperature == 0.2
    assert LLMClient(settings, model="classifier").config.model == "classifier"
