import json

import httpx
import pytest

from book_echoes.config import DEFAULT_PLAIN_TEXT_TEMPLATE
from book_echoes.graph.tools.retrieval import BookRetrievalClient, RetrievalError, render_context
from book_echoes.models import BookInfo


def make_client(settings, handler):
    return BookRetrievalClient(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_text_search_fills_defaults_and_drops_none(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": [{"book_id": "1", "title": "三体", "rating": 9.3}]})

    result = await make_client(settings, handler).text_search("科幻小说", top_k=8)

    assert seen["url"] == "http://books.local/api/books/text-search"
    assert seen["body"] == {
        "query": "科幻小说",
        "top_k": 8,
        "response_format": "json",
        "plain_text_template": DEFAULT_PLAIN_TEXT_TEMPLATE,
    }
    assert result.data.total_count == 1
    assert result.data.search_type == "text-search"
    assert "三体" in result.context_plain_text


@pytest.mark.asyncio
async def test_multi_query_payload_and_metadata(settings):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "context_plain_text": "【活着】命运 - 9.4分",
                "metadata": {"llm_hint": {"model": "hinted"}},
            },
        )

    result = await make_client(settings, handler).multi_query(
        markdown_text="# 草稿", per_query_top_k=12, final_top_k=8, response_format="plain_text"
    )

    assert seen["path"] == "/api/books/multi-query"
    assert seen["body"]["markdown_text"] == "# 草稿"
    assert seen["body"]["per_query_top_k"] == 12
    assert seen["body"]["final_top_k"] == 8
    assert seen["body"]["response_format"] == "plain_text"
    assert "enable_rerank" not in seen["body"]
    assert result.context_plain_text == "【活着】命运 - 9.4分"
    assert result.metadata == {"llm_hint": {"model": "hinted"}}
    assert [b.title for b in result.data.books] == ["活着"]
    assert result.data.search_type == "multi-query"


@pytest.mark.asyncio
async def test_plain_text_response_is_context_block(settings):
    def handler(request):
        return httpx.Response(200, text="【三体】硬科幻巅峰之作 - 9.3分", headers={"content-type": "text/plain; charset=utf-8"})

    result = await make_client(settings, handler).text_search("三体")
    assert result.context_plain_text == "【三体】硬科幻巅峰之作 - 9.3分"
    assert result.data.books[0].rating == 9.3


@pytest.mark.asyncio
async def test_empty_body_is_not_an_error(settings):
    result = await make_client(settings, lambda request: httpx.Response(200, json={})).text_search("无")
    assert result.data.books == []
    assert result.data.total_count == 0
    assert result.context_plain_text == ""


@pytest.mark.asyncio
async def test_non_2xx_raises_with_status_code(settings):
    client = make_client(settings, lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(RetrievalError) as info:
        await client.text_search("q")
    assert info.value.code == "HTTP_502"
    assert "bad gateway" in info.value.details


@pytest.mark.asyncio
async def test_transport_failure_is_network_error(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RetrievalError) as info:
        await make_client(settings, handler).multi_query(markdown_text="x")
    assert info.value.code == "NETWORK_ERROR"


def test_render_context_uses_template():
    books = [BookInfo(id="1", title="三体", highlights=["硬科幻"], rating=9.3)]
    assert render_context(books, DEFAULT_PLAIN_TEXT_TEMPLATE) == "【三体】硬科幻 - 9.3分"
    assert render_context(books, "{title}|{missing}") == "【三体】硬科幻 - 9.3分"
