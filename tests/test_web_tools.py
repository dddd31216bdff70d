import json

import httpx
import pytest

from book_echoes.graph.tools.web_tools import WebSearchClient, WebSearchError, parse_duckduckgo

DDG_BODY = {
    "Heading": "三体",
    "AbstractText": "《三体》是刘慈欣创作的长篇科幻小说。",
    "AbstractURL": "https://example.org/santi",
    "Results": [{"Text": "官方站点 - 三体", "FirstURL": "https://example.org/official"}],
    "RelatedTopics": [
        {"Text": "刘慈欣 - 中国科幻作家", "FirstURL": "https://example.org/liu"},
        {"Name": "改编", "Topics": [{"Text": "三体 电视剧 - 2023 年", "FirstURL": "https://example.org/tv"}]},
        {"Text": "", "FirstURL": "https://example.org/empty"},
    ],
}


def test_parse_duckduckgo_flattens_nested_topics():
    snippets = parse_duckduckgo(DDG_BODY, top_k=10)
    assert [s.url for s in snippets] == [
        "https://example.org/santi",
        "https://example.org/official",
        "https://example.org/liu",
        "https://example.org/tv",
    ]
    assert all(s.source == "duckduckgo" for s in snippets)
    assert len(parse_duckduckgo(DDG_BODY, top_k=2)) == 2


@pytest.mark.asyncio
async def test_duckduckgo_used_when_jina_disabled(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=DDG_BODY)

    client = WebSearchClient(settings, transport=httpx.MockTransport(handler))
    snippets = await client.search("三体", top_k=3)

    assert len(snippets) == 3
    assert seen[0].url.host == "api.duckduckgo.com"
    assert seen[0].url.params["q"] == "三体"
    assert seen[0].url.params["format"] == "json"


@pytest.mark.asyncio
async def test_jina_results_are_preferred(settings):
    settings.use_jina_search = True
    settings.jina_api_key = "jina-key"
    seen = []

    def handler(request):
        seen.append(request)
        assert request.headers["Authorization"] == "Bearer jina-key"
        assert json.loads(request.content) == {"q": "三体", "num": 2}
        return httpx.Response(
            200,
            json={"data": [{"title": "T1", "url": "u1", "description": "d1", "content": "c1"}, {"url": "u2", "content": "c2"}]},
        )

    snippets = await WebSearchClient(settings, transport=httpx.MockTransport(handler)).search("三体", top_k=2)

    assert len(seen) == 1
    assert [s.source for s in snippets] == ["jina", "jina"]
    assert snippets[1].title == "搜索结果 2"
    assert snippets[1].snippet == "c2"


@pytest.mark.asyncio
async def test_jina_failure_falls_back_to_duckduckgo(settings):
    settings.use_jina_search = True
    settings.jina_api_key = "jina-key"

    def handler(request):
        if request.url.host == "s.jina.ai":
            return httpx.Response(500)
        return httpx.Response(200, json=DDG_BODY)

    snippets = await WebSearchClient(settings, transport=httpx.MockTransport(handler)).search("三体", top_k=5)
    assert snippets and snippets[0].source == "duckduckgo"


@pytest.mark.asyncio
async def test_all_engines_failing_raises(settings):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(WebSearchError):
        await WebSearchClient(settings, transport=httpx.MockTransport(handler)).search("三体")
