import json

import pytest

from book_echoes.graph.graph import GraphServices, build_deep_search_graph, run_deep_search
from book_echoes.graph.tools.web_tools import WebSearchError
from book_echoes.models import SearchSnippet

from .fakes import FakeLLM, FakeSearch

KEYWORDS_ABC = json.dumps(
    [
        {"keyword": "A", "reason": "r", "priority": "high"},
        {"keyword": "B", "reason": "r", "priority": "medium"},
        {"keyword": "C", "reason": "r", "priority": "low"},
    ]
)


def snippets(tag, n=2):
    return [SearchSnippet(title=f"{tag}-{i}", url=f"https://example.org/{tag}/{i}", snippet=f"{tag} 摘要 {i}") for i in range(n)]


def analysis_for(prompt):
    keyword = prompt.split("# 关键词\n", 1)[1].split("\n", 1)[0]
    return f"分析-{keyword}"


async def collect(user_input, llm, search, settings):
    services = GraphServices(llm=llm, search=search, settings=settings)
    return [frame async for frame in run_deep_search(build_deep_search_graph(), user_input, services)]


def progress(frames, phase):
    return [f for f in frames if f["type"] == "progress" and f["phase"] == phase]


@pytest.mark.asyncio
@pytest.mark.parametrize("delays", [{"A": 0.03, "B": 0.01, "C": 0}, {"A": 0, "B": 0.02, "C": 0.01}])
async def test_search_phase_completes_exactly_once(settings, delays):
    llm = FakeLLM({"generate keywords": KEYWORDS_ABC, "analyze keyword": analysis_for}, chunks=["# 草稿", "\n正文 "])
    search = FakeSearch({"A": snippets("A"), "B": snippets("B"), "C": snippets("C")}, delays=delays)

    frames = await collect("城市与记忆", llm, search, settings)

    search_events = progress(frames, "search")
    completed = [e for e in search_events if e["status"] == "completed"]
    assert len(completed) == 1
    assert "3/3" in completed[0]["message"]
    assert search_events[-1] is completed[0]
    assert len(search_events) == 4
    assert all("/3)" in e["message"] and e["status"] == "running" for e in search_events[1:-1])

    analysis_completed = [e for e in progress(frames, "analysis") if e["status"] == "completed"]
    assert len(analysis_completed) == 1 and "3/3" in analysis_completed[0]["message"]


@pytest.mark.asyncio
async def test_frame_sequence_and_draft(settings):
    llm = FakeLLM({"generate keywords": KEYWORDS_ABC, "analyze keyword": analysis_for}, chunks=["# 草稿", "\n正文 "])
    search = FakeSearch({"A": snippets("A"), "B": snippets("B"), "C": snippets("C")})

    frames = await collect("城市与记忆", llm, search, settings)
    types = [f["type"] for f in frames]

    start = types.index("draft-start")
    assert all(t == "progress" for t in types[:start])
    assert types[start + 1:start + 3] == ["draft-chunk", "draft-chunk"]
    assert types[-1] == "draft-complete"

    draft_start = frames[start]
    assert [k["keyword"] for k in draft_start["keywords"]] == ["A", "B", "C"]
    assert len(draft_start["searchSnippets"]) == 6
    assert draft_start["userInput"] == "城市与记忆"

    done = frames[-1]
    assert done["success"] is True
    assert done["draftMarkdown"] == "# 草稿\n正文"
    assert sorted(done["articleAnalysis"].split("\n\n---\n\n")) == ["分析-A", "分析-B", "分析-C"]
    assert progress(frames, "cross-analysis")[-1]["status"] == "completed"

    prompt = llm.stream_calls[0]["prompt"]
    assert "- A (high)" in prompt and "分析-B" in prompt
    assert all(top_k == settings.snippets_per_keyword for _, top_k in search.queries)


@pytest.mark.asyncio
async def test_failing_keyword_is_isolated(settings):
    llm = FakeLLM({"generate keywords": KEYWORDS_ABC, "analyze keyword": analysis_for}, chunks=["草稿"])
    search = FakeSearch({"A": snippets("A"), "B": WebSearchError("网络检索失败：timeout"), "C": snippets("C")})

    frames = await collect("城市与记忆", llm, search, settings)

    branch_errors = progress(frames, "search:B")
    assert len(branch_errors) == 1
    assert branch_errors[0]["status"] == "error"
    assert "timeout" in branch_errors[0]["details"]
    assert not progress(frames, "error")

    completed = [e for e in progress(frames, "search") if e["status"] == "completed"]
    assert len(completed) == 1 and "3/3" in completed[0]["message"]

    done = frames[-1]
    assert done["type"] == "draft-complete"
    assert "分析-B" not in done["articleAnalysis"]
    assert len(done["searchSnippets"]) == 4


@pytest.mark.asyncio
async def test_keyword_without_snippets_is_not_analyzed(settings):
    llm = FakeLLM({"generate keywords": '[{"keyword": "A"}, {"keyword": "B"}]', "analyze keyword": analysis_for}, chunks=["草稿"])
    search = FakeSearch({"A": snippets("A"), "B": []})

    frames = await collect("x", llm, search, settings)

    analyzed = [label for label, _ in llm.calls if label.startswith("analyze keyword")]
    assert analyzed == ["analyze keyword 'A'"]
    assert frames[-1]["articleAnalysis"] == "分析-A"


@pytest.mark.asyncio
async def test_keyword_generation_failure_uses_raw_input(settings):
    llm = FakeLLM({"generate keywords": RuntimeError("llm down"), "analyze keyword": analysis_for}, chunks=["草稿"])
    search = FakeSearch({"乡愁文学": snippets("乡愁")})

    frames = await collect("乡愁文学", llm, search, settings)

    keyword_events = progress(frames, "keywords")
    assert keyword_events[-1]["status"] == "error"
    assert search.queries == [("乡愁文学", settings.snippets_per_keyword)]
    assert frames[-1]["keywords"][0]["priority"] == "high"


@pytest.mark.asyncio
async def test_stream_failure_ends_with_error_frame(settings):
    llm = FakeLLM(
        {"generate keywords": KEYWORDS_ABC, "analyze keyword": analysis_for},
        chunks=["部分"],
        stream_error=RuntimeError("stream reset"),
    )
    search = FakeSearch({"A": snippets("A"), "B": snippets("B"), "C": snippets("C")})

    frames = await collect("x", llm, search, settings)

    assert frames[-1]["type"] == "progress"
    assert frames[-1]["phase"] == "error"
    assert frames[-1]["status"] == "error"
    assert frames[-1]["details"] == "stream reset"
    assert "draft-complete" not in [f["type"] for f in frames]
