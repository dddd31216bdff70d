"""
graph.py
--------
LangGraph wiring for the two draft-producing workflows.

Deep search:
    START -> keywords -> research (search + analysis per keyword, concurrently) -> END
Document analysis:
    START -> documents (analysis per document, concurrently) -> END

Both graphs are followed by a streamed cross-analysis LLM call that produces
the draft markdown. `run_deep_search` / `run_document_analysis` turn the whole
run into the frame sequence sent over SSE:

    progress* -> draft-start -> draft-chunk* -> progress(cross-analysis) -> draft-complete

Progress events raised inside graph nodes travel through an asyncio.Queue so
they reach the client while the graph is still running. Fatal failures end the
stream with a single `error`-phase progress frame.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Union

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field

from ..config import Settings
from ..models import DocumentInput, KeywordResult, ProgressEvent, SearchSnippet
from .nodes import (
    ANALYSIS_SEPARATOR,
    analyze_document,
    analyze_keyword,
    build_cross_analysis_prompt,
    build_document_cross_prompt,
    fallback_keywords,
    generate_keywords,
)
from .prompts import ARTICLE_CROSS_ANALYSIS, load_prompt

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]


class DraftState(BaseModel):
    user_input: str = ""
    documents: List[DocumentInput] = Field(default_factory=list)
    keywords: List[KeywordResult] = Field(default_factory=list)
    snippets: List[SearchSnippet] = Field(default_factory=list)
    analyses: List[str] = Field(default_factory=list)


@dataclass
class GraphServices:
    """Collaborators handed to graph nodes through the run config."""
    llm: Any
    search: Any
    settings: Settings
    prompt_dir: Optional[str] = None


# --------------------------------------------------------------------------------------
# Progress
# --------------------------------------------------------------------------------------
def progress_frame(phase: str, message: str, status: str, details: Optional[str] = None) -> Frame:
    return ProgressEvent(phase=phase, message=message, status=status, details=details).model_dump(exclude_none=True)


class ProgressReporter:
    def __init__(self, sink: Callable[[Frame], None]) -> None:
        self._sink = sink

    def emit(self, phase: str, message: str, status: str, details: Optional[str] = None) -> None:
        self._sink(progress_frame(phase, message, status, details))


class FanOutCounter:
    """
    Shared completion counter for one fan-out phase.

    Every branch calls `advance` exactly once, success or failure, so the
    phase reports `running (n/total)` and a single `completed (total/total)`.
    """

    def __init__(self, reporter: ProgressReporter, phase: str, total: int, unit: str) -> None:
        self.reporter = reporter
        self.phase = phase
        self.total = total
        self.unit = unit
        self.done = 0

    def advance(self, message: str) -> None:
        self.done += 1
        status = "completed" if self.done >= self.total else "running"
        self.reporter.emit(
            self.phase,
            f"{message} ({self.done}/{self.total})",
            status,
            f"已完成 {self.done}/{self.total} 个{self.unit}",
        )


def _ctx(config: RunnableConfig) -> Tuple[GraphServices, ProgressReporter]:
    configurable = config.get("configurable", {})
    return configurable["services"], configurable["reporter"]


# --------------------------------------------------------------------------------------
# Nodes
# --------------------------------------------------------------------------------------
async def node_keywords(state: DraftState, config: RunnableConfig) -> Dict[str, Any]:
    svc, reporter = _ctx(config)
    reporter.emit("keywords", "正在生成检索关键词...", "running")
    try:
        keywords = await generate_keywords(svc.llm, state.user_input, svc.prompt_dir)
    except Exception as e:
        logger.error(f"Keyword generation failed, using raw input: {e}")
        reporter.emit("keywords", "关键词生成失败，使用原始输入检索", "error", str(e))
        return {"keywords": fallback_keywords(state.user_input)}

    reporter.emit(
        "keywords",
        f"生成了 {len(keywords)} 个检索关键词",
        "completed",
        ", ".join(k.keyword for k in keywords),
    )
    return {"keywords": keywords}


async def node_research(state: DraftState, config: RunnableConfig) -> Dict[str, Any]:
    """Search and analyze every keyword concurrently; one failing keyword does not sink the rest."""
    svc, reporter = _ctx(config)
    keywords = state.keywords
    total = len(keywords)

    reporter.emit("search", f"正在检索 {total} 个关键词...", "running")
    reporter.emit("analysis", "正在分析检索结果...", "running")
    searched = FanOutCounter(reporter, "search", total, "关键词检索")
    analyzed = FanOutCounter(reporter, "analysis", total, "文章分析")

    async def branch(keyword: KeywordResult) -> Tuple[List[SearchSnippet], Optional[str]]:
        try:
            snippets = await svc.search.search(keyword.keyword, top_k=svc.settings.snippets_per_keyword)
        except Exception as e:
            logger.error(f"Search failed for keyword {keyword.keyword!r}: {e}")
            reporter.emit(f"search:{keyword.keyword}", f"关键词检索失败：{keyword.keyword}", "error", str(e))
            searched.advance(f"检索失败：{keyword.keyword}")
            analyzed.advance(f"跳过分析：{keyword.keyword}")
            return [], None
        searched.advance(f"检索完成：{keyword.keyword}")
        if not snippets:
            analyzed.advance(f"无检索结果：{keyword.keyword}")
            return [], None

        try:
            analysis = await analyze_keyword(svc.llm, keyword, state.user_input, snippets, svc.prompt_dir)
        except Exception as e:
            logger.error(f"Analysis failed for keyword {keyword.keyword!r}: {e}")
            reporter.emit(f"search:{keyword.keyword}", f"文章分析失败：{keyword.keyword}", "error", str(e))
            analyzed.advance(f"分析失败：{keyword.keyword}")
            return snippets, None
        analyzed.advance(f"分析完成：{keyword.keyword}")
        return snippets, analysis

    results = await asyncio.gather(*(branch(k) for k in keywords))

    snippets: List[SearchSnippet] = []
    analyses: List[str] = []
    for branch_snippets, analysis in results:
        snippets.extend(branch_snippets)
        if analysis:
            analyses.append(analysis)
    logger.info(f"Research done: {len(snippets)} snippets, {len(analyses)}/{total} analyses")
    return {"snippets": snippets, "analyses": analyses}


async def node_documents(state: DraftState, config: RunnableConfig) -> Dict[str, Any]:
    svc, reporter = _ctx(config)
    documents = state.documents
    reporter.emit("document-analysis", "正在分析文档内容...", "running")
    counter = FanOutCounter(reporter, "document-analysis", len(documents), "文档分析")

    async def branch(document: DocumentInput) -> str:
        try:
            analysis = await analyze_document(svc.llm, document, svc.prompt_dir)
        except Exception as e:
            logger.error(f"Analysis failed for document {document.name!r}: {e}")
            reporter.emit(f"document-analysis:{document.name}", f"文档分析失败：{document.name}", "error", str(e))
            counter.advance(f"文档分析失败：{document.name}")
            return f"文档 {document.name} 分析失败：{e}"
        counter.advance(f"文档分析完成：{document.name}")
        return analysis

    analyses = await asyncio.gather(*(branch(d) for d in documents))
    return {"analyses": [a for a in analyses if a]}


# --------------------------------------------------------------------------------------
# Graph build
# --------------------------------------------------------------------------------------
def build_deep_search_graph():
    g = StateGraph(DraftState)
    g.add_node("keywords", node_keywords)
    g.add_node("research", node_research)
    g.add_edge(START, "keywords")
    g.add_edge("keywords", "research")
    g.add_edge("research", END)
    return g.compile()


def build_document_graph():
    g = StateGraph(DraftState)
    g.add_node("documents", node_documents)
    g.add_edge(START, "documents")
    g.add_edge("documents", END)
    return g.compile()


# --------------------------------------------------------------------------------------
# Run helpers
# --------------------------------------------------------------------------------------
def _result_to_dict(result: Any) -> Dict[str, Any]:
    """
    Normalize a LangGraph invoke result (which may be a Pydantic model or a dict)
    into a plain dict for consistent field access.
    """
    if result is None:
        return {}
    if hasattr(result, "model_dump"):
        return result.model_dump()
    if isinstance(result, dict):
        return result
    return dict(result)


async def _drive(app_graph, initial: DraftState, services: GraphServices) -> AsyncIterator[Union[Frame, DraftState]]:
    """
    Run the graph in a task, yielding progress frames as nodes emit them and
    finally the resulting DraftState. Graph exceptions propagate.
    """
    queue: asyncio.Queue = asyncio.Queue()
    reporter = ProgressReporter(queue.put_nowait)
    config = {"configurable": {"services": services, "reporter": reporter}}
    task = asyncio.create_task(app_graph.ainvoke(initial, config=config))
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield getter.result()
                continue
            getter.cancel()
            break
        while not queue.empty():
            yield queue.get_nowait()
        yield DraftState.model_validate(_result_to_dict(task.result()))
    finally:
        if not task.done():
            task.cancel()


async def _stream_draft(services: GraphServices, prompt: str, parts: List[str]) -> AsyncIterator[Frame]:
    system = load_prompt(ARTICLE_CROSS_ANALYSIS, services.prompt_dir)
    async for chunk in services.llm.stream(system, prompt=prompt):
        parts.append(chunk)
        yield {"type": "draft-chunk", "content": chunk}


async def run_deep_search(app_graph, user_input: str, services: GraphServices) -> AsyncIterator[Frame]:
    """Yield the deep-search frame sequence for one user query."""
    logger.info(f"Deep search started: {user_input!r}")
    try:
        state: Optional[DraftState] = None
        async for item in _drive(app_graph, DraftState(user_input=user_input), services):
            if isinstance(item, DraftState):
                state = item
            else:
                yield item

        keywords = [k.model_dump() for k in state.keywords]
        snippets = [s.model_dump(exclude_none=True) for s in state.snippets]
        combined = ANALYSIS_SEPARATOR.join(state.analyses)

        yield progress_frame("cross-analysis", "正在进行交叉分析...", "running")
        yield {"type": "draft-start", "keywords": keywords, "searchSnippets": snippets, "userInput": user_input}

        parts: List[str] = []
        prompt = build_cross_analysis_prompt(user_input, state.keywords, state.analyses)
        async for frame in _stream_draft(services, prompt, parts):
            yield frame
        draft = "".join(parts).strip()

        logger.info(f"Cross analysis done: {len(draft)} chars from {len(state.analyses)} analyses")
        yield progress_frame("cross-analysis", "交叉分析完成", "completed", f"生成了 {len(draft)} 字符的草稿")
        yield {
            "type": "draft-complete",
            "success": True,
            "draftMarkdown": draft,
            "keywords": keywords,
            "searchSnippets": snippets,
            "articleAnalysis": combined,
            "userInput": user_input,
        }
    except Exception as e:
        logger.exception("Deep search failed")
        yield progress_frame("error", "深度检索分析失败", "error", str(e))


async def run_document_analysis(
    app_graph,
    documents: Sequence[DocumentInput],
    services: GraphServices,
) -> AsyncIterator[Frame]:
    """Yield the document-analysis frame sequence; same shapes as deep search."""
    names = ", ".join(d.name for d in documents)
    user_input = f"文档分析：{names}"
    logger.info(f"Document analysis started: {len(documents)} documents")
    try:
        state: Optional[DraftState] = None
        initial = DraftState(user_input=user_input, documents=list(documents))
        async for item in _drive(app_graph, initial, services):
            if isinstance(item, DraftState):
                state = item
            else:
                yield item

        yield progress_frame("cross-analysis", "正在进行交叉分析...", "running")
        yield {"type": "draft-start", "documentAnalyses": state.analyses, "userInput": user_input}

        parts: List[str] = []
        async for frame in _stream_draft(services, build_document_cross_prompt(names, state.analyses), parts):
            yield frame
        draft = "".join(parts).strip()

        yield progress_frame("cross-analysis", "交叉分析完成", "completed", f"生成了 {len(draft)} 字符的草稿")
        yield {
            "type": "draft-complete",
            "success": True,
            "draftMarkdown": draft,
            "documentAnalyses": ANALYSIS_SEPARATOR.join(state.analyses),
            "userInput": user_input,
        }
    except Exception as e:
        logger.exception("Document analysis failed")
        yield progress_frame("error", "文档分析失败", "error", str(e))
