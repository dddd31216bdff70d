"""
nodes.py
--------
LLM step implementations for the deep-search and document-analysis workflows.

This module defines:
- JSON extraction tolerant of markdown code fences
- Keyword generation (with a deterministic fallback keyword)
- Per-keyword and per-document analysis steps
- Prompt builders for the cross-analysis draft and the book interpretation

Graph wiring, fan-out and progress reporting live in graph.py; everything here
is a single awaited call or a pure function.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional, Sequence

from ..models import BookInfo, DocumentInput, KeywordResult, SearchSnippet
from .prompts import ARTICLE_ANALYSIS, KEYWORD_GENERATION, load_prompt

logger = logging.getLogger(__name__)

FALLBACK_KEYWORD_REASON = "基于用户原始输入"
ANALYSIS_SEPARATOR = "\n\n---\n\n"

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


# --------------------------------------------------------------------------------------
# Parsing helpers
# --------------------------------------------------------------------------------------
def parse_json_block(text: str) -> Any:
    """
    Parse model output as JSON, unwrapping a ```json ... ``` fence if present.
    Raises ValueError (json.JSONDecodeError) on malformed input.
    """
    body = (text or "").strip()
    if body.startswith("```"):
        body = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", body))
    return json.loads(body.strip())


def fallback_keywords(user_input: str) -> List[KeywordResult]:
    return [KeywordResult(keyword=user_input, reason=FALLBACK_KEYWORD_REASON, priority="high")]


def parse_keywords(raw: str, user_input: str) -> List[KeywordResult]:
    """
    Turn keyword-generation output into KeywordResult items.

    Accepts either a bare JSON array or {"keywords": [...]}. Entries without a
    keyword are dropped and unknown priorities become "medium". Anything that
    does not yield at least one keyword falls back to the raw user input.
    """
    try:
        parsed = parse_json_block(raw)
    except ValueError as e:
        logger.error(f"Keyword output is not valid JSON ({e}); falling back to user input")
        return fallback_keywords(user_input)

    items = parsed.get("keywords") if isinstance(parsed, dict) else parsed
    if not isinstance(items, list):
        logger.error("Keyword output has no keyword list; falling back to user input")
        return fallback_keywords(user_input)

    cleaned: List[KeywordResult] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        keyword = str(item.get("keyword") or "").strip()
        if not keyword:
            continue
        priority = item.get("priority")
        cleaned.append(
            KeywordResult(
                keyword=keyword,
                reason=str(item.get("reason") or ""),
                priority=priority if priority in ("high", "medium", "low") else "medium",
            )
        )
    return cleaned or fallback_keywords(user_input)


def join_snippets(snippets: Sequence[SearchSnippet]) -> str:
    return "\n\n".join(f"【{i}】{s.title}\n{s.url}\n{s.snippet}" for i, s in enumerate(snippets, 1))


# --------------------------------------------------------------------------------------
# LLM steps
# --------------------------------------------------------------------------------------
async def generate_keywords(llm, user_input: str, prompt_dir: Optional[str] = None) -> List[KeywordResult]:
    system = load_prompt(KEYWORD_GENERATION, prompt_dir)
    raw = await llm.generate(system, f"用户输入：{user_input}\n\n请生成适合的检索关键词。", label="generate keywords")
    return parse_keywords(raw, user_input)


async def analyze_keyword(
    llm,
    keyword: KeywordResult,
    user_input: str,
    snippets: Sequence[SearchSnippet],
    prompt_dir: Optional[str] = None,
) -> str:
    system = load_prompt(ARTICLE_ANALYSIS, prompt_dir)
    prompt = f"# 关键词\n{keyword.keyword}\n\n# 用户原始输入\n{user_input}\n\n# 网络检索摘要\n{join_snippets(snippets)}"
    return await llm.generate(system, prompt, label=f"analyze keyword {keyword.keyword!r}")


async def analyze_document(llm, document: DocumentInput, prompt_dir: Optional[str] = None) -> str:
    system = load_prompt(ARTICLE_ANALYSIS, prompt_dir)
    prompt = f"# 文档名称\n{document.name}\n\n# 文档内容\n{document.content}"
    return await llm.generate(system, prompt, label=f"analyze document {document.name!r}")


# --------------------------------------------------------------------------------------
# Prompt builders
# --------------------------------------------------------------------------------------
def build_cross_analysis_prompt(user_input: str, keywords: Sequence[KeywordResult], analyses: Sequence[str]) -> str:
    keyword_lines = "\n".join(f"- {k.keyword} ({k.priority})" for k in keywords)
    return (
        f"# 用户原始输入\n{user_input}\n\n"
        f"# 检索关键词\n{keyword_lines}\n\n"
        f"# 文章分析结果\n{ANALYSIS_SEPARATOR.join(analyses)}"
    )


def build_document_cross_prompt(document_names: str, analyses: Sequence[str]) -> str:
    return f"# 文档名称\n{document_names}\n\n# 文档分析结果\n{ANALYSIS_SEPARATOR.join(analyses)}"


def _fmt_score(value: Optional[float]) -> str:
    return f"{value:.3f}" if value is not None else "暂无"


def build_interpretation_prompt(original_query: str, books: Sequence[BookInfo]) -> str:
    sections = []
    for i, book in enumerate(books, 1):
        sections.append(
            f"## 图书 {i}\n"
            f"**书名：** {book.title}\n"
            f"**作者：** {book.author or '暂无'}\n"
            f"**评分：** {book.rating if book.rating else '暂无评分'}\n"
            f"**相似度：** {_fmt_score(book.similarity_score)}\n"
            f"**索书号：** {book.call_number or '暂无'}\n"
            f"**内容简介：** {book.description or '暂无简介'}\n"
            f"**融合分数：** {_fmt_score(book.fused_score)}\n"
            f"**最终分数：** {_fmt_score(book.final_score)}"
        )
    return (
        f"# 用户原始查询\n{original_query}\n\n"
        "# 候选图书列表\n" + "\n\n".join(sections) + "\n\n"
        "请基于以上信息，按照系统提示词的要求生成导读和书单推荐。"
    )


def build_deep_interpretation_prompt(original_query: str, draft_markdown: str, books: Sequence[BookInfo]) -> str:
    blocks = []
    for i, book in enumerate(books, 1):
        lines = [f"## 书籍 {i}", "", f"**书名**: {book.title}"]
        if book.subtitle:
            lines.append(f"**副标题**: {book.subtitle}")
        lines.append(f"**作者**: {book.author}")
        if book.publisher:
            lines.append(f"**出版社**: {book.publisher}")
        if book.publish_year:
            lines.append(f"**出版年份**: {book.publish_year}")
        if book.rating:
            lines.append(f"**评分**: {book.rating}")
        if book.call_number:
            lines.append(f"**索书号**: {book.call_number}")
        lines += ["", "**内容简介**:", book.description or "暂无简介"]
        if book.author_intro:
            lines += ["", f"**作者简介**:\n{book.author_intro}"]
        if book.highlights:
            lines += ["", f"**亮点**: {'; '.join(book.highlights)}"]
        lines += ["", "---"]
        blocks.append("\n".join(lines))
    return (
        f"# 主题分析报告\n\n## 原始查询\n{original_query}\n\n"
        f"## 检索草案\n{draft_markdown}\n\n---\n\n"
        "# 待选书目列表\n\n" + "\n\n".join(blocks)
    )


def build_chat_system_prompt(
    base_prompt: str,
    context_plain_text: str,
    user_input: str,
    draft_markdown: Optional[str] = None,
) -> str:
    sections = [
        base_prompt.strip(),
        "\n\n# 对话背景\n",
        f"## 用户输入\n{user_input.strip()}",
        f"\n\n## 检索结果\n{context_plain_text.strip() or '（未检索到相关图书）'}",
    ]
    if draft_markdown and draft_markdown.strip():
        sections.append(f"\n\n## 草稿参考\n{draft_markdown.strip()}")
    return "".join(sections)


def format_books_for_secondary_search(books: Sequence[BookInfo], original_query: str) -> str:
    """Build the follow-up query text that seeds a second search from picked books."""
    if not books:
        return original_query
    entries = []
    for i, book in enumerate(books, 1):
        parts = [f"【{i}】《{book.title}》"]
        if book.author:
            parts.append(f"作者: {book.author}")
        if book.description:
            desc = book.description if len(book.description) <= 100 else book.description[:100] + "..."
            parts.append(f"简介: {desc}")
        entries.append("\n".join(parts))
    return (
        "基于以下图书继续检索：\n\n"
        + "\n\n".join(entries)
        + f"\n\n原始需求：{original_query}\n\n请继续深入检索相关图书"
    )
