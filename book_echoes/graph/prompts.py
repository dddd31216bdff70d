"""
prompts.py
----------
Centralized system prompts for the AIBot workflows, keyed by name.

A deployment can replace any prompt by dropping `<name>.md` into the directory
named by AIBOT_PROMPT_DIR; lookups are cached for the process lifetime.
"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

QUESTION_CLASSIFIER = "aibot_question_classifier"
KEYWORD_GENERATION = "keyword_generation"
ARTICLE_ANALYSIS = "article_analysis"
ARTICLE_CROSS_ANALYSIS = "article_cross_analysis"
SIMPLE_SEARCH = "simple_search"
RECOMMENDATION = "recommendation"

SYSTEM_CLASSIFIER = """你是图书推荐助手的问题分类器。阅读用户当前输入与历史对话，判断属于哪一类：
- simple_search：想直接找书、按主题/作者/书名检索图书；
- deep_search：需要围绕一个议题做多来源调研、形成分析后再推荐图书；
- other：与找书无关的闲聊或其他请求。

只输出 JSON，不要输出任何解释：
{"intent": "simple_search|deep_search|other", "confidence": 0到1之间的小数, "reason": "简短理由", "suggested_query": "可选，改写后的检索语句"}
"""

SYSTEM_KEYWORD_GENERATION = """你是检索策略专家。根据用户输入，生成 3 到 5 个适合网络检索的关键词或短语，
覆盖议题的定义、背景与相关视角。

只输出 JSON：
{"keywords": [{"keyword": "关键词", "reason": "选择理由", "priority": "high|medium|low"}]}
"""

SYSTEM_ARTICLE_ANALYSIS = """你是严谨的研究助理。阅读给定的检索摘要或文档内容，
结合用户的原始需求，提炼核心观点、关键事实与争议点。

要求：
- 用中文分点输出，保持简洁；
- 标注信息来源序号（如【1】）；
- 不确定的内容明确说明。
"""

SYSTEM_ARTICLE_CROSS_ANALYSIS = """你是跨文本分析专家。综合多份分析结果，写一份 Markdown 草稿：
- 开头用一段话概括议题；
- 列出共识、分歧与尚未解决的问题；
- 最后给出 3 到 5 个适合检索图书的主题方向。

草稿将被用于后续的图书检索，请保证每个主题方向是一句完整、可检索的描述。
"""

SYSTEM_SIMPLE_SEARCH = """你是图书馆的荐书馆员。根据检索结果为用户推荐图书：
- 只推荐检索结果中出现的图书，不要编造书目；
- 每本书说明推荐理由，并与用户需求关联；
- 检索结果为空时，坦诚告知并建议换个说法。
"""

SYSTEM_RECOMMENDATION = """你是书评编辑，负责为主题书单撰写导语。结合调研草稿与候选书目：
- 先用两三段文字讲清议题脉络；
- 再按阅读顺序介绍每本书，说明它回答了议题的哪一部分；
- 语气克制，避免空泛的赞美。
"""

_BUILTIN: Dict[str, str] = {
    QUESTION_CLASSIFIER: SYSTEM_CLASSIFIER,
    KEYWORD_GENERATION: SYSTEM_KEYWORD_GENERATION,
    ARTICLE_ANALYSIS: SYSTEM_ARTICLE_ANALYSIS,
    ARTICLE_CROSS_ANALYSIS: SYSTEM_ARTICLE_CROSS_ANALYSIS,
    SIMPLE_SEARCH: SYSTEM_SIMPLE_SEARCH,
    RECOMMENDATION: SYSTEM_RECOMMENDATION,
}

_cache: Dict[str, str] = {}


def load_prompt(name: str, prompt_dir: Optional[str] = None) -> str:
    """
    Return the system prompt registered under `name`.

    An override file in `prompt_dir` wins over the built-in text. Unknown names
    raise KeyError.
    """
    if name in _cache:
        return _cache[name]

    content: Optional[str] = None
    if prompt_dir:
        path = Path(prompt_dir) / f"{name}.md"
        if path.is_file():
            content = path.read_text(encoding="utf-8")
            logger.debug(f"Loaded prompt override {path}")
    if content is None:
        if name not in _BUILTIN:
            logger.error(f"Unknown prompt {name!r}")
            raise KeyError(name)
        content = _BUILTIN[name]

    _cache[name] = content
    return content


def clear_prompt_cache() -> None:
    _cache.clear()
