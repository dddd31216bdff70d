"""
tools/web_tools.py
------------------
Web search for the deep-search research step.

Jina Search is tried first when enabled and keyed; the DuckDuckGo Instant
Answer API is the fallback. Results are capped at `top_k` snippets.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ...config import Settings
from ...models import SearchSnippet

logger = logging.getLogger(__name__)

JINA_SEARCH_URL = "https://s.jina.ai/"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"


class WebSearchError(Exception):
    """Every configured search engine failed for a query."""


def _ddg_topics(topics: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # RelatedTopics mixes plain entries with {"Name", "Topics": [...]} groups.
    flat: List[Dict[str, Any]] = []
    for t in topics or []:
        if isinstance(t, dict) and isinstance(t.get("Topics"), list):
            flat.extend(_ddg_topics(t["Topics"]))
        elif isinstance(t, dict):
            flat.append(t)
    return flat


def parse_duckduckgo(data: Dict[str, Any], top_k: int) -> List[SearchSnippet]:
    snippets: List[SearchSnippet] = []
    if data.get("AbstractText"):
        snippets.append(
            SearchSnippet(
                title=data.get("Heading") or "摘要",
                url=data.get("AbstractURL") or "",
                snippet=data["AbstractText"],
                source="duckduckgo",
            )
        )
    for item in list(data.get("Results") or []) + _ddg_topics(data.get("RelatedTopics") or []):
        text = (item.get("Text") or "").strip()
        if not text:
            continue
        snippets.append(
            SearchSnippet(
                title=text.split(" - ")[0][:80],
                url=item.get("FirstURL") or "",
                snippet=text,
                source="duckduckgo",
            )
        )
    return snippets[:top_k]


def parse_jina(data: Dict[str, Any], top_k: int) -> List[SearchSnippet]:
    snippets: List[SearchSnippet] = []
    for i, item in enumerate(data.get("data") or [], 1):
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        snippets.append(
            SearchSnippet(
                title=item.get("title") or f"搜索结果 {i}",
                url=item.get("url") or "",
                snippet=item.get("description") or (content or "")[:200] or "暂无摘要",
                source="jina",
                content=content,
            )
        )
    return snippets[:top_k]


class WebSearchClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.http_timeout, transport=self.transport)

    @property
    def jina_enabled(self) -> bool:
        return self.settings.use_jina_search and bool(self.settings.jina_api_key)

    async def search_jina(self, query: str, top_k: int) -> List[SearchSnippet]:
        headers = {
            "Authorization": f"Bearer {self.settings.jina_api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        async with self._client() as client:
            response = await client.post(JINA_SEARCH_URL, json={"q": query, "num": top_k}, headers=headers)
            response.raise_for_status()
            return parse_jina(response.json(), top_k)

    async def search_duckduckgo(self, query: str, top_k: int) -> List[SearchSnippet]:
        params = {"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"}
        async with self._client() as client:
            response = await client.get(DUCKDUCKGO_URL, params=params)
            response.raise_for_status()
            return parse_duckduckgo(response.json(), top_k)

    async def search(self, query: str, top_k: int = 5) -> List[SearchSnippet]:
        """
        Return at most `top_k` snippets for `query`.

        An empty list is a valid answer; WebSearchError is raised only when no
        engine could be reached.
        """
        if self.jina_enabled:
            try:
                results = await self.search_jina(query, top_k)
                if results:
                    logger.info(f"Jina search {query!r}: {len(results)} results")
                    return results
                logger.info(f"Jina search {query!r} returned nothing; trying DuckDuckGo")
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Jina search failed for {query!r}: {e}; trying DuckDuckGo")

        try:
            results = await self.search_duckduckgo(query, top_k)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"DuckDuckGo search failed for {query!r}: {e}")
            raise WebSearchError(f"网络检索失败：{e}") from e
        logger.info(f"DuckDuckGo search {query!r}: {len(results)} results")
        return results
