"""
tools/retrieval.py
------------------
Async client for the book-search backend (`/api/books/text-search` and
`/api/books/multi-query`).

Both endpoints accept the same response-format flag and answer either with a
JSON body (`results`, `context_plain_text`, `metadata`) or a `text/plain`
context block. The client always hands back a RetrievalResult: the context
text for the chat prompt plus the parsed, deduplicated books.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from ...config import Settings
from ...models import BookInfo, RetrievalResult
from .books import parse_retrieval_response

logger = logging.getLogger(__name__)

TEXT_SEARCH_PATH = "/api/books/text-search"
MULTI_QUERY_PATH = "/api/books/multi-query"


class RetrievalError(Exception):
    """Backend call failed. `code` is `HTTP_<status>` or `NETWORK_ERROR`."""

    def __init__(self, message: str, code: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


def render_context(books: Sequence[BookInfo], template: str) -> str:
    """Render books line by line with the plain-text template."""
    lines = []
    for book in books:
        values = {
            "title": book.title,
            "author": book.author,
            "highlights": "；".join(book.highlights) or (book.description or "")[:60],
            "rating": book.rating if book.rating is not None else "暂无",
            "call_number": book.call_number or "",
        }
        try:
            lines.append(template.format(**values))
        except (KeyError, IndexError, ValueError):
            lines.append(f"【{book.title}】{values['highlights']} - {values['rating']}分")
    return "\n".join(lines)


class BookRetrievalClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = settings.book_api_base_url.rstrip("/")
        self.timeout = settings.http_timeout
        self.template = settings.plain_text_template
        self.transport = transport

    def _enrich(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {k: v for k, v in payload.items() if v is not None}
        # json (not plain_text) so structured books come back; context is rendered locally when absent.
        body.setdefault("response_format", "json")
        body.setdefault("plain_text_template", self.template)
        return body

    async def _post(self, path: str, payload: Dict[str, Any], search_query: str, search_type: str) -> RetrievalResult:
        endpoint = f"{self.base_url}{path}"
        body = self._enrich(payload)
        logger.info(f"Book API request {endpoint} (keys: {sorted(body)})")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(endpoint, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Book API {endpoint} returned {status}")
            raise RetrievalError(f"图书检索 API 返回 {status}", code=f"HTTP_{status}", details=e.response.text[:500]) from e
        except httpx.HTTPError as e:
            logger.error(f"Book API {endpoint} unreachable: {e}")
            raise RetrievalError("图书检索服务连接失败", code="NETWORK_ERROR", details=str(e)) from e

        if "text/plain" in response.headers.get("content-type", ""):
            data: Dict[str, Any] = {"context_plain_text": response.text}
        else:
            try:
                data = response.json()
            except ValueError as e:
                raise RetrievalError("图书检索 API 响应不是合法 JSON", code="INVALID_RESPONSE", details=str(e)) from e
            if not isinstance(data, dict):
                data = {"results": data} if isinstance(data, list) else {}

        parsed = parse_retrieval_response(data, search_query, search_type)
        context = data.get("context_plain_text") or data.get("contextPlainText") or ""
        if not context and parsed.books:
            context = render_context(parsed.books, body["plain_text_template"])

        logger.info(f"Book API {path}: {parsed.total_count} books")
        return RetrievalResult(context_plain_text=context, metadata=parsed.metadata, data=parsed)

    async def text_search(
        self,
        query: str,
        top_k: int = 8,
        min_rating: Optional[float] = None,
        response_format: Optional[str] = None,
        plain_text_template: Optional[str] = None,
    ) -> RetrievalResult:
        payload = {
            "query": query,
            "top_k": top_k,
            "min_rating": min_rating,
            "response_format": response_format,
            "plain_text_template": plain_text_template,
        }
        return await self._post(TEXT_SEARCH_PATH, payload, query, "text-search")

    async def multi_query(
        self,
        markdown_text: str,
        per_query_top_k: int = 12,
        final_top_k: int = 8,
        min_rating: Optional[float] = None,
        enable_rerank: Optional[bool] = None,
        disable_exact_match: Optional[bool] = None,
        response_format: Optional[str] = None,
        plain_text_template: Optional[str] = None,
    ) -> RetrievalResult:
        payload = {
            "markdown_text": markdown_text,
            "per_query_top_k": per_query_top_k,
            "final_top_k": final_top_k,
            "min_rating": min_rating,
            "enable_rerank": enable_rerank,
            "disable_exact_match": disable_exact_match,
            "response_format": response_format,
            "plain_text_template": plain_text_template,
        }
        return await self._post(MULTI_QUERY_PATH, payload, markdown_text[:200], "multi-query")
