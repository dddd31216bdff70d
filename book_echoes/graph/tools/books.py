"""
tools/books.py
--------------
Normalization of retrieval-backend records into BookInfo, deduplication, and
the selection helpers the chat UI uses before asking for an interpretation.

The backend's field names vary by pipeline version (English keys, Douban-style
Chinese keys, camelCase). FIELD_ACCESSORS lists, per BookInfo field, the
candidate keys in the order they are tried.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ...models import BookInfo, RetrievalResultData

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.42
DEFAULT_SELECTION_LIMIT = 8
SYNTHETIC_ID_PREFIX = "book-"

Accessor = Callable[[Dict[str, Any]], Any]


def key(name: str) -> Accessor:
    return lambda item: item.get(name)


FIELD_ACCESSORS: Dict[str, Tuple[Accessor, ...]] = {
    "id": (key("book_id"), key("id"), key("书目条码")),
    "embedding_id": (key("embedding_id"), key("embeddingId")),
    "title": (key("title"), key("豆瓣书名"), key("book_title")),
    "subtitle": (key("subtitle"), key("豆瓣副标题")),
    "author": (key("author"), key("豆瓣作者"), key("authors")),
    "translator": (key("translator"), key("豆瓣译者")),
    "publisher": (key("publisher"), key("豆瓣出版社")),
    "publish_year": (key("publish_year"), key("publishYear"), key("豆瓣出版年")),
    "rating": (key("rating"), key("douban_rating"), key("豆瓣评分")),
    "call_number": (key("call_number"), key("callNumber"), key("call_no"), key("索书号")),
    "page_count": (key("page_count"), key("pageCount"), key("豆瓣页数")),
    "cover_url": (key("cover_url"), key("coverUrl"), key("豆瓣封面图片链接")),
    "description": (key("description"), key("summary"), key("豆瓣内容简介")),
    "author_intro": (key("author_intro"), key("authorIntro"), key("豆瓣作者简介")),
    "table_of_contents": (key("table_of_contents"), key("tableOfContents"), key("豆瓣目录")),
    "highlights": (key("highlights"), key("highlight")),
    "isbn": (key("isbn"), key("ISBN"), key("豆瓣ISBN")),
    "tags": (key("tags"), key("豆瓣标签")),
    "fused_score": (key("fused_score"), key("fusedScore")),
    "similarity_score": (key("similarity_score"), key("similarityScore"), key("similarity")),
    "reranker_score": (key("reranker_score"), key("rerankerScore")),
    "final_score": (key("final_score"), key("finalScore")),
    "match_source": (key("match_source"), key("matchSource")),
    "source_query_type": (key("source_query_type"), key("sourceQueryType")),
}

_FLOAT_FIELDS = {"rating", "fused_score", "similarity_score", "reranker_score", "final_score"}
_INT_FIELDS = {"publish_year", "page_count"}
_LIST_FIELDS = {"highlights", "tags"}

PLAIN_TEXT_LINE = re.compile(r"^【(?P<title>.+?)】(?P<highlight>.*?)\s*-\s*(?P<rating>\d+(?:\.\d+)?)\s*分\s*$")


def pick(item: Dict[str, Any], field: str) -> Any:
    """First non-empty value among the field's candidate accessors."""
    for accessor in FIELD_ACCESSORS[field]:
        value = accessor(item)
        if value is not None and value != "":
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    match = re.search(r"\d+", str(value)) if value is not None else None
    return int(match.group()) if match else None


def _to_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [v.strip() for v in re.split(r"[;；,，]", value) if v.strip()]
    return []


def _coerce(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in _FLOAT_FIELDS:
        return _to_float(value)
    if field in _INT_FIELDS:
        return _to_int(value)
    if field in _LIST_FIELDS:
        return _to_list(value)
    if field == "author" and isinstance(value, (list, tuple)):
        return " / ".join(str(v) for v in value)
    return str(value)


def parse_book_record(item: Dict[str, Any], index: int) -> BookInfo:
    fields: Dict[str, Any] = {}
    for field in FIELD_ACCESSORS:
        value = _coerce(field, pick(item, field))
        if value is not None:
            fields[field] = value
    fields["id"] = fields.get("id") or f"{SYNTHETIC_ID_PREFIX}{index}"
    fields.setdefault("title", "未知书名")
    return BookInfo(**fields)


def parse_plain_text_line(line: str, index: int) -> BookInfo:
    """
    Parse one `【title】highlight - N.N分` line. Lines that do not match are kept
    whole as a minimal record (line as title and description).
    """
    text = line.strip()
    m = PLAIN_TEXT_LINE.match(text)
    if not m:
        return BookInfo(id=f"{SYNTHETIC_ID_PREFIX}{index}", title=text, description=text)
    highlight = m.group("highlight").strip()
    return BookInfo(
        id=f"{SYNTHETIC_ID_PREFIX}{index}",
        title=m.group("title").strip(),
        highlights=[highlight] if highlight else [],
        rating=float(m.group("rating")),
    )


def parse_plain_text(context: str) -> List[BookInfo]:
    lines = [ln for ln in (context or "").splitlines() if ln.strip()]
    return [parse_plain_text_line(ln, i) for i, ln in enumerate(lines)]


def book_score(book: BookInfo) -> float:
    """Relevance used to break ties between duplicates: final > similarity > rating."""
    return book.final_score or book.similarity_score or book.rating or 0.0


def dedupe_key(book: BookInfo) -> str:
    if book.id and not book.id.startswith(SYNTHETIC_ID_PREFIX):
        return f"book_id:{book.id}"
    if book.embedding_id:
        return f"embedding:{book.embedding_id}"
    return f"title_author:{book.title.lower().strip()}-{(book.author or '').lower().strip()}"


def deduplicate_books(books: Iterable[BookInfo]) -> List[BookInfo]:
    """
    Collapse records that share a dedupe key, keeping the higher-scoring one in
    the position of the first occurrence.
    """
    kept: Dict[str, BookInfo] = {}
    for book in books:
        k = dedupe_key(book)
        existing = kept.get(k)
        if existing is None or book_score(book) > book_score(existing):
            kept[k] = book
    return list(kept.values())


def parse_retrieval_response(
    data: Dict[str, Any],
    search_query: str,
    search_type: str,
) -> RetrievalResultData:
    """
    Build RetrievalResultData from a backend JSON body.

    `results` wins over `context_plain_text`; a body with neither yields an
    empty result rather than an error.
    """
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    results = data.get("results")
    context = data.get("context_plain_text") or data.get("contextPlainText") or ""

    if isinstance(results, list):
        books = [parse_book_record(item, i) for i, item in enumerate(results) if isinstance(item, dict)]
    elif context:
        books = parse_plain_text(context)
    else:
        logger.info(f"Retrieval response for {search_query!r} has no results or context text")
        books = []

    books = deduplicate_books(books)
    return RetrievalResultData(
        books=books,
        total_count=len(books),
        search_query=search_query,
        search_type=search_type,
        metadata=metadata,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# --------------------------------------------------------------------------------------
# Selection helpers
# --------------------------------------------------------------------------------------
def filter_by_similarity(books: Sequence[BookInfo], threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> List[BookInfo]:
    return [b for b in books if (b.similarity_score or 0.0) > threshold]


def filter_by_ids(books: Sequence[BookInfo], ids: Iterable[str]) -> List[BookInfo]:
    wanted = set(ids)
    return [b for b in books if b.id in wanted]


def select_books(
    books: Sequence[BookInfo],
    selected_ids: Optional[Iterable[str]] = None,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    limit: int = DEFAULT_SELECTION_LIMIT,
) -> List[BookInfo]:
    """
    The user's picks when there are any; otherwise the top `limit` books above
    the similarity threshold, best first.
    """
    ids = list(selected_ids or [])
    if ids:
        return filter_by_ids(books, ids)
    candidates = sorted(filter_by_similarity(books, threshold), key=lambda b: b.similarity_score or 0.0, reverse=True)
    return candidates[:limit]
