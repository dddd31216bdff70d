"""
models.py
---------
Pydantic models used by the API layer, the deep-search graph state and the
retrieval client.

Book and retrieval records serialize with camelCase aliases (the wire format the
chat UI reads) and accept snake_case or camelCase on input.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AIBotMode = Literal["text-search", "deep"]
Intent = Literal["simple_search", "deep_search", "other"]
Priority = Literal["high", "medium", "low"]
ProgressStatus = Literal["running", "completed", "error"]

MODE_TEXT = "text-search"
MODE_DEEP = "deep"
ALLOWED_MODES = (MODE_TEXT, MODE_DEEP)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class LLMConfig(BaseModel):
    base_url: str
    api_key: str
    model: str
    temperature: Optional[float] = None


class IntentClassificationResult(CamelModel):
    intent: Intent
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: Optional[str] = None
    source: Literal["rule", "model"]
    suggested_query: Optional[str] = None
    raw_output: Optional[str] = None


class ModeResolution(BaseModel):
    mode: AIBotMode
    downgraded: bool = False


class KeywordResult(BaseModel):
    keyword: str
    reason: str = ""
    priority: Priority = "medium"


class SearchSnippet(BaseModel):
    title: str
    url: str = ""
    snippet: str = ""
    source: Literal["jina", "duckduckgo"] = "duckduckgo"
    content: Optional[str] = None


class BookInfo(CamelModel):
    id: str
    title: str
    author: str = ""
    subtitle: Optional[str] = None
    translator: Optional[str] = None
    publisher: Optional[str] = None
    publish_year: Optional[int] = None
    rating: Optional[float] = None
    call_number: Optional[str] = None
    page_count: Optional[int] = None
    cover_url: Optional[str] = None
    description: Optional[str] = None
    author_intro: Optional[str] = None
    table_of_contents: Optional[str] = None
    highlights: List[str] = Field(default_factory=list)
    isbn: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    # Scores computed by the retrieval backend
    fused_score: Optional[float] = None
    similarity_score: Optional[float] = None
    reranker_score: Optional[float] = None
    final_score: Optional[float] = None
    match_source: Optional[str] = None
    embedding_id: Optional[str] = None
    source_query_type: Optional[str] = None


class RetrievalResultData(CamelModel):
    books: List[BookInfo] = Field(default_factory=list)
    total_count: int = 0
    search_query: str = ""
    search_type: Literal["text-search", "multi-query"] = "text-search"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)


class RetrievalResult(BaseModel):
    """Raw context block plus the structured books parsed from one backend call."""
    context_plain_text: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    data: RetrievalResultData


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    phase: str
    message: str
    status: ProgressStatus
    details: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class DocumentInput(BaseModel):
    id: str
    name: str
    content: str


# --------------------------------------------------------------------------------------
# Request bodies
# --------------------------------------------------------------------------------------
class ChatRequest(BaseModel):
    mode: str = MODE_TEXT
    messages: List[ChatMessage]
    draft_markdown: Optional[str] = None
    deep_metadata: Optional[Dict[str, Any]] = None


class DeepSearchAnalysisRequest(BaseModel):
    user_input: str = Field(..., alias="userInput")


class DocumentAnalysisRequest(BaseModel):
    documents: List[DocumentInput]


class DraftRequest(BaseModel):
    user_input: str


class GenerateInterpretationRequest(BaseModel):
    original_query: str = Field(..., alias="originalQuery")
    selected_books: List[BookInfo] = Field(..., alias="selectedBooks")
    messages: List[ChatMessage] = Field(default_factory=list)


class ClassifyRequest(BaseModel):
    user_input: str = Field(..., alias="userInput")
    messages: List[ChatMessage] = Field(default_factory=list)
    previous_mode: Optional[AIBotMode] = Field(default=None, alias="previousMode")


class GenerateKeywordsRequest(BaseModel):
    user_input: str


class SearchOnlyRequest(BaseModel):
    query: str
    messages: List[ChatMessage] = Field(default_factory=list)


class DeepSearchRequest(BaseModel):
    draft_markdown: str = Field(..., alias="draftMarkdown")
    user_input: str = Field(..., alias="userInput")


class DeepInterpretationRequest(BaseModel):
    selected_books: List[BookInfo] = Field(..., alias="selectedBooks")
    draft_markdown: str = Field(..., alias="draftMarkdown")
    original_query: str = Field(..., alias="originalQuery")
