"""
session.py
----------
Client-side state for one deep-search conversation, kept as a plain object so
the flow can be driven and tested without a UI.

Phases:
    idle -> progress -> draft-streaming -> draft-confirm -> book-search
         -> book-selection -> report-streaming -> completed

`error` is entered from `progress`/`draft-streaming` when an error frame
arrives and can only be left by `cancel`.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..models import BookInfo, KeywordResult, ProgressEvent, SearchSnippet
from .tools.books import select_books

logger = logging.getLogger(__name__)

IDLE = "idle"
PROGRESS = "progress"
DRAFT_STREAMING = "draft-streaming"
DRAFT_CONFIRM = "draft-confirm"
BOOK_SEARCH = "book-search"
BOOK_SELECTION = "book-selection"
REPORT_STREAMING = "report-streaming"
COMPLETED = "completed"
ERROR = "error"


class SessionStateError(Exception):
    """Operation not allowed in the session's current phase."""


class DeepSearchSession:
    def __init__(self) -> None:
        self.phase = IDLE
        self.user_input = ""
        self._reset_run()

    def _reset_run(self) -> None:
        self.progress: Dict[str, ProgressEvent] = {}
        self.draft_markdown = ""
        self.keywords: List[KeywordResult] = []
        self.snippets: List[SearchSnippet] = []
        self.article_analysis = ""
        self.books: List[BookInfo] = []
        self.selected_books: List[BookInfo] = []
        self.report = ""
        self.error: Optional[str] = None

    def _require(self, *phases: str) -> None:
        if self.phase not in phases:
            raise SessionStateError(f"当前阶段 {self.phase} 不允许此操作（需要 {', '.join(phases)}）")

    def _move(self, phase: str) -> None:
        logger.debug(f"Session phase {self.phase} -> {phase}")
        self.phase = phase

    @property
    def progress_log(self) -> List[ProgressEvent]:
        """One entry per phase key, in first-seen order."""
        return list(self.progress.values())

    def start(self, user_input: str) -> None:
        self._require(IDLE)
        if not user_input.strip():
            raise SessionStateError("用户输入不能为空")
        self.user_input = user_input
        self._reset_run()
        self._move(PROGRESS)

    def apply_frame(self, frame: Dict[str, Any]) -> None:
        """Fold one SSE frame from deep-search-analysis into the session."""
        kind = frame.get("type")
        if kind == "progress":
            self._require(PROGRESS, DRAFT_STREAMING)
            event = ProgressEvent.model_validate(frame)
            self.progress[event.phase] = event
            if event.phase == ERROR:
                self.error = event.details or event.message
                self._move(ERROR)
        elif kind == "draft-start":
            self._require(PROGRESS)
            self.keywords = [KeywordResult.model_validate(k) for k in frame.get("keywords") or []]
            self.snippets = [SearchSnippet.model_validate(s) for s in frame.get("searchSnippets") or []]
        elif kind == "draft-chunk":
            self._require(PROGRESS, DRAFT_STREAMING)
            if self.phase == PROGRESS:
                self._move(DRAFT_STREAMING)
            self.draft_markdown += frame.get("content") or ""
        elif kind == "draft-complete":
            self._require(PROGRESS, DRAFT_STREAMING)
            self.draft_markdown = (frame.get("draftMarkdown") or self.draft_markdown).strip()
            self.article_analysis = frame.get("articleAnalysis") or frame.get("documentAnalyses") or ""
            self._move(DRAFT_CONFIRM)
        else:
            raise SessionStateError(f"未知的事件类型: {kind}")

    def edit_draft(self, text: str) -> None:
        self._require(DRAFT_CONFIRM)
        self.draft_markdown = text

    def confirm(self) -> str:
        """Accept the draft; returns the markdown to send to multi-query retrieval."""
        self._require(DRAFT_CONFIRM)
        if not self.draft_markdown.strip():
            raise SessionStateError("草稿内容为空")
        self._move(BOOK_SEARCH)
        return self.draft_markdown

    def receive_books(self, books: Iterable[BookInfo]) -> None:
        self._require(BOOK_SEARCH)
        self.books = list(books)
        self.selected_books = []
        self._move(BOOK_SELECTION)

    def select_books(self, selected_ids: Optional[Iterable[str]] = None) -> List[BookInfo]:
        self._require(BOOK_SELECTION)
        self.selected_books = select_books(self.books, selected_ids)
        return self.selected_books

    def start_report(self) -> None:
        self._require(BOOK_SELECTION)
        if not self.selected_books:
            raise SessionStateError("请至少选择一本图书")
        self.report = ""
        self._move(REPORT_STREAMING)

    def append_report(self, chunk: str) -> None:
        self._require(REPORT_STREAMING)
        self.report += chunk

    def complete(self) -> None:
        self._require(REPORT_STREAMING)
        self._move(COMPLETED)

    def regenerate(self) -> str:
        """Restart the pipeline with the same input; returns that input."""
        self._require(DRAFT_CONFIRM)
        self._reset_run()
        self._move(PROGRESS)
        return self.user_input

    def cancel(self) -> None:
        self.user_input = ""
        self._reset_run()
        self._move(IDLE)
