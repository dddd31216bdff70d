"""
streaming.py
------------
Response helpers for the two streaming shapes the chat UI reads:
SSE frames (one JSON object per `data:` line) and raw chunked text.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from fastapi.responses import StreamingResponse
from sse_starlette.sse import EventSourceResponse

logger = logging.getLogger(__name__)

INTERRUPTED_NOTICE = "\n\n[回答生成中断，请稍后重试]"


async def _sse_events(frames: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[Dict[str, str]]:
    async for frame in frames:
        yield {"data": json.dumps(frame, ensure_ascii=False)}


def sse_response(frames: AsyncIterator[Dict[str, Any]]) -> EventSourceResponse:
    return EventSourceResponse(
        _sse_events(frames),
        sep="\n",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def guarded_text(chunks: AsyncIterator[str], label: str) -> AsyncIterator[str]:
    """Pass chunks through; a failure mid-stream ends the body with a notice."""
    try:
        async for chunk in chunks:
            yield chunk
    except Exception:
        logger.exception(f"{label} stream interrupted")
        yield INTERRUPTED_NOTICE


def text_stream_response(
    chunks: AsyncIterator[str],
    label: str,
    headers: Optional[Mapping[str, str]] = None,
) -> StreamingResponse:
    return StreamingResponse(
        guarded_text(chunks, label),
        media_type="text/plain; charset=utf-8",
        headers=dict(headers or {}),
    )
