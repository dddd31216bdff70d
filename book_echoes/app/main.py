"""
main.py
-------
FastAPI app exposing the local AIBot endpoints under /api/local-aibot.
Includes /health for liveness checks.

Every /api/local-aibot route is gated by AIBOT_LOCAL_ENABLED (404 when off).
Validation failures answer 400 with `{"message": ...}`; anything unexpected is
logged with its traceback and answered with a generic 500 message.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import AIBotDisabledError, Settings, configure_logging, get_settings
from ..graph.classifier import classify_user_intent, pick_draft, resolve_chat_mode
from ..graph.graph import GraphServices, run_deep_search, run_document_analysis
from ..graph.nodes import (
    analyze_keyword,
    build_chat_system_prompt,
    build_cross_analysis_prompt,
    build_deep_interpretation_prompt,
    build_interpretation_prompt,
    fallback_keywords,
    generate_keywords,
)
from ..graph.prompts import ARTICLE_CROSS_ANALYSIS, RECOMMENDATION, SIMPLE_SEARCH, load_prompt
from ..graph.tools.retrieval import BookRetrievalClient, RetrievalError
from ..models import (
    ALLOWED_MODES,
    MODE_DEEP,
    ChatMessage,
    ChatRequest,
    ClassifyRequest,
    DeepInterpretationRequest,
    DeepSearchAnalysisRequest,
    DeepSearchRequest,
    DocumentAnalysisRequest,
    DraftRequest,
    GenerateInterpretationRequest,
    GenerateKeywordsRequest,
    SearchOnlyRequest,
)
from .deps import (
    LLMFactory,
    get_classifier_llm,
    get_deep_search_graph,
    get_document_graph,
    get_llm_factory,
    get_retrieval_client,
    get_services,
    require_enabled,
)
from .streaming import sse_response, text_stream_response

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Book Echoes AIBot", version="1.0.0")
router = APIRouter(prefix="/api/local-aibot", dependencies=[Depends(require_enabled)])


def _message(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, **extra})


@app.exception_handler(AIBotDisabledError)
async def disabled_handler(request: Request, exc: AIBotDisabledError):
    return _message(404, "Not Found")


@app.exception_handler(RequestValidationError)
async def validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    loc = [str(p) for p in errors[0].get("loc", ()) if p != "body"] if errors else []
    field = loc[0] if loc else "请求体"
    logger.info(f"Rejected {request.url.path}: {field} invalid")
    return _message(400, f"{field} 参数缺失或非法")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


def _latest_user_input(messages: List[ChatMessage]) -> Optional[str]:
    for m in reversed(messages):
        if m.role == "user" and m.content.strip():
            return m.content.strip()
    return None


def _llm_hint(metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    hint = metadata.get("llm_hint") or metadata.get("llmHint")
    return hint if isinstance(hint, dict) else None


# --------------------------------------------------------------------------------------
# Chat
# --------------------------------------------------------------------------------------
@router.post("/chat")
async def chat(
    req: ChatRequest,
    classifier_llm=Depends(get_classifier_llm),
    llm_factory: LLMFactory = Depends(get_llm_factory),
    retrieval: BookRetrievalClient = Depends(get_retrieval_client),
    settings: Settings = Depends(get_settings),
):
    """
    Classify the latest turn, retrieve books for the resolved mode, then stream
    the answer to the whole conversation as plain text.
    """
    if req.mode not in ALLOWED_MODES:
        return _message(400, "mode 参数非法")
    user_input = _latest_user_input(req.messages)
    if user_input is None:
        return _message(400, "messages 中缺少用户输入")

    try:
        classification = await classify_user_intent(
            classifier_llm, user_input, req.messages[:-1], previous_mode=req.mode, prompt_dir=settings.prompt_dir or None
        )
        resolution = resolve_chat_mode(classification.intent, req.mode, req.draft_markdown, req.deep_metadata)
        draft = pick_draft(req.draft_markdown, req.deep_metadata)
        logger.info(
            f"Chat turn: intent={classification.intent} ({classification.confidence:.2f}) "
            f"mode={resolution.mode} downgraded={resolution.downgraded}"
        )

        if resolution.mode == MODE_DEEP:
            result = await retrieval.multi_query(markdown_text=draft, per_query_top_k=12, final_top_k=8)
            base_prompt = load_prompt(RECOMMENDATION, settings.prompt_dir or None)
        else:
            result = await retrieval.text_search(user_input, top_k=8)
            base_prompt = load_prompt(SIMPLE_SEARCH, settings.prompt_dir or None)

        llm = llm_factory(_llm_hint(result.metadata))
        logger.info(f"Answering with {llm.config.model}")
        system = build_chat_system_prompt(
            base_prompt,
            result.context_plain_text,
            user_input,
            draft if resolution.mode == MODE_DEEP else None,
        )
    except Exception:
        logger.exception("AIBot chat failed")
        return _message(500, "对话失败，请稍后重试")

    headers = {
        "X-AIBot-Mode": resolution.mode,
        "X-AIBot-Intent": classification.intent,
        "X-AIBot-Intent-Confidence": f"{classification.confidence:.2f}",
    }
    if resolution.downgraded:
        headers["X-AIBot-Mode-Downgraded"] = "1"
    return text_stream_response(llm.stream(system, messages=req.messages), "chat", headers)


@router.post("/classify")
async def classify(req: ClassifyRequest, classifier_llm=Depends(get_classifier_llm), settings: Settings = Depends(get_settings)):
    if not req.user_input.strip():
        return _message(400, "userInput 不能为空")
    try:
        result = await classify_user_intent(
            classifier_llm, req.user_input, req.messages, req.previous_mode, prompt_dir=settings.prompt_dir or None
        )
    except Exception:
        logger.exception("Intent classification failed")
        return _message(500, "意图识别失败，请稍后重试")
    return result.model_dump(by_alias=True, exclude_none=True)


# --------------------------------------------------------------------------------------
# Deep search
# --------------------------------------------------------------------------------------
@router.post("/deep-search-analysis")
async def deep_search_analysis(
    req: DeepSearchAnalysisRequest,
    graph=Depends(get_deep_search_graph),
    services: GraphServices = Depends(get_services),
):
    if not req.user_input.strip():
        return _message(400, "userInput 不能为空")
    return sse_response(run_deep_search(graph, req.user_input.strip(), services))


@router.post("/document-analysis")
async def document_analysis(
    req: DocumentAnalysisRequest,
    graph=Depends(get_document_graph),
    services: GraphServices = Depends(get_services),
):
    if not req.documents:
        return _message(400, "documents 不能为空")
    return sse_response(run_document_analysis(graph, req.documents, services))


@router.post("/draft")
async def draft(req: DraftRequest, services: GraphServices = Depends(get_services)):
    """
    Single-pass draft without progress events: one web search on the raw input,
    one article analysis, then one cross-analysis that becomes the draft.
    """
    user_input = req.user_input.strip()
    if not user_input:
        return _message(400, "user_input 不能为空")
    try:
        snippets = await services.search.search(user_input, top_k=services.settings.snippets_per_keyword)
        keyword = fallback_keywords(user_input)[0]
        analysis = (await analyze_keyword(services.llm, keyword, user_input, snippets, services.prompt_dir)).strip()
        cross = await services.llm.generate(
            load_prompt(ARTICLE_CROSS_ANALYSIS, services.prompt_dir),
            build_cross_analysis_prompt(user_input, [keyword], [analysis]),
            label="cross analysis",
        )
    except Exception:
        logger.exception("Draft generation failed")
        return _message(500, "生成草稿失败，请稍后重试")

    cross = cross.strip()
    logger.info(f"Draft ready for {user_input!r}: {len(snippets)} snippets")
    return {
        "draft_markdown": cross,
        "search_snippets": [s.model_dump() for s in snippets],
        "article_analysis": analysis,
        "article_cross_analysis": cross,
    }


@router.post("/generate-keywords")
async def generate_keywords_route(req: GenerateKeywordsRequest, services: GraphServices = Depends(get_services)):
    if not req.user_input.strip():
        return _message(400, "user_input 不能为空")
    try:
        keywords = await generate_keywords(services.llm, req.user_input, services.prompt_dir)
    except Exception:
        logger.exception("Keyword generation failed")
        return _message(500, "关键词生成失败，请稍后重试")
    return {"success": True, "keywords": [k.model_dump() for k in keywords], "userInput": req.user_input}


@router.post("/search-only")
async def search_only(req: SearchOnlyRequest, retrieval: BookRetrievalClient = Depends(get_retrieval_client)):
    if not req.query.strip():
        return _message(400, "query 不能为空")
    try:
        result = await retrieval.text_search(req.query.strip(), top_k=8)
    except RetrievalError as e:
        logger.error(f"Search-only retrieval failed: {e.code} {e.message}")
        return _message(500, "图书检索失败，请稍后重试", code=e.code)
    except Exception:
        logger.exception("Search-only failed")
        return _message(500, "图书检索失败，请稍后重试")
    return {
        "success": True,
        "query": req.query,
        "retrievalResult": result.data.model_dump(by_alias=True),
        "contextPlainText": result.context_plain_text,
        "metadata": result.metadata,
    }


@router.post("/deep-search")
async def deep_search(req: DeepSearchRequest, retrieval: BookRetrievalClient = Depends(get_retrieval_client)):
    if not req.draft_markdown.strip():
        return _message(400, "draftMarkdown 不能为空")
    try:
        result = await retrieval.multi_query(markdown_text=req.draft_markdown, per_query_top_k=12, final_top_k=8)
    except RetrievalError as e:
        logger.error(f"Deep-search retrieval failed: {e.code} {e.message}")
        return _message(500, "深度检索失败，请稍后重试", code=e.code)
    except Exception:
        logger.exception("Deep-search failed")
        return _message(500, "深度检索失败，请稍后重试")
    return {
        "success": True,
        "draftMarkdown": req.draft_markdown,
        "retrievalResult": result.data.model_dump(by_alias=True),
        "userInput": req.user_input,
    }


# --------------------------------------------------------------------------------------
# Interpretation
# --------------------------------------------------------------------------------------
@router.post("/generate-interpretation")
async def generate_interpretation(
    req: GenerateInterpretationRequest,
    llm_factory: LLMFactory = Depends(get_llm_factory),
    settings: Settings = Depends(get_settings),
):
    if not req.original_query.strip():
        return _message(400, "originalQuery 不能为空")
    if not req.selected_books:
        return _message(400, "selectedBooks 不能为空")
    try:
        llm = llm_factory()
        logger.info(f"Interpreting with {llm.config.model}")
        system = load_prompt(SIMPLE_SEARCH, settings.prompt_dir or None)
        prompt = build_interpretation_prompt(req.original_query, req.selected_books)
    except Exception:
        logger.exception("Interpretation setup failed")
        return _message(500, "生成解读失败，请稍后重试")

    logger.info(f"Interpretation for {len(req.selected_books)} books: {req.original_query!r}")
    headers = {"X-AIBot-Mode": "interpretation", "X-AIBot-Books-Count": str(len(req.selected_books))}
    return text_stream_response(llm.stream(system, prompt=prompt), "interpretation", headers)


@router.post("/deep-interpretation")
async def deep_interpretation(
    req: DeepInterpretationRequest,
    llm_factory: LLMFactory = Depends(get_llm_factory),
    settings: Settings = Depends(get_settings),
):
    if not req.selected_books:
        return _message(400, "selectedBooks 不能为空")
    if not req.draft_markdown.strip():
        return _message(400, "draftMarkdown 不能为空")
    try:
        llm = llm_factory()
        system = load_prompt(RECOMMENDATION, settings.prompt_dir or None)
        prompt = build_deep_interpretation_prompt(req.original_query, req.draft_markdown, req.selected_books)
        interpretation = await llm.generate(system, prompt, label="deep interpretation")
    except Exception:
        logger.exception("Deep interpretation failed")
        return _message(500, "生成解读失败，请稍后重试")
    return {
        "success": True,
        "interpretation": interpretation,
        "selectedBooks": [b.model_dump(by_alias=True) for b in req.selected_books],
        "draftMarkdown": req.draft_markdown,
        "originalQuery": req.original_query,
    }


@router.post("/clear")
async def clear():
    # Conversations live in the client; there is no server-side state to drop.
    return {"success": True, "message": "对话已清空"}


app.include_router(router)
