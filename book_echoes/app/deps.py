from __future__ import annotations
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from fastapi import Depends

from ..config import Settings, get_settings
from ..graph.graph import GraphServices, build_deep_search_graph, build_document_graph
from ..graph.llm import LLMClient
from ..graph.tools.retrieval import BookRetrievalClient
from ..graph.tools.web_tools import WebSearchClient

LLMFactory = Callable[..., LLMClient]


def require_enabled(settings: Settings = Depends(get_settings)) -> None:
    settings.assert_enabled()


@lru_cache(maxsize=1)
def get_deep_search_graph():
    return build_deep_search_graph()


@lru_cache(maxsize=1)
def get_document_graph():
    return build_document_graph()


def get_llm_factory(settings: Settings = Depends(get_settings)) -> LLMFactory:
    """Build LLM clients; `hint` is the retrieval backend's llm_hint metadata."""
    def factory(hint: Optional[Dict[str, Any]] = None, **overrides: Any) -> LLMClient:
        return LLMClient(settings, hint=hint, **overrides)
    return factory


def get_classifier_llm(settings: Settings = Depends(get_settings), factory: LLMFactory = Depends(get_llm_factory)):
    if settings.classifier_model:
        return factory(model=settings.classifier_model)
    return factory()


def get_search_client(settings: Settings = Depends(get_settings)) -> WebSearchClient:
    return WebSearchClient(settings)


def get_retrieval_client(settings: Settings = Depends(get_settings)) -> BookRetrievalClient:
    return BookRetrievalClient(settings)


def get_services(
    settings: Settings = Depends(get_settings),
    factory: LLMFactory = Depends(get_llm_factory),
    search: WebSearchClient = Depends(get_search_client),
) -> GraphServices:
    return GraphServices(llm=factory(), search=search, settings=settings, prompt_dir=settings.prompt_dir or None)
