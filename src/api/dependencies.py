"""Service wiring for the API: one container per process, injected with ``Depends``."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import anthropic
import httpx
import openai
from fastapi import Depends, HTTPException

from src.agent.react import ReActAgent
from src.agent.tools import build_tools
from src.capabilities import EmbeddingProvider, LLMProvider, VectorStore
from src.config import Settings, get_settings
from src.ingestion.embeddings import create_embedder
from src.ingestion.pipeline import IngestionPipeline
from src.ingestion.storage import SupabaseVectorStore, get_supabase_client
from src.retrieval.generation import Generator
from src.retrieval.llm import create_llm
from src.retrieval.search import HybridRetriever


# Upstream provider errors become 503 so clients get JSON with CORS headers intact.
# httpx.HTTPError covers Ollama, which is reached over plain HTTP.
PROVIDER_ERRORS = (anthropic.APIStatusError, openai.APIStatusError, httpx.HTTPError)


@dataclass
class Services:
    """Everything the routes need, built once from settings."""

    settings: Settings
    store: VectorStore
    embedder: EmbeddingProvider
    llm: LLMProvider
    retriever: HybridRetriever
    generator: Generator
    agent: ReActAgent
    pipeline: IngestionPipeline


def build_services(
    settings: Settings,
    *,
    store: VectorStore | None = None,
    embedder: EmbeddingProvider | None = None,
    llm: LLMProvider | None = None,
) -> Services:
    """Wire the core services. Any capability can be supplied directly.

    Raises:
        ValueError: If a provider is not supplied and its API key is missing.
    """
    if store is None:
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required")
        client = get_supabase_client(settings.supabase_url, settings.supabase_key)
        store = SupabaseVectorStore(client, settings.supabase_table)
    embedder = embedder or create_embedder(settings)
    llm = llm or create_llm(settings)

    retriever = HybridRetriever(embedder, store)
    return Services(
        settings=settings,
        store=store,
        embedder=embedder,
        llm=llm,
        retriever=retriever,
        generator=Generator(retriever, llm),
        agent=ReActAgent(llm, build_tools(retriever), use_native_tools=settings.agent_native_tools),
        pipeline=IngestionPipeline(
            embedder,
            store,
            llm=llm,
            batch_size=settings.embed_batch_size,
            max_embed_chars=settings.max_embed_chars,
        ),
    )


@lru_cache(maxsize=1)
def _services() -> Services:
    return build_services(get_settings())


def current_services() -> Services:
    """FastAPI dependency returning the process-wide services as configured.

    Raises:
        HTTPException(500): A provider or the store is not configured.
    """
    try:
        return _services()
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=f"Service misconfigured: {exc}") from exc


async def get_services(services: Annotated[Services, Depends(current_services)]) -> Services:
    """FastAPI dependency returning the services with the store initialized."""
    await services.store.initialize()
    return services
