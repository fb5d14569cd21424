"""Query endpoints: single-shot RAG answers, agent answers and streamed answers."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from src.api.dependencies import PROVIDER_ERRORS, Services, get_services
from src.api.models import QueryRequest, QueryResponse, ReasoningStep, SourceReference
from src.capabilities import SearchFilters
from src.retrieval import generation

router = APIRouter()


def _to_core_request(request: QueryRequest) -> generation.QueryRequest:
    filters = None
    if request.filters is not None:
        filters = SearchFilters(
            participants=request.filters.participants,
            start=request.filters.start_date,
            end=request.filters.end_date,
            conversation_id=request.filters.conversation_id,
        )
    return generation.QueryRequest(
        question=request.question,
        filters=filters,
        options=generation.QueryOptions(**request.options.model_dump()),
    )


@router.post("/api/query", response_model=QueryResponse)
async def query(
    request: QueryRequest,
    services: Annotated[Services, Depends(get_services)],
) -> QueryResponse:
    """Answer a question over the ingested conversations.

    ``options.use_agent`` routes the question to the multi-step agent;
    otherwise one retrieval plus one model call answers it.
    """
    try:
        if request.options.use_agent:
            result = await services.agent.run(request.question)
            return QueryResponse(
                answer=result.answer,
                reasoning=[ReasoningStep(**asdict(step)) for step in result.reasoning],
                metadata=result.metadata,
            )

        response = await services.generator.query(_to_core_request(request))
    except PROVIDER_ERRORS as exc:
        raise HTTPException(status_code=503, detail=f"LLM unavailable: {exc}") from exc

    return QueryResponse(
        answer=response.answer,
        sources=[SourceReference(**asdict(ref)) for ref in response.sources],
        metadata=response.metadata,
    )


@router.post("/api/query/stream")
async def query_stream(
    request: QueryRequest,
    services: Annotated[Services, Depends(get_services)],
) -> StreamingResponse:
    """Stream the single-shot answer as plain text."""
    tokens = services.generator.query_stream(_to_core_request(request))

    # Pull the first token before responding so provider errors still map to 503.
    try:
        first = await anext(tokens, "")
    except PROVIDER_ERRORS as exc:
        raise HTTPException(status_code=503, detail=f"LLM unavailable: {exc}") from exc

    async def body() -> AsyncIterator[str]:
        yield first
        async for token in tokens:
            yield token

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")
