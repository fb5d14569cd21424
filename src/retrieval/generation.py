"""Single-shot answer generation over retrieved chat excerpts, with citations."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from src.capabilities import LLMProvider, SearchFilters
from src.retrieval.search import ChunkReference, HybridRetriever, build_context, to_references

RAG_SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions about WhatsApp conversations.\n"
    "You have access to conversation excerpts that may contain relevant information.\n"
    "Always base your answers on the provided context. If the context doesn't contain "
    "enough information to answer the question, say so.\n"
    "Be concise and direct in your responses."
)

NO_RESULTS_ANSWER = (
    "I couldn't find any relevant information in the conversations for your question."
)


def build_query_prompt(question: str, context: str) -> str:
    return (
        "Based on the following conversation excerpts, answer the question.\n\n"
        f"## Conversation Context\n{context}\n\n"
        f"## Question\n{question}\n\n"
        "## Instructions\n"
        "- Answer based ONLY on the provided context\n"
        '- If the answer is not in the context, say "I couldn\'t find this information '
        'in the conversations"\n'
        "- Include relevant details like dates, names, and specific messages when applicable\n"
        "- Be concise but complete\n\n"
        "## Answer"
    )


def build_summary_prompt(text: str) -> str:
    return (
        "Summarize this conversation excerpt in 1-2 sentences. "
        f"Focus on the main topics discussed:\n\n{text}\n\nSummary:"
    )


@dataclass
class QueryOptions:
    top_k: int = 5
    min_score: float = 0.5
    use_agent: bool = False
    include_sources: bool = True
    max_tokens: int = 500
    temperature: float = 0.7


@dataclass
class QueryRequest:
    question: str
    filters: SearchFilters | None = None
    options: QueryOptions = field(default_factory=QueryOptions)


@dataclass
class QueryResponse:
    answer: str
    sources: list[ChunkReference] = field(default_factory=list)
    reasoning: list[str] | None = None
    metadata: dict[str, int] = field(default_factory=dict)


class Generator:
    """Retrieve, assemble the prompt, then ask the model once."""

    def __init__(self, retriever: HybridRetriever, llm: LLMProvider) -> None:
        self._retriever = retriever
        self._llm = llm

    async def initialize(self) -> None:
        await self._retriever.initialize()

    async def query(self, request: QueryRequest) -> QueryResponse:
        """Answer ``request.question`` from the best matching excerpts.

        Returns a fixed answer, without calling the model, when nothing is
        retrieved. Provider errors propagate.
        """
        started = time.monotonic()
        opts = request.options

        result = await self._retriever.retrieve(
            request.question,
            top_k=opts.top_k,
            min_score=opts.min_score,
            filters=request.filters,
        )

        if not result.chunks:
            return QueryResponse(
                answer=NO_RESULTS_ANSWER,
                metadata={"query_time_ms": _elapsed_ms(started), "chunks_retrieved": 0},
            )

        context = build_context(result.chunks)
        answer = await self._llm.chat(
            [{"role": "user", "content": build_query_prompt(request.question, context)}],
            system_prompt=RAG_SYSTEM_PROMPT,
            max_tokens=opts.max_tokens,
            temperature=opts.temperature,
        )

        sources = to_references(result.chunks, result.scores) if opts.include_sources else []
        return QueryResponse(
            answer=answer.strip(),
            sources=sources,
            metadata={
                "query_time_ms": _elapsed_ms(started),
                "chunks_retrieved": len(result.chunks),
            },
        )

    async def query_stream(self, request: QueryRequest) -> AsyncIterator[str]:
        """Stream answer tokens; yields the fixed no-results answer when nothing matches."""
        opts = request.options
        result = await self._retriever.retrieve(
            request.question,
            top_k=opts.top_k,
            min_score=opts.min_score,
            filters=request.filters,
        )

        if not result.chunks:
            yield NO_RESULTS_ANSWER
            return

        context = build_context(result.chunks)
        async for token in self._llm.chat_stream(
            [{"role": "user", "content": build_query_prompt(request.question, context)}],
            system_prompt=RAG_SYSTEM_PROMPT,
            max_tokens=opts.max_tokens,
            temperature=opts.temperature,
        ):
            yield token


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
