"""Capability interfaces consumed by the core: embeddings, language models, vector store.

Concrete adapters live in ``src.ingestion.embeddings``, ``src.retrieval.llm``
and ``src.ingestion.storage``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol, TypedDict, runtime_checkable

from src.ingestion.models import StoredChunk


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class SearchFilters:
    """Retrieval filters: participants (any-of), date range (overlap), conversation."""

    participants: list[str] | None = None
    start: datetime | None = None
    end: datetime | None = None
    conversation_id: str | None = None

    def matches(self, chunk: StoredChunk) -> bool:
        """Apply the filters in-process, as the vector store does server-side."""
        if self.participants and not set(self.participants) & set(chunk.participants):
            return False
        if self.start is not None and chunk.end_time < self.start:
            return False
        if self.end is not None and chunk.start_time > self.end:
            return False
        if self.conversation_id and chunk.metadata.conversation_id != self.conversation_id:
            return False
        return True


class EmbeddingProvider(Protocol):
    name: str

    @property
    def dimensions(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...

    async def is_available(self) -> bool: ...


class LLMProvider(Protocol):
    name: str

    async def is_available(self) -> bool: ...

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> str: ...

    def generate_stream(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
    ) -> AsyncIterator[str]: ...

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...

    def chat_stream(
        self,
        messages: list[ChatMessage],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]: ...


@dataclass
class ToolCall:
    """A structured tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolTurn:
    """One model turn under native tool calling.

    ``assistant_message`` is the provider-native message to append to the
    conversation before the tool results.
    """

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    assistant_message: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ToolCallingLLM(Protocol):
    """Optional capability for models with a function-calling protocol."""

    async def chat_with_tools(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ToolTurn: ...

    def tool_results_message(self, results: list[tuple[ToolCall, str]]) -> dict[str, Any]: ...


class VectorStore(Protocol):
    name: str

    async def initialize(self) -> None: ...

    async def is_available(self) -> bool: ...

    async def upsert_batch(self, chunks: list[StoredChunk]) -> None: ...

    async def search(
        self,
        vector: list[float],
        *,
        top_k: int = 5,
        min_score: float = 0.7,
        filters: SearchFilters | None = None,
    ) -> list[tuple[StoredChunk, float]]: ...

    async def scroll_all(self) -> list[StoredChunk]: ...

    async def delete_by_conversation(self, conversation_id: str) -> int: ...
