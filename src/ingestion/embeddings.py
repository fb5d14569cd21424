"""Embedding providers: OpenAI text-embedding-3-small and local Ollama models."""

from __future__ import annotations

import httpx
import openai
from openai import AsyncOpenAI

from src.capabilities import EmbeddingProvider
from src.config import Settings
from src.pipeline_config import EmbedProviderName


class OpenAIEmbedder:
    """Async embedding client backed by the OpenAI embeddings API."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        """Embed a single string."""
        response = await self._client.embeddings.create(input=[text], model=self._model)
        return response.data[0].embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts, one vector per input, in input order."""
        if not texts:
            return []
        response = await self._client.embeddings.create(input=texts, model=self._model)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    async def is_available(self) -> bool:
        try:
            await self._client.models.list()
        except openai.APIError:
            return False
        return True


class OllamaEmbedder:
    """Embeddings from a local Ollama server (``POST /api/embed``).

    ``nomic-embed-text`` produces 768-dimensional vectors, so the
    ``chat_chunks.embedding`` column must be sized to match.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimensions: int = 768,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._model = model
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        response = await self._client.post(
            "/api/embed", json={"model": self._model, "input": texts}
        )
        response.raise_for_status()
        return response.json()["embeddings"]

    async def embed(self, text: str) -> list[float]:
        """Embed a single string."""
        return (await self._embed([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts in one request; vectors come back in input order."""
        if not texts:
            return []
        return await self._embed(texts)

    async def is_available(self) -> bool:
        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError:
            return False
        return True


def create_embedder(settings: Settings) -> EmbeddingProvider:
    """Build the configured embedding provider.

    Raises:
        ValueError: If OpenAI is selected and no OpenAI API key is configured.
    """
    if settings.embed_provider == EmbedProviderName.OLLAMA:
        return OllamaEmbedder(
            base_url=settings.ollama_base_url,
            model=settings.ollama_embed_model,
            dimensions=settings.ollama_embed_dimensions,
            timeout=settings.ollama_timeout,
        )

    if not settings.openai_api_key:
        raise ValueError("OPENAI_API_KEY is required when EMBED_PROVIDER=openai")
    return OpenAIEmbedder(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
    )
