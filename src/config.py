from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings

from src.pipeline_config import EmbedProviderName, IngestionOptions, LLMProviderName


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # Supabase (pgvector)
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_table: str = "chat_chunks"

    # Providers
    llm_provider: LLMProviderName = LLMProviderName.CLAUDE
    embed_provider: EmbedProviderName = EmbedProviderName.OPENAI
    llm_model: str = "claude-sonnet-4-20250514"
    openai_llm_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Ollama (local models)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "mistral"
    ollama_embed_model: str = "nomic-embed-text"
    ollama_embed_dimensions: int = 768
    ollama_timeout: float = 120.0

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # Chunking
    chunk_gap_minutes: float = 30
    chunk_max_messages: int = 50
    chunk_min_messages: int = 3
    chunk_max_chars: int = 4000

    # Embedding
    embed_batch_size: int = 10
    max_embed_chars: int = 6000

    # Retrieval / agent
    retrieval_top_k: int = 5
    retrieval_min_score: float = 0.5
    agent_native_tools: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def ingestion_options(self, **overrides: Any) -> IngestionOptions:
        """Ingestion options seeded with the configured chunking defaults.

        Overrides that are ``None`` keep the configured value.
        """
        values: dict[str, Any] = {
            "chunk_gap_minutes": self.chunk_gap_minutes,
            "chunk_max_messages": self.chunk_max_messages,
            "chunk_min_messages": self.chunk_min_messages,
            "chunk_max_chars": self.chunk_max_chars,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return IngestionOptions(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]
