"""Pipeline configuration: provider enums and option dataclasses."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LLMProviderName(str, Enum):
    """Available language-model providers."""

    CLAUDE = "claude"
    OPENAI = "openai"
    OLLAMA = "ollama"


class EmbedProviderName(str, Enum):
    """Available embedding providers."""

    OPENAI = "openai"
    OLLAMA = "ollama"


@dataclass(frozen=True)
class ParserOptions:
    """Which non-conversational messages the parser keeps."""

    include_system_messages: bool = True
    include_deleted_messages: bool = True


@dataclass(frozen=True)
class ChunkerOptions:
    """Boundaries for the temporal chunker.

    ``min_messages`` is a best-effort target: the merge pass never exceeds
    ``max_chunk_chars`` to satisfy it.
    """

    gap_minutes: float = 30
    max_messages: int = 50
    min_messages: int = 3
    max_chunk_chars: int = 4000
    conversation_id: str | None = None


@dataclass(frozen=True)
class IngestionOptions:
    """Immutable options for one ingestion job."""

    chunk_gap_minutes: float = 30
    chunk_max_messages: int = 50
    chunk_min_messages: int = 3
    chunk_max_chars: int = 4000
    generate_summaries: bool = False
    include_system_messages: bool = True
    include_deleted_messages: bool = False
    conversation_id: str | None = None
    replace_existing: bool = False
