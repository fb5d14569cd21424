"""Data models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class MessageType(StrEnum):
    """Classification of a parsed chat message."""

    TEXT = "text"
    MEDIA = "media"
    SYSTEM = "system"
    DELETED = "deleted"


class MediaType(StrEnum):
    """Subtype of a media message, when it can be inferred."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT = "contact"


@dataclass(frozen=True)
class Message:
    """A single finalized message from a chat export."""

    id: str
    timestamp: datetime
    sender: str
    content: str
    type: MessageType
    media_type: MediaType | None = None
    raw_line: str = ""


@dataclass
class ParseCounts:
    """Per-type message counts for a parsed export."""

    total: int = 0
    text: int = 0
    media: int = 0
    system: int = 0
    deleted: int = 0


@dataclass
class ParseResult:
    """Output of the export parser."""

    messages: list[Message]
    participants: list[str]
    start_date: datetime | None
    end_date: datetime | None
    counts: ParseCounts


@dataclass
class ChunkMetadata:
    """Derived statistics for a chunk."""

    message_count: int
    conversation_id: str
    time_span_minutes: int
    dominant_participant: str | None = None
    has_media: bool = False
    media_count: int = 0


@dataclass
class Chunk:
    """A contiguous, time/size-bounded group of messages."""

    id: str
    messages: list[Message]
    participants: list[str]
    start_time: datetime
    end_time: datetime
    metadata: ChunkMetadata


@dataclass
class StoredChunk(Chunk):
    """A chunk with its embedding, as persisted in the vector store."""

    embedding: list[float] = field(default_factory=list)
    summary: str | None = None
    conversation_name: str | None = None


@dataclass
class ChunkingSummary:
    """Aggregate statistics for one chunking run."""

    total_chunks: int
    total_messages: int
    average_chunk_size: float
    start: datetime | None
    end: datetime | None


@dataclass
class ChunkingResult:
    """Output of the temporal chunker."""

    chunks: list[Chunk]
    summary: ChunkingSummary


class JobStatus(StrEnum):
    """Lifecycle of an ingestion job."""

    PENDING = "pending"
    PARSING = "parsing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IngestionProgress:
    """Progress record for an ingestion job, polled by job id."""

    job_id: str
    status: JobStatus = JobStatus.PENDING
    total_messages: int | None = None
    total_chunks: int | None = None
    processed_chunks: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class IngestionResult:
    """Summary returned once an ingestion job completes."""

    job_id: str
    conversation_id: str
    conversation_name: str | None
    total_messages: int
    total_chunks: int
    participants: list[str]
    start_date: datetime | None
    end_date: datetime | None
    duration_ms: int
