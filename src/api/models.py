"""Pydantic request/response schemas for the chat archive API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.ingestion.models import JobStatus


class QueryFilters(BaseModel):
    """Optional restrictions applied to retrieval."""

    participants: list[str] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    conversation_id: str | None = None


class QueryOptions(BaseModel):
    """Retrieval and generation knobs for one query."""

    top_k: int = Field(5, ge=1, le=20)
    min_score: float = Field(0.5, ge=0, le=1)
    use_agent: bool = False
    include_sources: bool = True
    max_tokens: int = Field(500, ge=50, le=2000)
    temperature: float = Field(0.7, ge=0, le=2)


class QueryRequest(BaseModel):
    """Request body for the /api/query endpoints."""

    question: str = Field(..., min_length=1, max_length=1000)
    filters: QueryFilters | None = None
    options: QueryOptions = Field(default_factory=QueryOptions)


class SourceReference(BaseModel):
    """A retrieved chunk cited by an answer."""

    chunk_id: str
    score: float
    participants: list[str]
    start: datetime
    end: datetime
    preview: str


class ReasoningStep(BaseModel):
    thought: str
    action: str
    observation: str


class QueryResponse(BaseModel):
    """Response body for the /api/query endpoint."""

    answer: str
    sources: list[SourceReference] = []
    reasoning: list[ReasoningStep] | None = None
    metadata: dict[str, int] = {}


class IngestResponse(BaseModel):
    """Response body for a completed ingestion."""

    job_id: str
    conversation_id: str
    conversation_name: str | None = None
    total_messages: int
    total_chunks: int
    participants: list[str]
    start_date: datetime | None = None
    end_date: datetime | None = None
    duration_ms: int


class IngestAccepted(BaseModel):
    """Response body when ingestion runs in the background."""

    job_id: str
    status: JobStatus = JobStatus.PENDING


class IngestProgressResponse(BaseModel):
    """Progress of an ingestion job."""

    job_id: str
    status: JobStatus
    total_messages: int | None = None
    total_chunks: int | None = None
    processed_chunks: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class DeleteConversationResponse(BaseModel):
    conversation_id: str
    deleted_chunks: int


class HealthResponse(BaseModel):
    status: str = "healthy"


class ComponentHealth(BaseModel):
    """Availability of one provider or the vector store."""

    component: str
    available: bool
    latency_ms: int | None = None
    error: str | None = None


class DetailedHealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    timestamp: datetime
    components: list[ComponentHealth]
