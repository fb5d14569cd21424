"""Supabase (pgvector) storage for embedded chat chunks."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, cast

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client, create_client

from src.capabilities import SearchFilters
from src.ingestion.models import ChunkMetadata, MediaType, Message, MessageType, StoredChunk

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 50
SCROLL_PAGE_SIZE = 500


def get_supabase_client(url: str | None = None, key: str | None = None) -> Client:
    """Create and return a Supabase client, defaulting to environment variables."""
    return create_client(
        url or os.getenv("SUPABASE_URL", ""),
        key or os.getenv("SUPABASE_KEY", ""),
    )


def chunk_to_row(chunk: StoredChunk) -> dict[str, Any]:
    """Serialize a stored chunk into a ``chat_chunks`` row."""
    return {
        "id": chunk.id,
        "conversation_id": chunk.metadata.conversation_id,
        "conversation_name": chunk.conversation_name,
        "participants": chunk.participants,
        "start_time": chunk.start_time.isoformat(),
        "end_time": chunk.end_time.isoformat(),
        "message_count": chunk.metadata.message_count,
        "time_span_minutes": chunk.metadata.time_span_minutes,
        "dominant_participant": chunk.metadata.dominant_participant,
        "has_media": chunk.metadata.has_media,
        "media_count": chunk.metadata.media_count,
        "summary": chunk.summary,
        "messages": [
            {
                "id": m.id,
                "timestamp": m.timestamp.isoformat(),
                "sender": m.sender,
                "content": m.content,
                "type": m.type.value,
                "media_type": m.media_type.value if m.media_type else None,
            }
            for m in chunk.messages
        ],
        "embedding": chunk.embedding,
    }


def row_to_chunk(row: dict[str, Any]) -> StoredChunk:
    """Rebuild a :class:`StoredChunk` from a ``chat_chunks`` row."""
    messages = [
        Message(
            id=m["id"],
            timestamp=datetime.fromisoformat(m["timestamp"]),
            sender=m.get("sender") or "",
            content=m.get("content") or "",
            type=MessageType(m.get("type", "text")),
            media_type=MediaType(m["media_type"]) if m.get("media_type") else None,
        )
        for m in row.get("messages") or []
    ]
    embedding = row.get("embedding")
    return StoredChunk(
        id=str(row["id"]),
        messages=messages,
        participants=list(row.get("participants") or []),
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=datetime.fromisoformat(row["end_time"]),
        metadata=ChunkMetadata(
            message_count=row.get("message_count") or len(messages),
            conversation_id=row.get("conversation_id") or "",
            time_span_minutes=row.get("time_span_minutes") or 0,
            dominant_participant=row.get("dominant_participant"),
            has_media=bool(row.get("has_media")),
            media_count=row.get("media_count") or 0,
        ),
        embedding=embedding if isinstance(embedding, list) else [],
        summary=row.get("summary"),
        conversation_name=row.get("conversation_name"),
    )


class SupabaseVectorStore:
    """Vector store over a pgvector table and the ``match_chat_chunks`` RPC.

    The Supabase client is synchronous; every call runs in a worker thread so
    the event loop is never blocked.
    """

    name = "supabase"

    def __init__(self, client: Client, table: str = "chat_chunks") -> None:
        self._client = client
        self._table = table
        self._ready = False

    def _select_one(self) -> None:
        self._client.table(self._table).select("id").limit(1).execute()

    async def initialize(self) -> None:
        """Check the table is reachable. The schema itself is managed in ``sql/schema.sql``."""
        if self._ready:
            return
        await asyncio.to_thread(self._select_one)
        self._ready = True

    async def is_available(self) -> bool:
        """True when the table answers a one-row select."""
        try:
            await asyncio.to_thread(self._select_one)
        except (PostgrestAPIError, httpx.HTTPError):
            logger.warning("Vector store %s unavailable", self._table, exc_info=True)
            return False
        return True

    async def upsert_batch(self, chunks: list[StoredChunk]) -> None:
        """Upsert chunks in batches of 50."""
        rows = [chunk_to_row(c) for c in chunks]
        for i in range(0, len(rows), UPSERT_BATCH_SIZE):
            batch = rows[i : i + UPSERT_BATCH_SIZE]
            await asyncio.to_thread(
                lambda b=batch: self._client.table(self._table).upsert(b).execute()
            )
        logger.debug("Upserted %d chunks into %s", len(rows), self._table)

    async def search(
        self,
        vector: list[float],
        *,
        top_k: int = 5,
        min_score: float = 0.7,
        filters: SearchFilters | None = None,
    ) -> list[tuple[StoredChunk, float]]:
        """Cosine-similarity search with filters pushed into the RPC."""
        filters = filters or SearchFilters()
        params = {
            "query_embedding": vector,
            "match_count": top_k,
            "match_threshold": min_score,
            "filter_conversation_id": filters.conversation_id,
            "filter_participants": filters.participants or None,
            "filter_start": filters.start.isoformat() if filters.start else None,
            "filter_end": filters.end.isoformat() if filters.end else None,
        }
        result = await asyncio.to_thread(
            lambda: self._client.rpc("match_chat_chunks", params).execute()
        )
        # Supabase .data is typed as JSON (broad union); cast to concrete type.
        rows = cast(list[dict[str, Any]], result.data)
        return [(row_to_chunk(row), float(row["similarity"])) for row in rows]

    async def scroll_all(self) -> list[StoredChunk]:
        """Return every stored chunk, without embeddings, page by page."""
        columns = (
            "id,conversation_id,conversation_name,participants,start_time,end_time,"
            "message_count,time_span_minutes,dominant_participant,has_media,media_count,"
            "summary,messages"
        )
        chunks: list[StoredChunk] = []
        offset = 0
        while True:
            result = await asyncio.to_thread(
                lambda o=offset: self._client.table(self._table)
                .select(columns)
                .order("start_time")
                .range(o, o + SCROLL_PAGE_SIZE - 1)
                .execute()
            )
            rows = cast(list[dict[str, Any]], result.data)
            chunks.extend(row_to_chunk(row) for row in rows)
            if len(rows) < SCROLL_PAGE_SIZE:
                return chunks
            offset += SCROLL_PAGE_SIZE

    async def delete_by_conversation(self, conversation_id: str) -> int:
        """Delete all chunks of a conversation and return how many were removed."""
        result = await asyncio.to_thread(
            lambda: self._client.table(self._table)
            .delete()
            .eq("conversation_id", conversation_id)
            .execute()
        )
        return len(cast(list[dict[str, Any]], result.data or []))
