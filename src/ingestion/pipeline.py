"""End-to-end ingestion pipeline: parse -> chunk -> embed -> (summarize) -> store."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from src.capabilities import EmbeddingProvider, LLMProvider, VectorStore
from src.ingestion.chunking import chunk_messages, chunk_text
from src.ingestion.models import (
    IngestionProgress,
    IngestionResult,
    JobStatus,
    StoredChunk,
)
from src.ingestion.parsers import parse_export
from src.pipeline_config import ChunkerOptions, IngestionOptions, ParserOptions
from src.retrieval.generation import build_summary_prompt

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Turn a chat export into embedded, stored chunks, tracking progress per job.

    Progress records live in memory for the life of the process. Each job id
    is only ever updated by its own run.

    Stages reported while polling: ``pending``, ``parsing``, ``chunking``,
    ``embedding``, ``storing``, then ``completed`` or ``failed``. There is no
    separate summary stage: when ``generate_summaries`` is set, each batch is
    summarized right after it is embedded, so the job reads ``embedding``
    until summaries are done and ``processed_chunks`` counts chunks that are
    both embedded and summarized.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: VectorStore,
        llm: LLMProvider | None = None,
        batch_size: int = 10,
        max_embed_chars: int = 6000,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._llm = llm
        self._batch_size = batch_size
        self._max_embed_chars = max_embed_chars
        self._progress: dict[str, IngestionProgress] = {}

    async def initialize(self) -> None:
        await self._store.initialize()

    def new_job(self) -> str:
        """Register a pending job and return its id."""
        job_id = uuid.uuid4().hex
        self._update_progress(job_id, status=JobStatus.PENDING, started_at=datetime.now())
        return job_id

    def get_progress(self, job_id: str) -> IngestionProgress | None:
        return self._progress.get(job_id)

    def _update_progress(self, job_id: str, **changes: Any) -> None:
        current = self._progress.get(job_id) or IngestionProgress(job_id=job_id)
        self._progress[job_id] = replace(current, **changes)

    async def ingest(
        self,
        content: str,
        conversation_name: str | None = None,
        options: IngestionOptions | None = None,
        job_id: str | None = None,
    ) -> IngestionResult:
        """Ingest the text of a chat export.

        Args:
            content: Raw export text.
            conversation_name: Display name stored with every chunk.
            options: Parsing, chunking and summary options.
            job_id: Id from :meth:`new_job`; a new job is registered if omitted.

        Returns:
            Counts, participants and date range of the ingested conversation.

        Raises:
            Exception: Any stage failure, after the job is marked failed.
        """

        async def read() -> str:
            return content

        return await self._run(read, conversation_name, options, job_id)

    async def ingest_file(
        self,
        path: str | Path,
        conversation_name: str | None = None,
        options: IngestionOptions | None = None,
        job_id: str | None = None,
    ) -> IngestionResult:
        """Ingest an export file. Read errors fail the job like any other stage."""

        async def read() -> str:
            return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")

        return await self._run(read, conversation_name or Path(path).stem, options, job_id)

    async def _run(
        self,
        read: Callable[[], Awaitable[str]],
        conversation_name: str | None,
        options: IngestionOptions | None,
        job_id: str | None,
    ) -> IngestionResult:
        opts = options or IngestionOptions()
        job_id = job_id or self.new_job()
        if self.get_progress(job_id) is None:
            self._update_progress(job_id, started_at=datetime.now())
        started = time.monotonic()

        try:
            # 1. Parse
            self._update_progress(job_id, status=JobStatus.PARSING)
            parsed = parse_export(
                await read(),
                ParserOptions(
                    include_system_messages=opts.include_system_messages,
                    include_deleted_messages=opts.include_deleted_messages,
                ),
            )
            self._update_progress(job_id, total_messages=parsed.counts.total)
            logger.info("Job %s: parsed %d messages", job_id, parsed.counts.total)

            # 2. Chunk
            self._update_progress(job_id, status=JobStatus.CHUNKING)
            conversation_id = opts.conversation_id or str(uuid.uuid4())
            chunked = chunk_messages(
                parsed.messages,
                ChunkerOptions(
                    gap_minutes=opts.chunk_gap_minutes,
                    max_messages=opts.chunk_max_messages,
                    min_messages=opts.chunk_min_messages,
                    max_chunk_chars=opts.chunk_max_chars,
                    conversation_id=conversation_id,
                ),
            )
            self._update_progress(job_id, total_chunks=len(chunked.chunks))
            logger.info("Job %s: built %d chunks", job_id, len(chunked.chunks))

            # 3. Embed, batches strictly one after another
            self._update_progress(job_id, status=JobStatus.EMBEDDING, processed_chunks=0)
            stored: list[StoredChunk] = []
            for i in range(0, len(chunked.chunks), self._batch_size):
                batch = chunked.chunks[i : i + self._batch_size]
                texts = [self._embed_text(chunk_text(chunk)) for chunk in batch]
                vectors = await self._embedder.embed_batch(texts)

                for chunk, text, vector in zip(batch, texts, vectors, strict=True):
                    summary = None
                    if opts.generate_summaries:
                        summary = await self._summarize(text)
                    stored.append(
                        StoredChunk(
                            id=chunk.id,
                            messages=chunk.messages,
                            participants=chunk.participants,
                            start_time=chunk.start_time,
                            end_time=chunk.end_time,
                            metadata=chunk.metadata,
                            embedding=vector,
                            summary=summary,
                            conversation_name=conversation_name,
                        )
                    )
                self._update_progress(job_id, processed_chunks=i + len(batch))

            # 4. Store
            self._update_progress(job_id, status=JobStatus.STORING)
            if opts.replace_existing:
                removed = await self._store.delete_by_conversation(conversation_id)
                logger.info("Job %s: removed %d existing chunks", job_id, removed)
            if stored:
                await self._store.upsert_batch(stored)

            self._update_progress(job_id, status=JobStatus.COMPLETED, completed_at=datetime.now())
        except Exception as exc:
            logger.exception("Ingestion job %s failed", job_id)
            self._update_progress(
                job_id, status=JobStatus.FAILED, error=str(exc), completed_at=datetime.now()
            )
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Job %s: stored %d chunks in %d ms", job_id, len(stored), duration_ms)
        return IngestionResult(
            job_id=job_id,
            conversation_id=conversation_id,
            conversation_name=conversation_name,
            total_messages=parsed.counts.total,
            total_chunks=len(chunked.chunks),
            participants=parsed.participants,
            start_date=parsed.start_date,
            end_date=parsed.end_date,
            duration_ms=duration_ms,
        )

    def _embed_text(self, text: str) -> str:
        if len(text) > self._max_embed_chars:
            return text[: self._max_embed_chars] + "..."
        return text

    async def _summarize(self, text: str) -> str:
        """One- or two-sentence chunk summary; empty when unavailable."""
        if self._llm is None:
            return ""
        try:
            summary = await self._llm.generate(
                build_summary_prompt(text), max_tokens=100, temperature=0.3
            )
        except Exception:
            logger.warning("Summary generation failed, storing empty summary", exc_info=True)
            return ""
        return summary.strip()
