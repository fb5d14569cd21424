"""Tests for the ingestion pipeline with in-memory capabilities."""

from __future__ import annotations

import pytest

from src.ingestion.models import JobStatus
from src.ingestion.pipeline import IngestionPipeline
from src.pipeline_config import IngestionOptions
from tests.fakes import FakeEmbedder, FakeLLM, InMemoryVectorStore, make_stored_chunk

SHORT_EXPORT = "\n".join(
    [
        "15/01/2023, 10:00 - Marie: On part quand ?",
        "15/01/2023, 10:01 - Paul: Samedi matin",
        "15/01/2023, 10:02 - Marie: Parfait",
        "15/01/2023, 10:03 - Paul: This message was deleted",
    ]
)


def _hourly_export(count: int) -> str:
    """One message per hour, so every message can stand as its own chunk."""
    return "\n".join(
        f"{15 + i // 24:02d}/01/2023, {i % 24:02d}:00 - Marie: message {i}" for i in range(count)
    )


SINGLES = IngestionOptions(chunk_min_messages=1)


class TestIngest:
    @pytest.mark.asyncio
    async def test_short_export(self, embedder: FakeEmbedder, store: InMemoryVectorStore) -> None:
        pipeline = IngestionPipeline(embedder, store)
        result = await pipeline.ingest(SHORT_EXPORT, conversation_name="Trip")

        assert result.total_messages == 3
        assert result.total_chunks == 1
        assert result.participants == ["Marie", "Paul"]
        assert result.conversation_name == "Trip"
        assert result.duration_ms >= 0

        (batch,) = store.upserts
        (chunk,) = batch
        assert chunk.embedding == embedder.default
        assert chunk.conversation_name == "Trip"
        assert chunk.summary is None
        assert chunk.metadata.conversation_id == result.conversation_id

        progress = pipeline.get_progress(result.job_id)
        assert progress.status is JobStatus.COMPLETED
        assert progress.total_messages == 3
        assert progress.total_chunks == 1
        assert progress.processed_chunks == 1
        assert progress.completed_at is not None

    @pytest.mark.asyncio
    async def test_batches_are_sequential_and_bounded(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        pipeline = IngestionPipeline(embedder, store, batch_size=10)
        result = await pipeline.ingest(_hourly_export(25), options=SINGLES)

        assert result.total_chunks == 25
        assert [len(b) for b in embedder.batches] == [10, 10, 5]
        assert len(store.upserts) == 1
        assert len(store.upserts[0]) == 25

    @pytest.mark.asyncio
    async def test_embedding_input_is_truncated(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        pipeline = IngestionPipeline(embedder, store, max_embed_chars=50)
        await pipeline.ingest(SHORT_EXPORT)

        (text,) = embedder.batches[0]
        assert len(text) == 53
        assert text.endswith("...")

    @pytest.mark.asyncio
    async def test_progress_reports_running_stage(self, store: InMemoryVectorStore) -> None:
        seen: list[JobStatus] = []

        class ObservingEmbedder(FakeEmbedder):
            async def embed_batch(self, texts: list[str]) -> list[list[float]]:
                seen.append(pipeline.get_progress(job_id).status)
                return await super().embed_batch(texts)

        pipeline = IngestionPipeline(ObservingEmbedder(), store)
        job_id = pipeline.new_job()
        assert pipeline.get_progress(job_id).status is JobStatus.PENDING

        await pipeline.ingest(SHORT_EXPORT, job_id=job_id)
        assert seen == [JobStatus.EMBEDDING]

    @pytest.mark.asyncio
    async def test_empty_export(self, embedder: FakeEmbedder, store: InMemoryVectorStore) -> None:
        pipeline = IngestionPipeline(embedder, store)
        result = await pipeline.ingest("no messages here")

        assert result.total_chunks == 0
        assert store.upserts == []
        assert pipeline.get_progress(result.job_id).status is JobStatus.COMPLETED

    def test_unknown_job(self, embedder: FakeEmbedder, store: InMemoryVectorStore) -> None:
        assert IngestionPipeline(embedder, store).get_progress("nope") is None


class TestFailures:
    @pytest.mark.asyncio
    async def test_embedding_failure_marks_job_failed(self, store: InMemoryVectorStore) -> None:
        pipeline = IngestionPipeline(FakeEmbedder(error=RuntimeError("quota exceeded")), store)
        job_id = pipeline.new_job()

        with pytest.raises(RuntimeError, match="quota exceeded"):
            await pipeline.ingest(SHORT_EXPORT, job_id=job_id)

        progress = pipeline.get_progress(job_id)
        assert progress.status is JobStatus.FAILED
        assert progress.error == "quota exceeded"
        assert progress.completed_at is not None
        assert store.upserts == []

    @pytest.mark.asyncio
    async def test_store_failure_marks_job_failed(self, embedder: FakeEmbedder) -> None:
        store = InMemoryVectorStore()
        store.error = ConnectionError("supabase down")
        pipeline = IngestionPipeline(embedder, store)
        job_id = pipeline.new_job()

        with pytest.raises(ConnectionError):
            await pipeline.ingest(SHORT_EXPORT, job_id=job_id)
        assert pipeline.get_progress(job_id).status is JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_file(
        self, tmp_path, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        pipeline = IngestionPipeline(embedder, store)
        job_id = pipeline.new_job()

        with pytest.raises(FileNotFoundError):
            await pipeline.ingest_file(tmp_path / "missing.txt", job_id=job_id)
        assert pipeline.get_progress(job_id).status is JobStatus.FAILED


class TestSummaries:
    @pytest.mark.asyncio
    async def test_summaries_are_stored(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        llm = FakeLLM(["  Marie and Paul plan a Saturday departure.  "])
        pipeline = IngestionPipeline(embedder, store, llm=llm)
        await pipeline.ingest(SHORT_EXPORT, options=IngestionOptions(generate_summaries=True))

        assert store.upserts[0][0].summary == "Marie and Paul plan a Saturday departure."
        assert "Samedi matin" in llm.generate_calls[0]["prompt"]
        assert llm.generate_calls[0]["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_summary_failure_stores_empty_summary(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        pipeline = IngestionPipeline(embedder, store, llm=FakeLLM(error=RuntimeError("boom")))
        result = await pipeline.ingest(
            SHORT_EXPORT, options=IngestionOptions(generate_summaries=True)
        )

        assert store.upserts[0][0].summary == ""
        assert pipeline.get_progress(result.job_id).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_summaries_run_during_embedding_stage(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        seen: list[tuple[JobStatus, int]] = []

        class ObservingLLM(FakeLLM):
            async def generate(self, prompt: str, **kwargs) -> str:
                progress = pipeline.get_progress(job_id)
                seen.append((progress.status, progress.processed_chunks))
                return await super().generate(prompt, **kwargs)

        pipeline = IngestionPipeline(embedder, store, llm=ObservingLLM(["a", "b", "c"]))
        job_id = pipeline.new_job()
        await pipeline.ingest(
            _hourly_export(3),
            options=IngestionOptions(chunk_min_messages=1, generate_summaries=True),
            job_id=job_id,
        )

        assert seen == [(JobStatus.EMBEDDING, 0)] * 3
        assert pipeline.get_progress(job_id).processed_chunks == 3

    @pytest.mark.asyncio
    async def test_summaries_without_llm(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        pipeline = IngestionPipeline(embedder, store)
        await pipeline.ingest(SHORT_EXPORT, options=IngestionOptions(generate_summaries=True))
        assert store.upserts[0][0].summary == ""


class TestOptions:
    @pytest.mark.asyncio
    async def test_deleted_messages_kept_on_request(
        self, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        pipeline = IngestionPipeline(embedder, store)
        result = await pipeline.ingest(
            SHORT_EXPORT, options=IngestionOptions(include_deleted_messages=True)
        )
        assert result.total_messages == 4

    @pytest.mark.asyncio
    async def test_replace_existing(self, embedder: FakeEmbedder) -> None:
        old = make_stored_chunk("old", [("Marie", "ancien")], conversation_id="family")
        other = make_stored_chunk("other", [("Luc", "autre")], conversation_id="work")
        store = InMemoryVectorStore([old, other])
        pipeline = IngestionPipeline(embedder, store)

        await pipeline.ingest(
            SHORT_EXPORT,
            options=IngestionOptions(conversation_id="family", replace_existing=True),
        )

        assert "old" not in store.chunks
        assert "other" in store.chunks
        family = [c for c in store.chunks.values() if c.metadata.conversation_id == "family"]
        assert len(family) == 1

    @pytest.mark.asyncio
    async def test_append_keeps_existing(self, embedder: FakeEmbedder) -> None:
        old = make_stored_chunk("old", [("Marie", "ancien")], conversation_id="family")
        store = InMemoryVectorStore([old])
        pipeline = IngestionPipeline(embedder, store)

        await pipeline.ingest(SHORT_EXPORT, options=IngestionOptions(conversation_id="family"))
        assert "old" in store.chunks
        assert len(store.chunks) == 2

    @pytest.mark.asyncio
    async def test_ingest_file_uses_stem_as_name(
        self, tmp_path, embedder: FakeEmbedder, store: InMemoryVectorStore
    ) -> None:
        path = tmp_path / "WhatsApp Chat with Family.txt"
        path.write_text(SHORT_EXPORT, encoding="utf-8")

        result = await IngestionPipeline(embedder, store).ingest_file(path)
        assert result.conversation_name == "WhatsApp Chat with Family"
        assert result.total_messages == 3
