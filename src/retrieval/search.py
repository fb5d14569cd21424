"""Hybrid retrieval: dense vector search fused with a lexical keyword scan."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from src.capabilities import EmbeddingProvider, SearchFilters, VectorStore
from src.ingestion.chunking import chunk_header, chunk_text
from src.ingestion.models import StoredChunk

logger = logging.getLogger(__name__)

STOP_WORDS: frozenset[str] = frozenset(
    {
        # French
        "le", "la", "les", "de", "du", "des", "un", "une", "et", "ou", "à", "au", "aux",
        "ce", "ces", "on", "qui", "que", "quoi", "est", "a", "ont", "sont", "pour",
        "dans", "sur", "avec", "par", "en", "quand", "comment", "pourquoi",
        "est-ce", "qu'on", "c'est", "n'est", "j'ai", "t'as",
        # English
        "the", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "of", "to", "in", "for", "on", "with", "at", "by", "from", "about",
    }
)  # fmt: skip

# Elided articles and pronouns: "d'antibio" -> "antibio".
ELISION_PREFIXES: tuple[str, ...] = ("d'", "l'", "j'", "m'", "t'", "s'", "n'", "c'", "qu'")

_NON_WORD_RE = re.compile(r"[^\w\s'àâäéèêëïîôùûüç-]")

# Vector stage over-fetch: max(top_k * 5, 25) candidates at a relaxed floor.
OVERFETCH_FACTOR = 5
MIN_CANDIDATES = 25
FLOOR_RELAXATION = 0.3
MIN_VECTOR_FLOOR = 0.2

KEYWORD_SCAN_LIMIT = 10
MIN_SCAN_KEYWORD_LENGTH = 4
KEYWORD_BOOST_PER_MATCH = 0.2
MAX_KEYWORD_BOOST = 0.5
KEYWORD_ONLY_BASE = 0.6
KEYWORD_ONLY_PER_MATCH = 0.1
KEYWORD_ONLY_CAP = 0.9


def extract_keywords(query: str) -> list[str]:
    """Lexical keywords of *query*, lowercased, stop words and short tokens removed."""
    normalized = query.lower().replace("’", "'").replace("‘", "'")
    normalized = _NON_WORD_RE.sub(" ", normalized)

    tokens: list[str] = []
    for word in normalized.split():
        prefix = next((p for p in ELISION_PREFIXES if word.startswith(p)), None)
        if prefix is not None:
            tokens.append(word[len(prefix) :])
        elif "'" in word:
            tokens.extend(part for part in word.split("'") if len(part) > 2)
        else:
            tokens.append(word)

    return [t for t in tokens if len(t) > 2 and t not in STOP_WORDS]


def keyword_match_count(chunk: StoredChunk, keywords: list[str]) -> int:
    """Number of distinct *keywords* found in the chunk's senders and contents."""
    if not keywords:
        return 0
    text = " ".join(f"{m.sender} {m.content}".lower() for m in chunk.messages)
    return sum(1 for keyword in keywords if keyword in text)


@dataclass
class RetrievalResult:
    """Ranked chunks and their fused scores, as parallel lists."""

    chunks: list[StoredChunk] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)


@dataclass
class ChunkReference:
    """Lightweight citation for a retrieved chunk."""

    chunk_id: str
    score: float
    participants: list[str]
    start: datetime
    end: datetime
    preview: str


class HybridRetriever:
    """Fuse vector similarity with keyword matches into one ranked result set.

    Pure vector similarity under-ranks short lookups dominated by proper
    nouns (names, places); a keyword boost recovers them.

    The keyword stage scans every stored chunk, so its cost grows linearly
    with the archive size.
    """

    def __init__(self, embedder: EmbeddingProvider, store: VectorStore) -> None:
        self._embedder = embedder
        self._store = store

    async def initialize(self) -> None:
        await self._store.initialize()

    async def keyword_search(
        self,
        keywords: list[str],
        limit: int = KEYWORD_SCAN_LIMIT,
        filters: SearchFilters | None = None,
    ) -> list[tuple[StoredChunk, int]]:
        """Full scan for chunks containing *keywords*, best match counts first."""
        matches: list[tuple[StoredChunk, int]] = []
        for chunk in await self._store.scroll_all():
            if filters is not None and not filters.matches(chunk):
                continue
            count = keyword_match_count(chunk, keywords)
            if count > 0:
                matches.append((chunk, count))
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches[:limit]

    async def retrieve(
        self,
        query: str,
        top_k: int = 5,
        min_score: float = 0.4,
        filters: SearchFilters | None = None,
    ) -> RetrievalResult:
        """Return up to *top_k* chunks scoring at least *min_score*.

        Args:
            query: Natural-language query.
            top_k: Maximum number of chunks returned.
            min_score: Minimum fused score.
            filters: Participant, date-range and conversation filters.

        Returns:
            Chunks unique by id, sorted by descending fused score.
        """
        keywords = extract_keywords(query)
        vector = await self._embedder.embed(query)

        hits = await self._store.search(
            vector,
            top_k=max(top_k * OVERFETCH_FACTOR, MIN_CANDIDATES),
            min_score=max(min_score - FLOOR_RELAXATION, MIN_VECTOR_FLOOR),
            filters=filters,
        )

        keyword_hits: list[tuple[StoredChunk, int]] = []
        if any(len(k) >= MIN_SCAN_KEYWORD_LENGTH for k in keywords):
            keyword_hits = await self.keyword_search(keywords, filters=filters)

        # Insertion order puts vector hits ahead of keyword-only hits on ties.
        fused: dict[str, tuple[StoredChunk, float]] = {}
        for chunk, score in hits:
            if chunk.id in fused:
                continue
            matched = keyword_match_count(chunk, keywords)
            boost = min(KEYWORD_BOOST_PER_MATCH * matched, MAX_KEYWORD_BOOST)
            fused[chunk.id] = (chunk, min(score + boost, 1.0))

        for chunk, count in keyword_hits:
            if chunk.id not in fused:
                score = min(KEYWORD_ONLY_BASE + KEYWORD_ONLY_PER_MATCH * count, KEYWORD_ONLY_CAP)
                fused[chunk.id] = (chunk, score)

        ranked = sorted(fused.values(), key=lambda item: item[1], reverse=True)
        kept = [item for item in ranked if item[1] >= min_score][:top_k]

        logger.debug(
            "retrieve: %d vector hits, %d keyword hits, %d returned (keywords=%s)",
            len(hits),
            len(keyword_hits),
            len(kept),
            keywords,
        )
        return RetrievalResult(
            chunks=[chunk for chunk, _ in kept],
            scores=[score for _, score in kept],
        )


def build_context(chunks: list[StoredChunk], max_length: int = 8000) -> str:
    """Concatenate rendered chunks, each under a header line, within *max_length*.

    A chunk that would overflow is cut with ``...`` if at least 200
    characters of budget remain, otherwise dropped; assembly stops there.
    """
    parts: list[str] = []
    length = 0

    for chunk in chunks:
        block = f"### {chunk_header(chunk)}\n{chunk_text(chunk)}\n"
        if length + len(block) > max_length:
            remaining = max_length - length
            if remaining >= 200:
                parts.append(block[:remaining] + "...")
            break
        parts.append(block)
        length += len(block)

    return "\n---\n\n".join(parts)


def to_references(chunks: list[StoredChunk], scores: list[float]) -> list[ChunkReference]:
    """Citation records with a preview of the first three messages."""
    references: list[ChunkReference] = []
    for chunk, score in zip(chunks, scores, strict=True):
        preview = " | ".join(
            f"{m.sender}: {m.content[:50]}{'...' if len(m.content) > 50 else ''}"
            for m in chunk.messages[:3]
        )
        references.append(
            ChunkReference(
                chunk_id=chunk.id,
                score=score,
                participants=chunk.participants,
                start=chunk.start_time,
                end=chunk.end_time,
                preview=preview,
            )
        )
    return references
