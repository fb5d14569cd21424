"""Temporal chunking: group messages into conversation chunks by time gap and size."""

from __future__ import annotations

import math
import uuid
from collections import Counter

from src.ingestion.models import (
    Chunk,
    ChunkingResult,
    ChunkingSummary,
    ChunkMetadata,
    Message,
    MessageType,
)
from src.pipeline_config import ChunkerOptions

# Rendered line overhead: "[YYYY-MM-DD HH:MM] " + ": " + newline.
MESSAGE_CHAR_OVERHEAD = 25


def message_char_count(message: Message) -> int:
    """Estimated size of *message* in the rendered chunk text."""
    return MESSAGE_CHAR_OVERHEAD + len(message.sender) + len(message.content)


def _char_count(messages: list[Message]) -> int:
    return sum(message_char_count(m) for m in messages)


def _should_split(
    message: Message,
    previous: Message | None,
    chunk_size: int,
    chunk_chars: int,
    message_chars: int,
    options: ChunkerOptions,
) -> bool:
    if chunk_chars + message_chars > options.max_chunk_chars:
        return True
    if chunk_size >= options.max_messages:
        return True
    if previous is None:
        return False
    gap_minutes = (message.timestamp - previous.timestamp).total_seconds() / 60
    return gap_minutes >= options.gap_minutes


def build_chunk(messages: list[Message], conversation_id: str) -> Chunk:
    """Create a chunk and derive its metadata from *messages* (already sorted)."""
    senders = [m.sender for m in messages if m.sender and m.type is not MessageType.SYSTEM]
    participants = list(dict.fromkeys(senders))

    start_time = messages[0].timestamp
    end_time = messages[-1].timestamp
    span_minutes = (end_time - start_time).total_seconds() / 60

    # sorted() is stable, so ties keep first-encountered order
    ranked = sorted(Counter(senders).items(), key=lambda item: item[1], reverse=True)
    media_count = sum(1 for m in messages if m.type is MessageType.MEDIA)

    return Chunk(
        id=str(uuid.uuid4()),
        messages=messages,
        participants=participants,
        start_time=start_time,
        end_time=end_time,
        metadata=ChunkMetadata(
            message_count=len(messages),
            conversation_id=conversation_id,
            time_span_minutes=math.floor(span_minutes + 0.5),
            dominant_participant=ranked[0][0] if ranked else None,
            has_media=media_count > 0,
            media_count=media_count,
        ),
    )


def merge_small_chunks(
    chunks: list[Chunk],
    min_messages: int,
    max_chunk_chars: int,
    conversation_id: str,
) -> list[Chunk]:
    """Fold chunks below *min_messages* into their neighbours.

    The character budget always wins: a merge that would exceed
    *max_chunk_chars* is skipped and the small chunk is kept as-is.
    """
    if len(chunks) <= 1:
        return chunks

    result: list[Chunk] = []
    pending: list[Message] = []
    pending_chars = 0

    for chunk in chunks:
        chunk_chars = _char_count(chunk.messages)

        if chunk.metadata.message_count >= min_messages:
            if pending:
                if len(pending) < min_messages and pending_chars + chunk_chars <= max_chunk_chars:
                    result.append(build_chunk(pending + chunk.messages, conversation_id))
                else:
                    result.append(build_chunk(pending, conversation_id))
                    result.append(chunk)
                pending = []
                pending_chars = 0
            else:
                result.append(chunk)
            continue

        if pending and pending_chars + chunk_chars > max_chunk_chars:
            result.append(build_chunk(pending, conversation_id))
            pending = []
            pending_chars = 0
        pending.extend(chunk.messages)
        pending_chars += chunk_chars
        if len(pending) >= min_messages:
            result.append(build_chunk(pending, conversation_id))
            pending = []
            pending_chars = 0

    if pending:
        if result and _char_count(result[-1].messages) + pending_chars <= max_chunk_chars:
            last = result.pop()
            result.append(build_chunk(last.messages + pending, conversation_id))
        else:
            result.append(build_chunk(pending, conversation_id))

    return result


def chunk_messages(
    messages: list[Message], options: ChunkerOptions | None = None
) -> ChunkingResult:
    """Split messages into chunks on time gaps, message count and size.

    Messages are sorted by timestamp first (stable). A new chunk starts when
    adding the next message would exceed ``max_chunk_chars``, when the chunk
    already holds ``max_messages``, or when the gap to the previous message
    is at least ``gap_minutes``. Undersized chunks are then merged.

    Args:
        messages: Parsed messages, in any order.
        options: Chunk boundaries; a conversation id is generated if missing.

    Returns:
        A :class:`ChunkingResult` with the chunks and aggregate statistics.
    """
    options = options or ChunkerOptions()
    conversation_id = options.conversation_id or str(uuid.uuid4())

    if not messages:
        return ChunkingResult(
            chunks=[],
            summary=ChunkingSummary(
                total_chunks=0, total_messages=0, average_chunk_size=0, start=None, end=None
            ),
        )

    ordered = sorted(messages, key=lambda m: m.timestamp)

    chunks: list[Chunk] = []
    current: list[Message] = []
    current_chars = 0

    for message in ordered:
        message_chars = message_char_count(message)
        previous = current[-1] if current else None
        if current and _should_split(
            message, previous, len(current), current_chars, message_chars, options
        ):
            chunks.append(build_chunk(current, conversation_id))
            current = []
            current_chars = 0
        current.append(message)
        current_chars += message_chars

    if current:
        chunks.append(build_chunk(current, conversation_id))

    merged = merge_small_chunks(
        chunks, options.min_messages, options.max_chunk_chars, conversation_id
    )
    total_messages = sum(c.metadata.message_count for c in merged)

    return ChunkingResult(
        chunks=merged,
        summary=ChunkingSummary(
            total_chunks=len(merged),
            total_messages=total_messages,
            average_chunk_size=total_messages / len(merged) if merged else 0,
            start=ordered[0].timestamp,
            end=ordered[-1].timestamp,
        ),
    )


def chunk_text(chunk: Chunk) -> str:
    """Render a chunk for embedding and display.

    One ``[YYYY-MM-DD HH:MM] sender: content`` line per text or media
    message. This exact format is what gets embedded.
    """
    return "\n".join(
        f"[{m.timestamp:%Y-%m-%d %H:%M}] {m.sender}: {m.content}"
        for m in chunk.messages
        if m.type in (MessageType.TEXT, MessageType.MEDIA)
    )


def chunk_header(chunk: Chunk) -> str:
    """One-line summary: date, time range, up to three participants, message count."""
    names = ", ".join(chunk.participants[:3])
    extra = len(chunk.participants) - 3
    more = f" +{extra}" if extra > 0 else ""
    return (
        f"{chunk.start_time:%Y-%m-%d} {chunk.start_time:%H:%M} - {chunk.end_time:%H:%M}"
        f" | {names}{more} | {chunk.metadata.message_count} messages"
    )
