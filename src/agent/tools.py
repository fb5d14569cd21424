"""Tools the reasoning agent can call, all backed by the hybrid retriever."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any

from src.capabilities import SearchFilters
from src.ingestion.chunking import chunk_text
from src.retrieval.search import HybridRetriever

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]

_JSON_TYPES = {"string": "string", "number": "integer"}


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str
    description: str
    required: bool = False


@dataclass
class Tool:
    """A named, described capability with an async handler."""

    name: str
    description: str
    handler: ToolHandler
    parameters: list[ToolParameter] = field(default_factory=list)

    async def execute(self, params: dict[str, Any]) -> str:
        """Run the handler. Failures are returned as ``"Error: <message>"``."""
        try:
            return await self.handler(params)
        except Exception as exc:  # noqa: BLE001 - a tool failure is an observation
            return f"Error: {exc}"

    def to_schema(self) -> dict[str, Any]:
        """Tool definition in the ``name`` / ``description`` / ``input_schema`` shape."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {
                "type": "object",
                "properties": {
                    p.name: {"type": _JSON_TYPES.get(p.type, p.type), "description": p.description}
                    for p in self.parameters
                },
                "required": [p.name for p in self.parameters if p.required],
            },
        }


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _parse_date(value: Any, *, end_of_day: bool = False) -> datetime | None:
    """``YYYY-MM-DD`` to a datetime; an end date covers the whole day."""
    if not value:
        return None
    day = datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    return datetime.combine(day, time.max if end_of_day else time.min)


def _require(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not value or not str(value).strip():
        raise ValueError(f"missing required parameter '{name}'")
    return str(value)


def build_tools(retriever: HybridRetriever) -> list[Tool]:
    """The agent's tool registry: search, filter_by_date, list_participants, summarize."""

    async def search(params: dict[str, Any]) -> str:
        query = _require(params, "query")
        participant = params.get("participant")
        limit = int(params.get("limit") or 3)

        result = await retriever.retrieve(
            query,
            top_k=limit,
            min_score=0.6,
            filters=SearchFilters(participants=[participant]) if participant else None,
        )
        if not result.chunks:
            return "No relevant conversations found for this query."

        return "\n\n---\n\n".join(
            f"[Result {i + 1}, Score: {score:.2f}]\n{_truncate(chunk_text(chunk), 500)}"
            for i, (chunk, score) in enumerate(zip(result.chunks, result.scores, strict=True))
        )

    async def filter_by_date(params: dict[str, Any]) -> str:
        query = _require(params, "query")
        start = _parse_date(params.get("startDate"))
        end = _parse_date(params.get("endDate"), end_of_day=True)

        result = await retriever.retrieve(
            query, top_k=3, min_score=0.5, filters=SearchFilters(start=start, end=end)
        )
        if not result.chunks:
            return "No conversations found in the specified date range."

        return "\n\n---\n\n".join(
            f"[{chunk.start_time:%Y-%m-%d} - {chunk.end_time:%Y-%m-%d}, Score: {score:.2f}]\n"
            f"{_truncate(chunk_text(chunk), 400)}"
            for chunk, score in zip(result.chunks, result.scores, strict=True)
        )

    async def list_participants(params: dict[str, Any]) -> str:
        topic = _require(params, "topic")
        result = await retriever.retrieve(topic, top_k=10, min_score=0.5)

        participants: dict[str, None] = {}
        for chunk in result.chunks:
            participants.update(dict.fromkeys(chunk.participants))
        if not participants:
            return "No participants found for this topic."

        return f'Participants discussing "{topic}":\n' + "\n".join(participants)

    async def summarize(params: dict[str, Any]) -> str:
        topic = _require(params, "topic")
        result = await retriever.retrieve(topic, top_k=5, min_score=0.6)
        if not result.chunks:
            return "No conversations found to summarize."

        overview = "\n".join(
            f"- {chunk.start_time:%Y-%m-%d}: {', '.join(chunk.participants[:3])} "
            f"({chunk.metadata.message_count} messages)"
            for chunk in result.chunks
        )
        return f'Found {len(result.chunks)} conversation segments about "{topic}":\n{overview}'

    return [
        Tool(
            name="search",
            description=(
                "Search through WhatsApp conversations for relevant messages. Use this to "
                "find information about specific topics, people, or time periods."
            ),
            handler=search,
            parameters=[
                ToolParameter("query", "string", "The search query - what you want to find", True),
                ToolParameter("participant", "string", "Filter by participant name (optional)"),
                ToolParameter("limit", "number", "Maximum number of results (default: 3)"),
            ],
        ),
        Tool(
            name="filter_by_date",
            description="Search conversations within a specific date range.",
            handler=filter_by_date,
            parameters=[
                ToolParameter("query", "string", "What to search for", True),
                ToolParameter("startDate", "string", "Start date in YYYY-MM-DD format"),
                ToolParameter("endDate", "string", "End date in YYYY-MM-DD format"),
            ],
        ),
        Tool(
            name="list_participants",
            description="List all participants in the conversations related to a topic.",
            handler=list_participants,
            parameters=[ToolParameter("topic", "string", "Topic to search for", True)],
        ),
        Tool(
            name="summarize",
            description="Get a summary of conversations about a specific topic.",
            handler=summarize,
            parameters=[ToolParameter("topic", "string", "Topic to summarize", True)],
        ),
    ]


def format_tools_for_prompt(tools: list[Tool]) -> str:
    blocks = []
    for tool in tools:
        params = "\n".join(
            f"  - {p.name} ({p.type}{', required' if p.required else ''}): {p.description}"
            for p in tool.parameters
        )
        blocks.append(f"{tool.name}: {tool.description}\nParameters:\n{params}")
    return "\n\n".join(blocks)
