"""Command-line entry point: ingest an export, ask a question, or serve the API."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from src.api.dependencies import build_services
from src.capabilities import SearchFilters
from src.config import get_settings
from src.retrieval.generation import QueryOptions, QueryRequest


async def _ingest(args: argparse.Namespace) -> int:
    settings = get_settings()
    services = build_services(settings)
    await services.pipeline.initialize()

    result = await services.pipeline.ingest_file(
        args.file,
        conversation_name=args.name,
        options=settings.ingestion_options(
            chunk_gap_minutes=args.gap,
            chunk_max_messages=args.max,
            generate_summaries=args.summaries,
            include_system_messages=args.include_system,
            include_deleted_messages=args.include_deleted,
            replace_existing=args.replace,
            conversation_id=args.conversation_id,
        ),
    )

    print(f"Ingested {result.conversation_name} ({result.conversation_id})")
    print(f"  Messages:     {result.total_messages}")
    print(f"  Chunks:       {result.total_chunks}")
    print(f"  Participants: {', '.join(result.participants) or '-'}")
    if result.start_date and result.end_date:
        print(f"  Date range:   {result.start_date:%Y-%m-%d} -> {result.end_date:%Y-%m-%d}")
    print(f"  Duration:     {result.duration_ms} ms")
    return 0


async def _query(args: argparse.Namespace) -> int:
    settings = get_settings()
    services = build_services(settings)
    await services.retriever.initialize()

    if args.agent:
        result = await services.agent.run(args.question)
        for i, step in enumerate(result.reasoning, 1):
            print(f"[{i}] {step.action}")
        print(f"\n{result.answer}")
        return 0

    request = QueryRequest(
        question=args.question,
        options=QueryOptions(
            top_k=args.top_k or settings.retrieval_top_k,
            min_score=settings.retrieval_min_score if args.score is None else args.score,
            include_sources=args.sources,
        ),
        filters=SearchFilters(participants=args.participant) if args.participant else None,
    )

    if args.stream:
        async for token in services.generator.query_stream(request):
            print(token, end="", flush=True)
        print()
        return 0

    response = await services.generator.query(request)
    print(response.answer)
    if response.sources:
        print("\nSources:")
        for ref in response.sources:
            print(f"  [{ref.score:.2f}] {ref.start:%Y-%m-%d %H:%M} {ref.preview}")
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.api.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-archive", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest a WhatsApp .txt export")
    ingest.add_argument("file")
    ingest.add_argument("--name", default=None, help="Conversation name (default: file stem)")
    ingest.add_argument("--summaries", action="store_true", help="Generate chunk summaries")
    ingest.add_argument("--conversation-id", default=None)
    ingest.add_argument(
        "--replace", action="store_true", help="Delete the conversation's existing chunks first"
    )
    ingest.add_argument("--gap", type=float, default=None, help="Time gap in minutes")
    ingest.add_argument("--max", type=int, default=None, help="Max messages per chunk")
    ingest.add_argument(
        "--include-system",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Keep system messages (default: yes)",
    )
    ingest.add_argument("--include-deleted", action="store_true", help="Keep deleted messages")

    query = sub.add_parser("query", help="Ask a question about the ingested chats")
    query.add_argument("question")
    query.add_argument("--agent", action="store_true", help="Use the multi-step agent")
    query.add_argument("--top-k", type=int, default=None)
    query.add_argument("--score", type=float, default=None, help="Minimum similarity score")
    query.add_argument(
        "--participant",
        action="append",
        default=None,
        help="Only search chunks with this participant (repeatable)",
    )
    query.add_argument(
        "--no-sources", dest="sources", action="store_false", help="Do not print sources"
    )
    query.add_argument("--stream", action="store_true", help="Print the answer as it arrives")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return _serve(args)
    if args.command == "ingest":
        return asyncio.run(_ingest(args))
    return asyncio.run(_query(args))


if __name__ == "__main__":
    sys.exit(main())
