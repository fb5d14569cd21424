"""FastAPI application: ingestion, querying and conversation management over HTTP."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes.conversations import router as conversations_router
from src.api.routes.health import router as health_router
from src.api.routes.ingest import router as ingest_router
from src.api.routes.query import router as query_router
from src.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting %s (llm provider: %s)", app.title, settings.llm_provider.value)
    yield


app = FastAPI(
    title="Chat Archive Intelligence API",
    description="Hybrid-retrieval question answering over WhatsApp chat exports",
    version="0.1.0",
    lifespan=lifespan,
)

# Local frontends only; any localhost port is allowed.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

for router in (health_router, ingest_router, query_router, conversations_router):
    app.include_router(router)

