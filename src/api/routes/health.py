"""Health endpoints: liveness, and per-component availability."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends

from src.api.dependencies import Services, current_services
from src.api.models import ComponentHealth, DetailedHealthResponse, HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


async def _check(component: str, check: Callable[[], Awaitable[bool]]) -> ComponentHealth:
    started = time.monotonic()
    try:
        available = await check()
    except Exception as exc:
        logger.warning("Health check for %s raised", component, exc_info=True)
        return ComponentHealth(component=component, available=False, error=str(exc))
    return ComponentHealth(
        component=component,
        available=available,
        latency_ms=int((time.monotonic() - started) * 1000),
    )


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness check. Does not touch the providers or the store."""
    return HealthResponse()


@router.get("/health/detailed", response_model=DetailedHealthResponse)
async def detailed_health(
    services: Annotated[Services, Depends(current_services)],
) -> DetailedHealthResponse:
    """Check the language model, the embedder and the vector store one after another.

    Any unavailable component makes the overall status ``degraded``.
    """
    components = [
        await _check(f"llm:{services.llm.name}", services.llm.is_available),
        await _check(f"embed:{services.embedder.name}", services.embedder.is_available),
        await _check(f"vector_store:{services.store.name}", services.store.is_available),
    ]
    healthy = all(c.available for c in components)
    return DetailedHealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        components=components,
    )
