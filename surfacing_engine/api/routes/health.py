"""Health-check endpoints."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from surfacing_engine import __version__
from surfacing_engine.api.schemas import HealthResponse

log = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


def _components(request: Request) -> tuple[Any, Any]:
    state = request.app.state
    return getattr(state, "engine", None), getattr(state, "ingestor", None)


@router.get("/", summary="Service info")
async def root() -> dict[str, Any]:
    return {
        "service": "Memory Surfacing Decision Engine",
        "version": __version__,
        "status": "running",
        "documentation": "/docs",
        "health": "/api/v1/health",
        "api_version": "v1",
    }


@router.get("/health", summary="Full health check")
async def health_check(request: Request) -> Response:
    """Return component status; 503 until the engine and feedback workers are up."""
    engine, ingestor = _components(request)
    healthy = engine is not None and ingestor is not None and ingestor.running
    store = getattr(engine, "store", None)
    payload = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        timestamp=datetime.now(UTC).isoformat(),
        profile=request.app.state.settings.profile,
        memories=len(store) if store is not None and hasattr(store, "__len__") else 0,
        feedback_running=bool(ingestor and ingestor.running),
        feedback_pending=ingestor.pending() if ingestor is not None else 0,
    )
    return JSONResponse(
        payload.model_dump(by_alias=True),
        status_code=200 if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )


@router.get("/health/live", summary="Liveness probe")
async def liveness_probe() -> dict[str, str]:
    return {"status": "alive", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/health/ready", summary="Readiness probe")
async def readiness_probe(request: Request) -> dict[str, str]:
    engine, ingestor = _components(request)
    if engine is not None and ingestor is not None and ingestor.running:
        return {"status": "ready", "timestamp": datetime.now(UTC).isoformat()}
    raise HTTPException(status_code=503, detail="Service not ready")
