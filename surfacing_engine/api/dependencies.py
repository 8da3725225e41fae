"""dependencies.py: FastAPI dependency helpers reading collaborators from ``app.state``."""

from __future__ import annotations

import logging
import typing

from fastapi import HTTPException, Request, status

from surfacing_engine.engine.evaluator import SurfacingEngine
from surfacing_engine.engine.feedback import FeedbackIngestor
from surfacing_engine.settings import UnifiedSettings

__all__ = ["get_engine", "get_ingestor", "get_settings"]

log = logging.getLogger(__name__)


def get_settings(request: Request) -> UnifiedSettings:
    """Retrieve ``UnifiedSettings`` from ``app.state``."""
    return typing.cast("UnifiedSettings", request.app.state.settings)


def get_engine(request: Request) -> SurfacingEngine:
    """Return the lifespan-managed engine or fail with 503."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        log.warning("Engine requested before startup completed")
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "engine not ready")
    return typing.cast("SurfacingEngine", engine)


def get_ingestor(request: Request) -> FeedbackIngestor:
    """Return the lifespan-managed feedback ingestor or fail with 503."""
    ingestor = getattr(request.app.state, "ingestor", None)
    if ingestor is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "feedback not ready")
    return typing.cast("FeedbackIngestor", ingestor)
