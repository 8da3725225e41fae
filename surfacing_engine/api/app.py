"""
surfacing_engine.api.app
========================
FastAPI application setup with:
* Lifespan-managed store, identity directory, engine and feedback workers
  (no hidden globals).
* Request-id middleware feeding the logging context.
* ``/health/live`` and ``/health/ready`` endpoints for liveness & readiness probes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from surfacing_engine import __version__
from surfacing_engine.api.middleware import RequestIdMiddleware
from surfacing_engine.api.routes import evaluate as evaluate_routes
from surfacing_engine.api.routes import feedback as feedback_routes
from surfacing_engine.api.routes import health as health_routes
from surfacing_engine.core.embedding import build_embedder
from surfacing_engine.core.interfaces import Embedder, IdentityResolver, MemoryStore
from surfacing_engine.core.store import (
    InMemoryIdentityDirectory,
    InMemoryMemoryStore,
    load_corpus,
)
from surfacing_engine.engine.evaluator import SurfacingEngine
from surfacing_engine.engine.feedback import FeedbackIngestor
from surfacing_engine.settings import UnifiedSettings, configure_logging, get_settings

logger = logging.getLogger(__name__)

TAGS_METADATA = [
    {"name": "Surfacing", "description": "Evaluate live interactions"},
    {"name": "Feedback", "description": "User reactions and preferences"},
    {"name": "Health", "description": "Liveness and readiness probes"},
]


def _bootstrap(
    settings: UnifiedSettings,
    embedder: Embedder,
) -> tuple[MemoryStore, IdentityResolver]:
    if settings.corpus.path is None:
        logger.warning("No corpus configured; starting with an empty store")
        return InMemoryMemoryStore(), InMemoryIdentityDirectory()
    return load_corpus(settings.corpus.path, embedder)


def create_app(
    settings: UnifiedSettings | None = None,
    *,
    store: MemoryStore | None = None,
    identity: IdentityResolver | None = None,
    embedder: Embedder | None = None,
) -> FastAPI:
    """
    Build the application.

    ``store``, ``identity`` and ``embedder`` override what the lifespan would
    otherwise build from ``settings.corpus``.
    """
    settings = settings or get_settings()

    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Application lifespan managing core resources.

        Loads the corpus, wires the engine and starts the feedback shard
        workers.  Workers are drained and stopped on shutdown.
        """
        embed = embedder or build_embedder(settings.corpus)
        if store is not None and identity is not None:
            mem_store, directory = store, identity
        else:
            loaded_store, loaded_identity = _bootstrap(settings, embed)
            mem_store = store if store is not None else loaded_store
            directory = identity if identity is not None else loaded_identity

        ingestor = FeedbackIngestor.from_settings(mem_store, settings)
        engine = SurfacingEngine(mem_store, directory, embed, ingestor, settings)
        ingestor.start()
        app.state.engine = engine
        app.state.ingestor = ingestor
        logger.info("Surfacing engine initialised (profile=%s)", settings.profile)
        try:
            yield
        finally:
            await ingestor.stop()
            app.state.engine = None
            app.state.ingestor = None
            logger.info("Surfacing engine stopped")

    app = FastAPI(
        title="Memory Surfacing Decision Engine",
        version=__version__,
        description="Decides whether, which and how to surface approved knowledge.",
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = None
    app.state.ingestor = None

    app.add_middleware(RequestIdMiddleware)

    if settings.api.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.api.cors_origins),
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

    # Health probes ---------------------------------------------------------
    @app.get("/health/live", include_in_schema=False)
    async def live() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/health/ready", include_in_schema=False)
    async def ready(request: Request) -> dict[str, str]:
        return await health_routes.readiness_probe(request)

    # Routers ---------------------------------------------------------------
    app.include_router(evaluate_routes.router, prefix="/api/v1")
    app.include_router(feedback_routes.router, prefix="/api/v1")
    app.include_router(health_routes.router, prefix="/api/v1")

    @app.get("/")
    async def service_root() -> dict[str, Any]:
        return await health_routes.root()

    # Metrics ---------------------------------------------------------------
    if settings.monitoring.enable_metrics:
        from surfacing_engine.utils.metrics import metrics_app

        app.mount("/metrics", cast("Any", metrics_app))
        logger.info("Prometheus /metrics endpoint enabled")

    return app


__all__ = ["create_app"]
