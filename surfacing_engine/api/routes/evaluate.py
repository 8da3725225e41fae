"""Evaluation endpoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import APIRouter, Body, Depends, Request

from surfacing_engine.api.dependencies import get_engine, get_settings
from surfacing_engine.api.schemas import DecisionResponse, EvaluateRequest
from surfacing_engine.core.models import SurfacingDecision
from surfacing_engine.engine.evaluator import SurfacingEngine
from surfacing_engine.settings import UnifiedSettings
from surfacing_engine.utils.metrics import MET_ERRORS_TOTAL

log = logging.getLogger(__name__)
router = APIRouter(tags=["Surfacing"])

EVALUATE_EXAMPLE = {
    "platform": "slack",
    "rawInput": "How do I get budget approval?",
    "userId": "u-123",
}


async def _watch_disconnect(request: Request, cancel: asyncio.Event, interval: float) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(interval)


@router.post(
    "/evaluate",
    response_model=DecisionResponse,
    summary="Evaluate an interaction",
    description="Decide whether, which and how to surface memories for a live interaction.",
    responses={422: {"description": "Validation error"}},
)
async def evaluate(
    request: Request,
    body: EvaluateRequest = Body(..., examples=[EVALUATE_EXAMPLE]),
    engine: SurfacingEngine = Depends(get_engine),
    settings: UnifiedSettings = Depends(get_settings),
) -> DecisionResponse:
    """Evaluate one interaction; internal failures are reported as suppression."""
    event = body.to_event()
    cancel = asyncio.Event()
    watcher = asyncio.create_task(
        _watch_disconnect(request, cancel, settings.api.disconnect_poll_seconds)
    )
    try:
        decision = await engine.evaluate(event, cancel)
    except Exception:
        MET_ERRORS_TOTAL.labels(type="evaluate", component="api").inc()
        log.exception("Evaluation failed; responding with suppression")
        decision = SurfacingDecision.suppressed(engine.extractor.fingerprint(event), "error")
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
    return DecisionResponse.from_domain(decision)
