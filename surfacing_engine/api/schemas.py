"""Request and response models for the HTTP API (camelCase on the wire)."""

from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from surfacing_engine import __version__
from surfacing_engine.core.models import (
    Bridge,
    DecisionMode,
    FeedbackEvent,
    InteractionEvent,
    Outcome,
    SurfacedMemory,
    SurfacingDecision,
    SurfacingMethod,
    Tier,
)

_API_VERSION = "v1"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
class EvaluateRequest(_CamelModel):
    """Raw interaction to evaluate."""

    platform: str | None = Field(None, max_length=64)
    raw_input: str = Field(..., min_length=1, max_length=4_000)
    user_id: str = Field(..., min_length=1, max_length=256)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> InteractionEvent:
        return InteractionEvent(
            raw_input=self.raw_input,
            user_id=self.user_id,
            platform=self.platform,
            metadata=dict(self.metadata),
        )


class SurfacedMemoryOut(_CamelModel):
    memory_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    tier: Tier
    role: str = Field(..., description="primary | related")
    answer: dict[str, Any]
    redacted: bool = False

    @classmethod
    def from_domain(cls, mem: SurfacedMemory) -> SurfacedMemoryOut:
        return cls(
            memory_id=mem.memory_id,
            score=mem.score,
            tier=mem.tier,
            role="primary" if mem.primary else "related",
            answer=dict(mem.answer),
            redacted=mem.redacted,
        )


class BridgeOut(_CamelModel):
    from_id: str
    to_id: str
    shared_workflows: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, bridge: Bridge) -> BridgeOut:
        return cls(
            from_id=bridge.from_id,
            to_id=bridge.to_id,
            shared_workflows=list(bridge.shared_workflows),
        )


class DecisionResponse(_CamelModel):
    """Surfacing decision as delivered to the client; never carries internal reasons."""

    should_surface: bool
    memories: list[SurfacedMemoryOut] = Field(default_factory=list, max_length=5)
    confidence: float = Field(..., ge=0.0, le=1.0)
    method: SurfacingMethod
    mode: DecisionMode
    show_confidence: bool = False
    bridges: list[BridgeOut] = Field(default_factory=list)
    context_fingerprint: str

    @classmethod
    def from_domain(cls, decision: SurfacingDecision) -> DecisionResponse:
        return cls(
            should_surface=decision.should_surface,
            memories=[SurfacedMemoryOut.from_domain(m) for m in decision.memories],
            confidence=decision.confidence,
            method=decision.method,
            mode=decision.mode,
            show_confidence=decision.show_confidence,
            bridges=[BridgeOut.from_domain(b) for b in decision.bridges],
            context_fingerprint=decision.context_fingerprint,
        )


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------
class FeedbackRequest(_CamelModel):
    memory_id: str = Field(..., min_length=1, max_length=256)
    context_fingerprint: str = Field(..., min_length=1, max_length=128)
    # Optional: the ingestor resolves the user from the fingerprint it issued.
    user_id: str | None = Field(None, min_length=1, max_length=256)
    outcome: Outcome
    event_id: str | None = Field(None, max_length=128)
    timestamp: dt.datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, value: dt.datetime | None) -> dt.datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value

    def to_event(self) -> FeedbackEvent:
        return FeedbackEvent(
            memory_id=self.memory_id,
            context_fingerprint=self.context_fingerprint,
            user_id=self.user_id,
            outcome=self.outcome,
            timestamp=self.timestamp or dt.datetime.now(dt.UTC),
            event_id=self.event_id,
        )


class AcceptedResponse(BaseModel):
    status: str = "accepted"


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
class PreferencesUpdate(_CamelModel):
    aggression: float | None = Field(None, ge=-1.0, le=1.0)
    mute: list[str] = Field(default_factory=list)
    unmute: list[str] = Field(default_factory=list)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class PreferencesResponse(_CamelModel):
    user_id: str
    aggression: float
    muted: list[str]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
class HealthResponse(_CamelModel):
    status: str = Field(..., description="healthy | unhealthy")
    timestamp: str
    version: str = __version__
    api_version: str = _API_VERSION
    profile: str
    memories: int = Field(..., ge=0)
    feedback_running: bool
    feedback_pending: int = Field(..., ge=0)


__all__ = [
    "AcceptedResponse",
    "BridgeOut",
    "DecisionResponse",
    "EvaluateRequest",
    "FeedbackRequest",
    "HealthResponse",
    "PreferencesResponse",
    "PreferencesUpdate",
    "SurfacedMemoryOut",
]
