"""Domain entities shared by every stage of the surfacing pipeline."""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import numpy as np
from numpy.typing import NDArray

from surfacing_engine.core.access import AccessRule, AccessSubject, Clearance

ORG_WIDE = "*"


class Platform(str, Enum):
    SLACK = "slack"
    EMAIL = "email"
    FORM = "form"
    BROWSER = "browser"
    OTHER = "other"


class IntentClass(str, Enum):
    INFORMATION_SEEKING = "information_seeking"
    TASK_EXECUTION = "task_execution"
    ACCESS_REQUEST = "access_request"
    POLICY_CLARIFICATION = "policy_clarification"
    TROUBLESHOOTING = "troubleshooting"
    OTHER = "other"


class WorkflowStage(str, Enum):
    SINGLE_STEP = "single_step"
    MULTI_STEP = "multi_step"


class MemoryStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    REJECTED = "rejected"
    EDITED = "edited"


class Tier(str, Enum):
    """Gate outcome for a single candidate."""

    FULL = "full"
    INDICATOR = "indicator"
    RELATED = "related"
    SUPPRESSED = "suppressed"

    @property
    def primary(self) -> bool:
        return self in (Tier.FULL, Tier.INDICATOR)


class SurfacingMethod(str, Enum):
    INLINE = "inline"
    TOOLTIP = "tooltip"
    SIDEBAR = "sidebar"
    CHOICE = "choice"
    NONE = "none"


class DecisionMode(str, Enum):
    SINGLE = "single"
    DISAMBIGUATION = "disambiguation"
    STITCHED = "stitched"
    RELATED = "related"
    SUPPRESSED = "suppressed"


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpirationPolicy:
    """
    Absolute expiry, periodic human reconfirmation, or both.

    ``starts_at`` marks the beginning of the policy lifetime (approval time)
    and is needed to compute how much of the lifetime has elapsed.
    """

    expires_at: dt.datetime | None = None
    reconfirm_every: dt.timedelta | None = None
    last_confirmed_at: dt.datetime | None = None
    starts_at: dt.datetime | None = None

    def _window(self) -> tuple[dt.datetime | None, dt.datetime | None]:
        horizons: list[tuple[dt.datetime | None, dt.datetime]] = []
        if self.expires_at is not None:
            horizons.append((self.starts_at, self.expires_at))
        if self.reconfirm_every is not None:
            start = self.last_confirmed_at or self.starts_at
            if start is not None:
                horizons.append((start, start + self.reconfirm_every))
        if not horizons:
            return None, None
        return min(horizons, key=lambda h: h[1])

    def horizon(self) -> dt.datetime | None:
        return self._window()[1]

    def is_expired(self, now: dt.datetime) -> bool:
        end = self.horizon()
        return end is not None and now >= end

    def lifetime_fraction(self, now: dt.datetime) -> float | None:
        """Elapsed share of the policy lifetime, ``None`` without a bounded window."""
        start, end = self._window()
        if start is None or end is None or end <= start:
            return None
        return max(0.0, (now - start).total_seconds() / (end - start).total_seconds())


@dataclass(frozen=True)
class UsageStats:
    access_count: int = 0
    last_accessed: dt.datetime | None = None
    accept_rate: float = 0.5


@dataclass(frozen=True)
class Memory:
    """A unit of approved knowledge."""

    id: str
    canonical_question: str
    answer: Mapping[str, Any]
    embedding: NDArray[np.float32] = field(compare=False, repr=False)
    semantic_variants: tuple[str, ...] = ()
    variant_embeddings: tuple[NDArray[np.float32], ...] = field(
        default=(), compare=False, repr=False
    )
    departments: frozenset[str] = field(default_factory=frozenset)
    tags: frozenset[str] = field(default_factory=frozenset)
    intents: frozenset[IntentClass] = field(default_factory=frozenset)
    related_workflows: frozenset[str] = field(default_factory=frozenset)
    workflow_step: int | None = None
    access_rule: AccessRule = field(default_factory=AccessRule)
    expiration: ExpirationPolicy = field(default_factory=ExpirationPolicy)
    authority_score: float = 0.5
    usage_stats: UsageStats = field(default_factory=UsageStats)
    status: MemoryStatus = MemoryStatus.APPROVED

    @property
    def org_wide(self) -> bool:
        return not self.departments or ORG_WIDE in self.departments

    def is_retrievable(self, subject: AccessSubject, now: dt.datetime) -> bool:
        """Visibility invariant: approved, unexpired and permitted."""
        return (
            self.status is MemoryStatus.APPROVED
            and not self.expiration.is_expired(now)
            and self.access_rule.allows(subject)
        )

    def with_usage(self, usage: UsageStats) -> Memory:
        return replace(self, usage_stats=usage)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InteractionEvent:
    """Raw interaction as received by the evaluation API."""

    raw_input: str
    user_id: str
    platform: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    role: str
    department: str | None
    clearance: Clearance
    resolved: bool = True

    @property
    def subject(self) -> AccessSubject:
        return AccessSubject(role=self.role, department=self.department, clearance=self.clearance)

    @classmethod
    def least_privileged(cls, user_id: str) -> UserIdentity:
        base = AccessSubject.least_privileged()
        return cls(
            user_id=user_id,
            role=base.role,
            department=base.department,
            clearance=base.clearance,
            resolved=False,
        )


@dataclass(frozen=True)
class Signal:
    value: str
    confidence: float


@dataclass(frozen=True)
class ContextSignals:
    app_detection: Signal
    intent: Signal
    temporal_urgency: Signal
    workflow_stage: Signal


@dataclass(frozen=True)
class Context:
    """Structured, per-request view of an interaction."""

    platform: Platform
    raw_input: str
    user: UserIdentity
    signals: ContextSignals
    fingerprint: str
    mentioned_departments: frozenset[str] = field(default_factory=frozenset)

    @property
    def intent(self) -> IntentClass:
        return IntentClass(self.signals.intent.value)

    @property
    def multi_step(self) -> bool:
        return self.signals.workflow_stage.value == WorkflowStage.MULTI_STEP.value

    @property
    def subject(self) -> AccessSubject:
        return self.user.subject


# ---------------------------------------------------------------------------
# Pipeline values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candidate:
    memory: Memory
    similarity: float


@dataclass(frozen=True)
class ScoredCandidate:
    memory: Memory
    similarity: float
    score: float
    parts: Mapping[str, float] = field(default_factory=dict)
    department_match: bool = False

    @property
    def last_accessed(self) -> dt.datetime | None:
        return self.memory.usage_stats.last_accessed


@dataclass(frozen=True)
class GatedCandidate:
    candidate: ScoredCandidate
    tier: Tier
    sensitivity: str = "standard"

    @property
    def memory(self) -> Memory:
        return self.candidate.memory

    @property
    def score(self) -> float:
        return self.candidate.score


@dataclass(frozen=True)
class SurfacedMemory:
    memory_id: str
    score: float
    tier: Tier
    primary: bool
    answer: Mapping[str, Any]
    redacted: bool = False


@dataclass(frozen=True)
class Bridge:
    """Transition point between two consecutive stitched memories."""

    from_id: str
    to_id: str
    shared_workflows: tuple[str, ...] = ()


@dataclass(frozen=True)
class SurfacingDecision:
    should_surface: bool
    memories: tuple[SurfacedMemory, ...]
    confidence: float
    method: SurfacingMethod
    mode: DecisionMode
    context_fingerprint: str
    show_confidence: bool = False
    bridges: tuple[Bridge, ...] = ()
    reason: str = ""

    @classmethod
    def suppressed(cls, fingerprint: str, reason: str) -> SurfacingDecision:
        return cls(
            should_surface=False,
            memories=(),
            confidence=0.0,
            method=SurfacingMethod.NONE,
            mode=DecisionMode.SUPPRESSED,
            context_fingerprint=fingerprint,
            reason=reason,
        )

    @property
    def memory_ids(self) -> tuple[str, ...]:
        return tuple(m.memory_id for m in self.memories)


# ---------------------------------------------------------------------------
# Feedback state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeedbackEvent:
    memory_id: str
    context_fingerprint: str
    user_id: str | None
    outcome: Outcome
    timestamp: dt.datetime
    event_id: str | None = None


@dataclass(frozen=True)
class AdaptiveState:
    """
    Accumulated feedback for one user/platform pair.

    ``positive`` lowers and ``negative`` raises the effective threshold;
    each is capped independently.
    """

    positive: float = 0.0
    negative: float = 0.0
    version: int = 0

    @property
    def adjustment(self) -> float:
        return self.negative - self.positive


@dataclass(frozen=True)
class UserPreferences:
    aggression: float = 0.0
    muted: frozenset[str] = field(default_factory=frozenset)


__all__ = [
    "ORG_WIDE",
    "AdaptiveState",
    "Bridge",
    "Candidate",
    "Context",
    "ContextSignals",
    "DecisionMode",
    "ExpirationPolicy",
    "FeedbackEvent",
    "GatedCandidate",
    "IntentClass",
    "InteractionEvent",
    "Memory",
    "MemoryStatus",
    "Outcome",
    "Platform",
    "ScoredCandidate",
    "Signal",
    "SurfacedMemory",
    "SurfacingDecision",
    "SurfacingMethod",
    "Tier",
    "UsageStats",
    "UserIdentity",
    "UserPreferences",
    "WorkflowStage",
]
