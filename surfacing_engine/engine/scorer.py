"""
Composite relevance scoring.

``score = w_s * similarity + w_c * context_fit + w_t * timing``

with ``context_fit`` combining department match, authority and intent
alignment, and ``timing`` combining recency of use with proximity to the
expiration horizon.  Weights are normalised so the result stays in ``[0, 1]``.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import asdict, dataclass

from surfacing_engine.core.models import (
    Candidate,
    Context,
    IntentClass,
    Memory,
    ScoredCandidate,
    UsageStats,
)
from surfacing_engine.settings import ScoringConfig

_SECONDS_PER_DAY = 86_400.0


def _clamp01(x: float) -> float:
    return 0.0 if x < 0.0 else 1.0 if x > 1.0 else x


@dataclass(frozen=True)
class ScoreParts:
    similarity: float
    department: float
    authority: float
    intent: float
    context_fit: float
    recency: float
    expiry: float
    timing: float
    decay: float

    def as_dict(self) -> dict[str, float]:
        return {k: round(v, 6) for k, v in asdict(self).items()}


class RelevanceScorer:
    """Pure scoring of one candidate against one context."""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self.config = config or ScoringConfig()
        c = self.config
        total = c.w_similarity + c.w_context + c.w_timing
        self._w = (c.w_similarity / total, c.w_context / total, c.w_timing / total)
        fit_total = c.w_department + c.w_authority + c.w_intent
        self._fit_w = (
            c.w_department / fit_total,
            c.w_authority / fit_total,
            c.w_intent / fit_total,
        )

    # -- components ---------------------------------------------------------

    def department_fit(self, context: Context, memory: Memory) -> float:
        dept = (context.user.department or "").lower()
        if dept and dept in memory.departments:
            return 1.0
        if memory.departments & context.mentioned_departments:
            return self.config.department_mentioned
        if memory.org_wide:
            return self.config.department_org_wide
        return 0.0

    def intent_fit(self, context: Context, memory: Memory) -> float:
        intent = context.intent
        if not memory.intents or intent is IntentClass.OTHER:
            return self.config.intent_neutral
        return 1.0 if intent in memory.intents else 0.0

    def context_fit(self, context: Context, memory: Memory) -> tuple[float, float, float, float]:
        wd, wa, wi = self._fit_w
        dept = self.department_fit(context, memory)
        authority = _clamp01(memory.authority_score)
        intent = self.intent_fit(context, memory)
        return dept, authority, intent, _clamp01(wd * dept + wa * authority + wi * intent)

    def recency(self, usage: UsageStats, now: dt.datetime) -> float:
        if usage.last_accessed is None:
            return self.config.never_accessed_recency
        days = max(0.0, (now - usage.last_accessed).total_seconds() / _SECONDS_PER_DAY)
        return math.exp(-days / self.config.recency_tau_days)

    def expiry_factor(self, memory: Memory, now: dt.datetime) -> float:
        """1 until the decay start, then linear down to 0 at the horizon."""
        fraction = memory.expiration.lifetime_fraction(now)
        if fraction is None:
            return 1.0
        start = self.config.expiry_decay_start
        if fraction <= start:
            return 1.0
        return _clamp01((1.0 - fraction) / (1.0 - start))

    def usage_decay(self, usage: UsageStats) -> float:
        c = self.config
        if usage.access_count >= c.usage_decay_min_samples and usage.accept_rate < c.usage_decay_threshold:
            return c.usage_decay_factor
        return 1.0

    # -- composite ----------------------------------------------------------

    def parts(
        self, context: Context, candidate: Candidate, usage: UsageStats, now: dt.datetime
    ) -> tuple[float, ScoreParts]:
        memory = candidate.memory
        sim = _clamp01(candidate.similarity)
        dept, authority, intent, fit = self.context_fit(context, memory)
        recency = self.recency(usage, now)
        expiry = self.expiry_factor(memory, now)
        timing = _clamp01(recency * expiry)
        decay = self.usage_decay(usage)
        ws, wc, wt = self._w
        score = _clamp01((ws * sim + wc * fit + wt * timing) * decay)
        return score, ScoreParts(
            similarity=sim,
            department=dept,
            authority=authority,
            intent=intent,
            context_fit=fit,
            recency=recency,
            expiry=expiry,
            timing=timing,
            decay=decay,
        )

    def score(
        self,
        context: Context,
        candidate: Candidate,
        usage: UsageStats | None = None,
        now: dt.datetime | None = None,
    ) -> ScoredCandidate:
        usage = usage or candidate.memory.usage_stats
        now = now or dt.datetime.now(dt.UTC)
        value, parts = self.parts(context, candidate, usage, now)
        dept = (context.user.department or "").lower()
        return ScoredCandidate(
            memory=candidate.memory.with_usage(usage),
            similarity=candidate.similarity,
            score=value,
            parts=parts.as_dict(),
            department_match=bool(dept) and dept in candidate.memory.departments,
        )


__all__ = ["RelevanceScorer", "ScoreParts"]
