"""Tiered threshold gate with per-user adaptive adjustment."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from surfacing_engine.core.models import (
    AdaptiveState,
    Context,
    GatedCandidate,
    Memory,
    ScoredCandidate,
    Tier,
)
from surfacing_engine.settings import ThresholdConfig
from surfacing_engine.utils.exceptions import InvariantViolation
from surfacing_engine.utils.metrics import MET_ERRORS_TOTAL

log = logging.getLogger(__name__)

STANDARD = "standard"
CRITICAL = "critical"


def _clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x


@dataclass(frozen=True)
class EffectiveBands:
    """Bands after the adaptive shift for one request."""

    full: float
    indicator: float
    related: float

    def tier_for(self, score: float) -> Tier:
        if score >= self.full:
            return Tier.FULL
        if score >= self.indicator:
            return Tier.INDICATOR
        if score >= self.related:
            return Tier.RELATED
        return Tier.SUPPRESSED


class ThresholdGate:
    """
    Map a scored candidate to a :class:`Tier`.

    The effective threshold ``T`` replaces the configured indicator band and
    the other bands move with it, so adaptive feedback, urgency and the user's
    aggression preference shift the whole ladder.  ``T`` stays within
    ``[min_threshold, max_threshold]`` and no band drops below its class
    floor.
    """

    def __init__(
        self,
        config: ThresholdConfig | None = None,
        *,
        similarity_floor: float = 0.45,
        strict: bool = True,
    ) -> None:
        self.config = config or ThresholdConfig()
        self.similarity_floor = similarity_floor
        self.strict = strict
        self._critical_tags = frozenset(t.lower() for t in self.config.critical_tags)

    def sensitivity(self, memory: Memory) -> str:
        return CRITICAL if memory.tags & self._critical_tags else STANDARD

    def adaptive_adjustment(self, state: AdaptiveState) -> float:
        c = self.config
        positive = _clamp(state.positive, 0.0, c.max_positive_adjustment)
        negative = _clamp(state.negative, 0.0, c.max_negative_adjustment)
        return negative - positive

    def effective_threshold(
        self,
        sensitivity: str,
        state: AdaptiveState,
        context: Context,
        aggression: float = 0.0,
    ) -> float:
        c = self.config
        band = c.band_for(sensitivity)
        threshold = band.indicator + self.adaptive_adjustment(state)
        if context.signals.temporal_urgency.confidence >= c.urgency_trigger:
            threshold -= c.urgency_adjustment
        threshold -= _clamp(aggression, -c.max_aggression, c.max_aggression)
        threshold = _clamp(threshold, c.min_threshold, c.max_threshold)
        return max(threshold, band.floor)

    def bands(
        self,
        sensitivity: str,
        state: AdaptiveState,
        context: Context,
        aggression: float = 0.0,
    ) -> EffectiveBands:
        band = self.config.band_for(sensitivity)
        threshold = self.effective_threshold(sensitivity, state, context, aggression)
        delta = threshold - band.indicator
        lo = max(self.config.min_threshold, band.floor)

        def shift(value: float) -> float:
            return _clamp(value + delta, lo, 1.0)

        return EffectiveBands(full=shift(band.full), indicator=threshold, related=shift(band.related))

    def evaluate(
        self,
        scored: ScoredCandidate,
        state: AdaptiveState,
        context: Context,
        aggression: float = 0.0,
    ) -> GatedCandidate:
        sensitivity = self.sensitivity(scored.memory)
        if scored.similarity < self.similarity_floor:
            MET_ERRORS_TOTAL.labels(type="invariant", component="gate").inc()
            msg = (
                f"candidate {scored.memory.id} reached the gate with similarity "
                f"{scored.similarity:.3f} below floor {self.similarity_floor:.2f}"
            )
            if self.strict:
                raise InvariantViolation(msg)
            log.error("%s; suppressed", msg)
            return GatedCandidate(candidate=scored, tier=Tier.SUPPRESSED, sensitivity=sensitivity)
        tier = self.bands(sensitivity, state, context, aggression).tier_for(scored.score)
        return GatedCandidate(candidate=scored, tier=tier, sensitivity=sensitivity)

    def evaluate_all(
        self,
        scored: Iterable[ScoredCandidate],
        state: AdaptiveState,
        context: Context,
        aggression: float = 0.0,
    ) -> list[GatedCandidate]:
        """Gate every candidate and drop the suppressed ones."""
        gated = (self.evaluate(s, state, context, aggression) for s in scored)
        return [g for g in gated if g.tier is not Tier.SUPPRESSED]


__all__ = ["CRITICAL", "STANDARD", "EffectiveBands", "ThresholdGate"]
