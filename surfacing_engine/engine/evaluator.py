"""
Surfacing engine: orchestration of one evaluation.

    extract context -> retrieve -> score -> gate -> (stitch | disambiguate)

Every failure path ends in a suppressed decision so the caller cannot tell an
internal error from a legitimate low-confidence result.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from collections.abc import Sequence
from typing import Final

from surfacing_engine.core.access import REDACTED_ANSWER, AccessDecision, AccessSubject
from surfacing_engine.core.interfaces import Embedder, IdentityResolver, MemoryStore
from surfacing_engine.core.models import (
    Context,
    DecisionMode,
    GatedCandidate,
    InteractionEvent,
    Platform,
    SurfacedMemory,
    SurfacingDecision,
    SurfacingMethod,
    Tier,
)
from surfacing_engine.engine.context_extractor import ContextExtractor
from surfacing_engine.engine.disambiguator import Disambiguator, rank_key
from surfacing_engine.engine.feedback import FeedbackIngestor
from surfacing_engine.engine.gate import ThresholdGate
from surfacing_engine.engine.retriever import CandidateRetriever
from surfacing_engine.engine.scorer import RelevanceScorer
from surfacing_engine.engine.stitcher import StitchResult, Stitcher
from surfacing_engine.settings import UnifiedSettings
from surfacing_engine.utils.blake import pseudonymize
from surfacing_engine.utils.exceptions import (
    EvaluationCancelled,
    InvariantViolation,
    RetrievalTimeout,
    StoreUnavailable,
)
from surfacing_engine.utils.logging import bound_fingerprint
from surfacing_engine.utils.metrics import (
    EVALUATIONS_TOTAL,
    LAT_EVALUATE,
    MET_ERRORS_TOTAL,
    SUPPRESSED_TOTAL,
)

log = logging.getLogger(__name__)
decision_log = logging.getLogger("surfacing_engine.decisions")

PLATFORM_METHOD: Final[dict[Platform, SurfacingMethod]] = {
    Platform.SLACK: SurfacingMethod.INLINE,
    Platform.EMAIL: SurfacingMethod.SIDEBAR,
    Platform.FORM: SurfacingMethod.TOOLTIP,
    Platform.BROWSER: SurfacingMethod.TOOLTIP,
    Platform.OTHER: SurfacingMethod.INLINE,
}


def _surfaced(gated: GatedCandidate, subject: AccessSubject, *, primary: bool) -> SurfacedMemory:
    redacted = gated.memory.access_rule.evaluate(subject) is AccessDecision.REDACT
    return SurfacedMemory(
        memory_id=gated.memory.id,
        score=round(gated.score, 6),
        tier=gated.tier,
        primary=primary,
        answer=REDACTED_ANSWER if redacted else gated.memory.answer,
        redacted=redacted,
    )


class SurfacingEngine:
    """Stateless evaluator; mutable state is read from the feedback ingestor."""

    def __init__(
        self,
        store: MemoryStore,
        identity: IdentityResolver,
        embedder: Embedder,
        ingestor: FeedbackIngestor | None = None,
        settings: UnifiedSettings | None = None,
    ) -> None:
        self.settings = settings or UnifiedSettings()
        s = self.settings
        self.store = store
        self.identity = identity
        self.ingestor = ingestor or FeedbackIngestor.from_settings(store, s)
        self.extractor = ContextExtractor(s.context, s.stitch)
        self.retriever = CandidateRetriever(store, embedder, s.retrieval)
        self.scorer = RelevanceScorer(s.scoring)
        self.gate = ThresholdGate(
            s.thresholds,
            similarity_floor=s.retrieval.similarity_floor,
            strict=s.strict_invariants,
        )
        self.disambiguator = Disambiguator(s.disambiguation)
        self.stitcher = Stitcher(s.stitch)
        self._pseudonym_key = s.monitoring.pseudonym_key.encode("utf-8")

    # ------------------------------------------------------------------
    # Decision builders
    # ------------------------------------------------------------------
    def _stitched(self, context: Context, result: StitchResult) -> SurfacingDecision:
        subject = context.subject
        return SurfacingDecision(
            should_surface=True,
            memories=tuple(_surfaced(m, subject, primary=m.tier.primary) for m in result.members),
            confidence=round(result.confidence, 6),
            method=SurfacingMethod.SIDEBAR,
            mode=DecisionMode.STITCHED,
            context_fingerprint=context.fingerprint,
            show_confidence=any(m.tier is not Tier.FULL for m in result.members),
            bridges=result.bridges,
            reason="stitched",
        )

    def _resolved(self, context: Context, primaries: Sequence[GatedCandidate]) -> SurfacingDecision:
        subject = context.subject
        resolution = self.disambiguator.resolve(primaries, context)
        top = resolution.top
        if resolution.clustered:
            return SurfacingDecision(
                should_surface=True,
                memories=tuple(_surfaced(g, subject, primary=True) for g in resolution.chosen),
                confidence=round(top.score, 6),
                method=SurfacingMethod.CHOICE,
                mode=DecisionMode.DISAMBIGUATION,
                context_fingerprint=context.fingerprint,
                show_confidence=True,
                reason="near_tie",
            )
        return SurfacingDecision(
            should_surface=True,
            memories=(_surfaced(top, subject, primary=True),),
            confidence=round(top.score, 6),
            method=PLATFORM_METHOD[context.platform],
            mode=DecisionMode.SINGLE,
            context_fingerprint=context.fingerprint,
            show_confidence=top.tier is Tier.INDICATOR,
            reason=top.tier.value,
        )

    def _related(self, context: Context, related: Sequence[GatedCandidate]) -> SurfacingDecision:
        best = min(related, key=rank_key)
        return SurfacingDecision(
            should_surface=True,
            memories=(_surfaced(best, context.subject, primary=False),),
            confidence=round(best.score, 6),
            method=SurfacingMethod.SIDEBAR,
            mode=DecisionMode.RELATED,
            context_fingerprint=context.fingerprint,
            show_confidence=True,
            reason="related_only",
        )

    def _check_access(
        self,
        decision: SurfacingDecision,
        context: Context,
        now: dt.datetime,
        gated: Sequence[GatedCandidate],
    ) -> SurfacingDecision:
        """Re-verify that every surfaced memory is visible to the requester."""
        by_id = {g.memory.id: g.memory for g in gated}
        subject = context.subject
        for memory_id in decision.memory_ids:
            memory = by_id.get(memory_id)
            if memory is None or not memory.is_retrievable(subject, now):
                MET_ERRORS_TOTAL.labels(type="invariant", component="engine").inc()
                msg = f"decision would surface memory {memory_id} the requester cannot see"
                if self.settings.strict_invariants:
                    raise InvariantViolation(msg)
                log.error("%s; suppressed", msg)
                return SurfacingDecision.suppressed(context.fingerprint, "access_invariant")
        return decision

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    async def decide(
        self,
        context: Context,
        *,
        now: dt.datetime,
        cancel: asyncio.Event | None = None,
    ) -> SurfacingDecision:
        """Run retrieval and the pure decision stages for an extracted context."""
        try:
            candidates = await self.retriever.retrieve(context, now, cancel=cancel)
        except RetrievalTimeout:
            log.warning("Retrieval timed out; suppressing")
            return SurfacingDecision.suppressed(context.fingerprint, "retrieval_timeout")
        except StoreUnavailable as exc:
            log.warning("Memory store unavailable (%s); suppressing", exc)
            return SurfacingDecision.suppressed(context.fingerprint, "store_unavailable")
        except EvaluationCancelled:
            log.info("Evaluation cancelled by caller")
            return SurfacingDecision.suppressed(context.fingerprint, "cancelled")

        user_id = context.user.user_id
        prefs = self.ingestor.preferences(user_id)
        if prefs.muted:
            candidates = [c for c in candidates if c.memory.id not in prefs.muted]
        if not candidates:
            return SurfacingDecision.suppressed(context.fingerprint, "no_candidates")

        scored = [
            self.scorer.score(context, c, self.ingestor.usage(c.memory.id), now) for c in candidates
        ]
        state = self.ingestor.adaptive_state(user_id, context.platform)
        gated = self.gate.evaluate_all(scored, state, context, prefs.aggression)
        if not gated:
            return SurfacingDecision.suppressed(context.fingerprint, "below_threshold")

        decision: SurfacingDecision | None = None
        if self.stitcher.applies(gated, context):
            result = self.stitcher.stitch(gated, context, now)
            if result is not None:
                decision = self._stitched(context, result)
        if decision is None:
            primaries = [g for g in gated if g.tier.primary]
            if primaries:
                decision = self._resolved(context, primaries)
            else:
                decision = self._related(context, gated)
        return self._check_access(decision, context, now, gated)

    async def evaluate(
        self,
        event: InteractionEvent,
        cancel: asyncio.Event | None = None,
        *,
        now: dt.datetime | None = None,
    ) -> SurfacingDecision:
        """
        Decide whether and how to surface memories for ``event``.

        Deterministic for identical store contents, ingestor state and
        ``now``.  Only ``InvariantViolation`` may escape, and only when the
        settings ask for strict invariants.
        """
        now = now or dt.datetime.now(dt.UTC)
        start = time.perf_counter()
        context = await self.extractor.extract(event, self.identity)
        self.ingestor.remember_fingerprint(context.fingerprint, context.user.user_id)
        with bound_fingerprint(context.fingerprint):
            try:
                decision = await self.decide(context, now=now, cancel=cancel)
            finally:
                LAT_EVALUATE.observe(time.perf_counter() - start)
            self._record(context, decision)
        return decision

    def _record(self, context: Context, decision: SurfacingDecision) -> None:
        EVALUATIONS_TOTAL.labels(mode=decision.mode.value).inc()
        if not decision.should_surface:
            SUPPRESSED_TOTAL.labels(reason=decision.reason or "unknown").inc()
        decision_log.info(
            "decision user=%s platform=%s intent=%s mode=%s surfaced=%d confidence=%.3f",
            pseudonymize(context.user.user_id, self._pseudonym_key),
            context.platform.value,
            context.intent.value,
            decision.mode.value,
            len(decision.memories),
            decision.confidence,
        )


__all__ = ["PLATFORM_METHOD", "SurfacingEngine"]
