"""End-to-end evaluation tests for :class:`SurfacingEngine`."""

import asyncio
import time

import pytest

from surfacing_engine.core.access import REDACTED_ANSWER
from surfacing_engine.core.models import (
    DecisionMode,
    FeedbackEvent,
    InteractionEvent,
    Outcome,
    Platform,
    SurfacedMemory,
    SurfacingDecision,
    SurfacingMethod,
    Tier,
)
from surfacing_engine.core.store import InMemoryIdentityDirectory, InMemoryMemoryStore
from surfacing_engine.engine.evaluator import SurfacingEngine
from surfacing_engine.settings import RetrievalConfig, UnifiedSettings
from surfacing_engine.utils.exceptions import InvariantViolation
from surfacing_engine.utils.logging import install_record_factory
from tests.conftest import NOW, FixedEmbedder, make_memory
from tests.test_retriever import BrokenStore, SleepingEmbedder, SlowStore

BUDGET_Q = "How do I get budget approval?"


def _engine(
    store: InMemoryMemoryStore,
    directory: InMemoryIdentityDirectory,
    settings: UnifiedSettings | None = None,
) -> SurfacingEngine:
    return SurfacingEngine(store, directory, FixedEmbedder(), settings=settings or UnifiedSettings.for_testing())


def _event(text: str = BUDGET_Q, user: str = "u-it", platform: str | None = "slack") -> InteractionEvent:
    return InteractionEvent(raw_input=text, user_id=user, platform=platform)


@pytest.mark.asyncio
async def test_department_specific_answer_wins(budget_store, directory) -> None:
    decision = await _engine(budget_store, directory).evaluate(_event(), now=NOW)
    assert decision.should_surface
    assert decision.mode is DecisionMode.SINGLE
    assert decision.memory_ids == ("mem_it_budget",)
    assert decision.method is SurfacingMethod.INLINE
    assert decision.memories[0].tier is Tier.INDICATOR
    assert decision.show_confidence
    assert decision.confidence == pytest.approx(0.827, abs=1e-3)


@pytest.mark.asyncio
async def test_platform_selects_presentation(budget_store, directory) -> None:
    email = await _engine(budget_store, directory).evaluate(_event(platform="outlook"), now=NOW)
    assert email.method is SurfacingMethod.SIDEBAR
    form = await _engine(budget_store, directory).evaluate(_event(platform="forms"), now=NOW)
    assert form.method is SurfacingMethod.TOOLTIP


@pytest.mark.asyncio
async def test_near_tie_asks_user_to_choose(directory) -> None:
    store = InMemoryMemoryStore(
        [
            make_memory("budget_a", similarity=0.86, departments=["it"]),
            make_memory("budget_b", similarity=0.84, departments=["it"]),
        ]
    )
    decision = await _engine(store, directory).evaluate(_event(), now=NOW)
    assert decision.mode is DecisionMode.DISAMBIGUATION
    assert decision.method is SurfacingMethod.CHOICE
    assert decision.memory_ids == ("budget_a", "budget_b")
    assert all(m.primary for m in decision.memories)


@pytest.mark.asyncio
async def test_vendor_workflow_is_stitched(directory) -> None:
    wf = ["vendor-onboarding"]
    store = InMemoryMemoryStore(
        [
            make_memory("vendor_budget", similarity=0.80, departments=["*"], workflows=wf, step=1),
            make_memory(
                "vendor_security_review",
                similarity=0.78,
                departments=["security"],
                workflows=wf,
                step=2,
                access={"allowed_departments": ["security"]},
            ),
            make_memory("vendor_procurement", similarity=0.75, departments=["procurement"], workflows=wf, step=2),
            make_memory("vendor_contract", similarity=0.72, departments=["legal"], workflows=wf, step=3),
        ]
    )
    decision = await _engine(store, directory).evaluate(
        _event("How do I get budget approved for a vendor tool?"), now=NOW
    )
    assert decision.mode is DecisionMode.STITCHED
    assert decision.method is SurfacingMethod.SIDEBAR
    assert decision.memory_ids == ("vendor_budget", "vendor_procurement", "vendor_contract")
    assert len(decision.bridges) == 2
    assert decision.confidence == pytest.approx(min(m.score for m in decision.memories))
    assert "vendor_security_review" not in decision.memory_ids


@pytest.mark.asyncio
async def test_related_only_goes_to_sidebar(directory) -> None:
    store = InMemoryMemoryStore([make_memory("loosely_related", similarity=0.5)])
    decision = await _engine(store, directory).evaluate(_event(), now=NOW)
    assert decision.mode is DecisionMode.RELATED
    assert decision.method is SurfacingMethod.SIDEBAR
    assert not decision.memories[0].primary
    assert decision.memories[0].tier is Tier.RELATED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("memories", "reason"),
    [
        ([], "no_candidates"),
        ([make_memory("weak", similarity=0.46, departments=["marketing"])], "below_threshold"),
        ([make_memory("far", similarity=0.3)], "no_candidates"),
    ],
)
async def test_suppression_reasons(directory, memories, reason: str) -> None:
    decision = await _engine(InMemoryMemoryStore(memories), directory).evaluate(_event(), now=NOW)
    assert not decision.should_surface
    assert decision.mode is DecisionMode.SUPPRESSED
    assert decision.method is SurfacingMethod.NONE
    assert decision.memories == ()
    assert decision.reason == reason


@pytest.mark.asyncio
async def test_store_failures_are_suppressed(directory) -> None:
    settings = UnifiedSettings.for_testing().model_copy(
        update={"retrieval": RetrievalConfig(timeout_seconds=0.01)}
    )
    slow = await _engine(SlowStore(0.5, make_memory("a")), directory, settings).evaluate(_event(), now=NOW)
    assert (slow.should_surface, slow.reason) == (False, "retrieval_timeout")
    broken = await _engine(BrokenStore(), directory).evaluate(_event(), now=NOW)
    assert (broken.should_surface, broken.reason) == (False, "store_unavailable")


@pytest.mark.asyncio
async def test_blocking_embedder_does_not_serialize_evaluations(budget_store, directory) -> None:
    settings = UnifiedSettings.for_testing().model_copy(
        update={"retrieval": RetrievalConfig(timeout_seconds=0.05)}
    )
    engine = SurfacingEngine(budget_store, directory, SleepingEmbedder(0.4), settings=settings)
    start = time.perf_counter()
    decisions = await asyncio.gather(*(engine.evaluate(_event(), now=NOW) for _ in range(3)))
    assert time.perf_counter() - start < 0.35
    assert [d.reason for d in decisions] == ["retrieval_timeout"] * 3


@pytest.mark.asyncio
async def test_cancelled_evaluation_is_suppressed(budget_store, directory) -> None:
    cancel = asyncio.Event()
    cancel.set()
    decision = await _engine(budget_store, directory).evaluate(_event(), cancel, now=NOW)
    assert decision.reason == "cancelled"
    assert not decision.should_surface


@pytest.mark.asyncio
async def test_evaluation_is_deterministic(budget_store, directory) -> None:
    engine = _engine(budget_store, directory)
    first = await engine.evaluate(_event(), now=NOW)
    for _ in range(5):
        assert await engine.evaluate(_event(), now=NOW) == first


@pytest.mark.asyncio
async def test_unknown_user_gets_least_privilege(directory) -> None:
    store = InMemoryMemoryStore(
        [
            make_memory("internal_only", similarity=0.9, access={"min_clearance": "general"}),
            make_memory("public_faq", similarity=0.85),
        ]
    )
    decision = await _engine(store, directory).evaluate(_event(user="stranger"), now=NOW)
    assert decision.memory_ids == ("public_faq",)


@pytest.mark.asyncio
async def test_missing_platform_still_evaluates(budget_store, directory) -> None:
    decision = await _engine(budget_store, directory).evaluate(_event(platform=None), now=NOW)
    assert decision.should_surface
    assert decision.context_fingerprint.startswith("other.")
    assert decision.method is SurfacingMethod.INLINE


@pytest.mark.asyncio
async def test_redacted_memory_is_surfaced_without_content(directory) -> None:
    store = InMemoryMemoryStore(
        [make_memory("salary", similarity=0.9, departments=["it"], access={"redact_below": "restricted"})]
    )
    decision = await _engine(store, directory).evaluate(_event(), now=NOW)
    assert decision.should_surface
    surfaced = decision.memories[0]
    assert surfaced.redacted
    assert surfaced.answer == REDACTED_ANSWER


@pytest.mark.asyncio
async def test_muted_memory_is_never_surfaced(budget_store, directory) -> None:
    engine = _engine(budget_store, directory)
    engine.ingestor.set_preferences("u-it", mute=["mem_it_budget"])
    decision = await engine.evaluate(_event(), now=NOW)
    assert decision.memory_ids == ("mem_general_budget",)


@pytest.mark.asyncio
async def test_rejections_raise_the_bar(directory) -> None:
    store = InMemoryMemoryStore([make_memory("general", similarity=0.82)])
    engine = _engine(store, directory)
    before = await engine.evaluate(_event(), now=NOW)
    assert before.mode is DecisionMode.SINGLE
    for i in range(4):
        await engine.ingestor.ingest(
            FeedbackEvent(
                memory_id="general",
                context_fingerprint=before.context_fingerprint,
                user_id="u-it",
                outcome=Outcome.REJECTED,
                timestamp=NOW,
                event_id=f"r{i}",
            )
        )
    after = await engine.evaluate(_event(), now=NOW)
    assert after.mode is DecisionMode.RELATED
    # Other platforms keep their own state.
    email = await engine.evaluate(_event(platform="email"), now=NOW)
    assert email.mode is DecisionMode.SINGLE


@pytest.mark.asyncio
async def test_feedback_user_comes_from_issued_fingerprint(directory) -> None:
    store = InMemoryMemoryStore([make_memory("general", similarity=0.82)])
    engine = _engine(store, directory)
    before = await engine.evaluate(_event(), now=NOW)
    event = FeedbackEvent(
        memory_id="general",
        context_fingerprint=before.context_fingerprint,
        user_id=None,
        outcome=Outcome.ACCEPTED,
        timestamp=NOW,
    )
    assert await engine.ingestor.ingest(event)
    assert engine.ingestor.adaptive_state("u-it", Platform.SLACK).version == 1


@pytest.mark.asyncio
async def test_urgency_and_aggression_lower_the_bar(directory) -> None:
    store = InMemoryMemoryStore([make_memory("general", similarity=0.70)])
    engine = _engine(store, directory)
    assert (await engine.evaluate(_event(), now=NOW)).mode is DecisionMode.RELATED
    assert (await engine.evaluate(_event(BUDGET_Q + " asap"), now=NOW)).mode is DecisionMode.SINGLE
    engine.ingestor.set_preferences("u-it", aggression=0.1)
    assert (await engine.evaluate(_event(), now=NOW)).mode is DecisionMode.SINGLE


def _leaky_decision(fingerprint: str) -> SurfacingDecision:
    return SurfacingDecision(
        should_surface=True,
        memories=(SurfacedMemory("hidden", 0.9, Tier.FULL, True, {"text": "secret"}),),
        confidence=0.9,
        method=SurfacingMethod.INLINE,
        mode=DecisionMode.SINGLE,
        context_fingerprint=fingerprint,
    )


@pytest.mark.asyncio
async def test_access_recheck_raises_outside_production(budget_store, directory) -> None:
    engine = _engine(budget_store, directory)
    ctx = await engine.extractor.extract(_event(), directory)
    with pytest.raises(InvariantViolation):
        engine._check_access(_leaky_decision(ctx.fingerprint), ctx, NOW, [])


@pytest.mark.asyncio
async def test_access_recheck_suppresses_in_production(budget_store, directory) -> None:
    engine = _engine(budget_store, directory, UnifiedSettings.for_production())
    ctx = await engine.extractor.extract(_event(), directory)
    decision = engine._check_access(_leaky_decision(ctx.fingerprint), ctx, NOW, [])
    assert not decision.should_surface
    assert decision.reason == "access_invariant"


@pytest.mark.asyncio
async def test_log_lines_carry_the_fingerprint(directory, caplog: pytest.LogCaptureFixture) -> None:
    install_record_factory()
    with caplog.at_level("WARNING", logger="surfacing_engine.engine.evaluator"):
        decision = await _engine(BrokenStore(), directory).evaluate(_event(), now=NOW)
    records = [r for r in caplog.records if "unavailable" in r.getMessage()]
    assert records
    assert records[0].fingerprint == decision.context_fingerprint  # type: ignore[attr-defined]
