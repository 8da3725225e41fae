"""Tests for the tiered threshold gate."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from surfacing_engine.core.models import AdaptiveState, ScoredCandidate, Tier
from surfacing_engine.engine.gate import CRITICAL, STANDARD, ThresholdGate
from surfacing_engine.utils.exceptions import InvariantViolation
from tests.conftest import make_context, make_memory


def _scored(score: float, similarity: float = 0.8, **memory_kw) -> ScoredCandidate:
    return ScoredCandidate(memory=make_memory("m", **memory_kw), similarity=similarity, score=score)


unit = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)


@given(
    positive=st.floats(min_value=0.0, max_value=5.0),
    negative=st.floats(min_value=0.0, max_value=5.0),
    urgency=unit,
    aggression=st.floats(min_value=-1.0, max_value=1.0),
    critical=st.booleans(),
)
def test_effective_threshold_bounds(
    positive: float, negative: float, urgency: float, aggression: float, critical: bool
) -> None:
    gate = ThresholdGate()
    state = AdaptiveState(positive=positive, negative=negative)
    sensitivity = CRITICAL if critical else STANDARD
    t = gate.effective_threshold(sensitivity, state, make_context(urgency=urgency), aggression)
    assert 0.30 <= t <= 0.90
    if critical:
        assert t >= 0.45
    bands = gate.bands(sensitivity, state, make_context(urgency=urgency), aggression)
    assert bands.related <= bands.indicator <= bands.full <= 1.0
    assert bands.related >= (0.45 if critical else 0.30)


def test_default_tiers() -> None:
    gate = ThresholdGate()
    ctx = make_context()
    state = AdaptiveState()
    assert gate.evaluate(_scored(0.90), state, ctx).tier is Tier.FULL
    assert gate.evaluate(_scored(0.70), state, ctx).tier is Tier.INDICATOR
    assert gate.evaluate(_scored(0.50), state, ctx).tier is Tier.RELATED
    assert gate.evaluate(_scored(0.40), state, ctx).tier is Tier.SUPPRESSED


def test_adaptive_state_shifts_threshold() -> None:
    gate = ThresholdGate()
    ctx = make_context()
    assert gate.effective_threshold(STANDARD, AdaptiveState(positive=0.10), ctx) == pytest.approx(0.55)
    assert gate.effective_threshold(STANDARD, AdaptiveState(negative=0.10), ctx) == pytest.approx(0.75)
    # Each direction is capped independently.
    capped = AdaptiveState(positive=1.0, negative=0.0)
    assert gate.effective_threshold(STANDARD, capped, ctx) == pytest.approx(0.50)
    assert gate.evaluate(_scored(0.60), capped, ctx).tier is Tier.INDICATOR


def test_urgency_lowers_threshold() -> None:
    gate = ThresholdGate()
    state = AdaptiveState()
    assert gate.effective_threshold(STANDARD, state, make_context(urgency=0.9)) == pytest.approx(0.55)
    assert gate.effective_threshold(STANDARD, state, make_context(urgency=0.5)) == pytest.approx(0.65)


def test_aggression_is_bounded() -> None:
    gate = ThresholdGate()
    ctx = make_context()
    state = AdaptiveState()
    assert gate.effective_threshold(STANDARD, state, ctx, 0.1) == pytest.approx(0.55)
    assert gate.effective_threshold(STANDARD, state, ctx, 1.0) == pytest.approx(0.45)
    assert gate.effective_threshold(STANDARD, state, ctx, -1.0) == pytest.approx(0.85)


def test_critical_memories_use_stricter_floor() -> None:
    gate = ThresholdGate()
    ctx = make_context(urgency=0.9)
    eager = AdaptiveState(positive=1.0)
    assert gate.sensitivity(make_memory("m", tags=["security"])) == CRITICAL
    assert gate.effective_threshold(CRITICAL, eager, ctx, 0.2) == pytest.approx(0.45)
    assert gate.effective_threshold(STANDARD, eager, ctx, 0.2) == pytest.approx(0.30)
    gated = gate.evaluate(_scored(0.40, tags=["security"]), eager, ctx, 0.2)
    assert gated.tier is Tier.SUPPRESSED
    assert gated.sensitivity == CRITICAL


def test_sub_floor_candidate_is_an_invariant_violation() -> None:
    with pytest.raises(InvariantViolation):
        ThresholdGate(strict=True).evaluate(_scored(0.95, similarity=0.2), AdaptiveState(), make_context())


def test_sub_floor_candidate_suppressed_when_lenient(caplog: pytest.LogCaptureFixture) -> None:
    gated = ThresholdGate(strict=False).evaluate(_scored(0.95, similarity=0.2), AdaptiveState(), make_context())
    assert gated.tier is Tier.SUPPRESSED
    assert "below floor" in caplog.text


def test_evaluate_all_drops_suppressed() -> None:
    gate = ThresholdGate()
    scored = [
        ScoredCandidate(memory=make_memory("a"), similarity=0.8, score=0.9),
        ScoredCandidate(memory=make_memory("b"), similarity=0.8, score=0.1),
    ]
    assert [g.memory.id for g in gate.evaluate_all(scored, AdaptiveState(), make_context())] == ["a"]
