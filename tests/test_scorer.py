"""Property tests for the composite relevance scorer."""

import datetime as dt

import pytest
from hypothesis import given
from hypothesis import strategies as st

from surfacing_engine.core.models import ExpirationPolicy, IntentClass, UsageStats
from surfacing_engine.engine.scorer import RelevanceScorer
from surfacing_engine.settings import ScoringConfig
from tests.conftest import NOW, candidate, make_context, make_memory, make_user

unit = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)


@given(
    similarity=unit,
    authority=unit,
    accept_rate=unit,
    access_count=st.integers(min_value=0, max_value=50),
    days_ago=st.one_of(st.none(), st.floats(min_value=0.0, max_value=3650.0)),
    urgency=unit,
)
def test_score_stays_in_unit_interval(
    similarity: float,
    authority: float,
    accept_rate: float,
    access_count: int,
    days_ago: float | None,
    urgency: float,
) -> None:
    last = None if days_ago is None else NOW - dt.timedelta(days=days_ago)
    usage = UsageStats(access_count=access_count, last_accessed=last, accept_rate=accept_rate)
    mem = make_memory("m", departments=["finance"], authority=authority, usage=usage)
    scored = RelevanceScorer().score(make_context(urgency=urgency), candidate(mem, similarity), now=NOW)
    assert 0.0 <= scored.score <= 1.0
    assert all(0.0 <= v <= 1.0 for v in scored.parts.values())


@given(low=unit, high=unit)
def test_score_monotone_in_similarity(low: float, high: float) -> None:
    low, high = sorted((low, high))
    scorer = RelevanceScorer()
    ctx = make_context()
    mem = make_memory("m")
    assert scorer.score(ctx, candidate(mem, low), now=NOW).score <= scorer.score(
        ctx, candidate(mem, high), now=NOW
    ).score + 1e-12


def test_budget_example_scores() -> None:
    scorer = RelevanceScorer()
    ctx = make_context(user=make_user(department="it"))
    it = scorer.score(ctx, candidate(make_memory("it", departments=["it"]), 0.89), now=NOW)
    general = scorer.score(ctx, candidate(make_memory("gen", departments=["*"]), 0.82), now=NOW)
    marketing = scorer.score(ctx, candidate(make_memory("mkt", departments=["marketing"]), 0.76), now=NOW)
    assert it.score == pytest.approx(0.827, abs=1e-3)
    assert general.score == pytest.approx(0.710, abs=1e-3)
    assert marketing.score == pytest.approx(0.599, abs=1e-3)
    assert it.department_match
    assert not general.department_match


def test_department_fit_levels() -> None:
    scorer = RelevanceScorer()
    ctx = make_context(user=make_user(department="it"), mentioned=["legal"])
    assert scorer.department_fit(ctx, make_memory("a", departments=["it"])) == 1.0
    assert scorer.department_fit(ctx, make_memory("b", departments=["legal"])) == pytest.approx(0.75)
    assert scorer.department_fit(ctx, make_memory("c", departments=["*"])) == pytest.approx(0.5)
    assert scorer.department_fit(ctx, make_memory("d", departments=[])) == pytest.approx(0.5)
    assert scorer.department_fit(ctx, make_memory("e", departments=["sales"])) == 0.0


def test_intent_fit() -> None:
    scorer = RelevanceScorer()
    ctx = make_context(intent=IntentClass.TROUBLESHOOTING)
    assert scorer.intent_fit(ctx, make_memory("a", intents=[IntentClass.TROUBLESHOOTING])) == 1.0
    assert scorer.intent_fit(ctx, make_memory("b", intents=[IntentClass.ACCESS_REQUEST])) == 0.0
    assert scorer.intent_fit(ctx, make_memory("c")) == pytest.approx(0.5)
    other = make_context(intent=IntentClass.OTHER)
    assert scorer.intent_fit(other, make_memory("d", intents=[IntentClass.ACCESS_REQUEST])) == pytest.approx(0.5)


def test_recency_decays() -> None:
    scorer = RelevanceScorer()
    fresh = scorer.recency(UsageStats(last_accessed=NOW), NOW)
    month = scorer.recency(UsageStats(last_accessed=NOW - dt.timedelta(days=30)), NOW)
    assert fresh == pytest.approx(1.0)
    assert month == pytest.approx(0.3679, abs=1e-3)
    assert scorer.recency(UsageStats(), NOW) == pytest.approx(0.5)


def test_expiry_factor_decays_near_horizon() -> None:
    scorer = RelevanceScorer()
    start = NOW - dt.timedelta(days=90)
    early = make_memory("a", expiration=ExpirationPolicy(expires_at=start + dt.timedelta(days=1000), starts_at=start))
    late = make_memory("b", expiration=ExpirationPolicy(expires_at=start + dt.timedelta(days=100), starts_at=start))
    assert scorer.expiry_factor(early, NOW) == 1.0
    # 90% of the lifetime used: halfway through the decay window.
    assert scorer.expiry_factor(late, NOW) == pytest.approx(0.5)
    assert scorer.expiry_factor(make_memory("c"), NOW) == 1.0


def test_reconfirmation_window_drives_expiry() -> None:
    scorer = RelevanceScorer()
    policy = ExpirationPolicy(
        reconfirm_every=dt.timedelta(days=10),
        last_confirmed_at=NOW - dt.timedelta(days=9),
    )
    assert scorer.expiry_factor(make_memory("a", expiration=policy), NOW) == pytest.approx(0.5)


def test_usage_decay_penalises_rejected_memories() -> None:
    scorer = RelevanceScorer()
    ctx = make_context()
    mem = make_memory("m")
    disliked = UsageStats(access_count=10, accept_rate=0.1)
    few_samples = UsageStats(access_count=2, accept_rate=0.0)
    base = scorer.score(ctx, candidate(mem, 0.8), usage=UsageStats(access_count=10, accept_rate=0.6), now=NOW)
    penalised = scorer.score(ctx, candidate(mem, 0.8), usage=disliked, now=NOW)
    assert penalised.parts["decay"] == pytest.approx(0.8)
    assert penalised.score < base.score
    assert scorer.usage_decay(few_samples) == 1.0


def test_weights_are_normalised() -> None:
    cfg = ScoringConfig(w_similarity=6.0, w_context=3.0, w_timing=1.0)
    ctx = make_context()
    mem = make_memory("m")
    assert RelevanceScorer(cfg).score(ctx, candidate(mem, 0.7), now=NOW).score == pytest.approx(
        RelevanceScorer().score(ctx, candidate(mem, 0.7), now=NOW).score
    )


def test_usage_overlay_is_carried_on_scored_memory() -> None:
    usage = UsageStats(access_count=3, last_accessed=NOW, accept_rate=0.9)
    scored = RelevanceScorer().score(make_context(), candidate(make_memory("m"), 0.7), usage=usage, now=NOW)
    assert scored.memory.usage_stats == usage
    assert scored.last_accessed == NOW
