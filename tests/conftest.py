"""Pytest configuration and fixtures."""

from __future__ import annotations

import datetime as dt
import importlib.util
import math
import os
from collections.abc import Iterable, Sequence
from typing import Any

import numpy as np
import pytest
from hypothesis import settings as hsettings

from surfacing_engine.core.access import AccessRule, Clearance
from surfacing_engine.core.interfaces import Float32Array
from surfacing_engine.core.models import (
    Candidate,
    Context,
    ContextSignals,
    ExpirationPolicy,
    IntentClass,
    Memory,
    Platform,
    Signal,
    UsageStats,
    UserIdentity,
    WorkflowStage,
)
from surfacing_engine.core.store import InMemoryIdentityDirectory, InMemoryMemoryStore
from surfacing_engine.settings import UnifiedSettings

# Deterministic Hypothesis profile shared by all property tests.
hsettings.register_profile("default", max_examples=50, deadline=None, derandomize=True)
hsettings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


def _has(module: str) -> bool:
    return importlib.util.find_spec(module) is not None


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used in the test suite."""
    for name, desc in [
        ("property", "property-based tests"),
        ("api", "API tests"),
        ("needs_fastapi", "requires fastapi"),
        ("needs_httpx", "requires httpx"),
    ]:
        config.addinivalue_line("markers", f"{name}: {desc}")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests and skip those missing optional dependencies."""
    for item in items:
        nodeid = item.nodeid.lower()
        if "api" in nodeid:
            item.add_marker("api")
        if getattr(getattr(item, "obj", None), "is_hypothesis_test", False):
            item.add_marker("property")
        if item.get_closest_marker("needs_fastapi") and not _has("fastapi"):
            item.add_marker(pytest.mark.skip(reason="fastapi is not installed"))
        if item.get_closest_marker("needs_httpx") and not _has("httpx"):
            item.add_marker(pytest.mark.skip(reason="httpx is not installed"))


DIM = 8
NOW = dt.datetime(2026, 3, 2, 9, 30, tzinfo=dt.UTC)


# ---------------------------------------------------------------------------
# Vectors with exact cosine similarity
# ---------------------------------------------------------------------------
def query_vector(dim: int = DIM) -> Float32Array:
    vec = np.zeros(dim, dtype=np.float32)
    vec[0] = 1.0
    return vec


def vector_at(similarity: float, axis: int = 1, dim: int = DIM) -> Float32Array:
    """Unit vector whose cosine with :func:`query_vector` is ``similarity``."""
    vec = np.zeros(dim, dtype=np.float32)
    vec[0] = similarity
    vec[axis] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vec


class FixedEmbedder:
    """Embeds every text as the same query vector."""

    def __init__(self, dim: int = DIM) -> None:
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, texts: Sequence[str]) -> Float32Array:
        return np.stack([query_vector(self._dim) for _ in texts]) if texts else np.zeros((0, self._dim), dtype=np.float32)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def make_memory(
    memory_id: str,
    *,
    similarity: float = 0.8,
    departments: Iterable[str] = ("*",),
    tags: Iterable[str] = (),
    intents: Iterable[IntentClass] = (),
    workflows: Iterable[str] = (),
    step: int | None = None,
    access: dict[str, Any] | None = None,
    expiration: ExpirationPolicy | None = None,
    authority: float = 0.8,
    usage: UsageStats | None = None,
    answer: dict[str, Any] | None = None,
    **extra: Any,
) -> Memory:
    return Memory(
        id=memory_id,
        canonical_question=f"question for {memory_id}",
        answer=answer or {"text": f"answer for {memory_id}"},
        embedding=vector_at(similarity),
        departments=frozenset(departments),
        tags=frozenset(tags),
        intents=frozenset(intents),
        related_workflows=frozenset(workflows),
        workflow_step=step,
        access_rule=AccessRule.from_dict(access),
        expiration=expiration or ExpirationPolicy(),
        authority_score=authority,
        usage_stats=usage or UsageStats(),
        **extra,
    )


def make_user(
    user_id: str = "u-1",
    *,
    role: str = "employee",
    department: str | None = "it",
    clearance: Clearance = Clearance.GENERAL,
) -> UserIdentity:
    return UserIdentity(user_id=user_id, role=role, department=department, clearance=clearance)


def make_context(
    *,
    user: UserIdentity | None = None,
    platform: Platform = Platform.SLACK,
    intent: IntentClass = IntentClass.INFORMATION_SEEKING,
    intent_confidence: float = 0.9,
    urgency: float = 0.0,
    multi_step: bool = False,
    mentioned: Iterable[str] = (),
    raw_input: str = "how do i get budget approval?",
) -> Context:
    stage = WorkflowStage.MULTI_STEP if multi_step else WorkflowStage.SINGLE_STEP
    return Context(
        platform=platform,
        raw_input=raw_input,
        user=user or make_user(),
        signals=ContextSignals(
            app_detection=Signal(platform.value, 1.0),
            intent=Signal(intent.value, intent_confidence),
            temporal_urgency=Signal("high" if urgency >= 0.7 else "low", urgency),
            workflow_stage=Signal(stage.value, 0.9),
        ),
        fingerprint=f"{platform.value}.0123456789abcdef",
        mentioned_departments=frozenset(mentioned),
    )


def candidate(memory: Memory, similarity: float | None = None) -> Candidate:
    sim = float(memory.embedding[0]) if similarity is None else similarity
    return Candidate(memory=memory, similarity=sim)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def now() -> dt.datetime:
    return NOW


@pytest.fixture
def test_settings() -> UnifiedSettings:
    """Create test settings."""
    return UnifiedSettings.for_testing()


@pytest.fixture
def embedder() -> FixedEmbedder:
    return FixedEmbedder()


@pytest.fixture
def it_user() -> UserIdentity:
    return make_user("u-it", department="it")


@pytest.fixture
def budget_store() -> InMemoryMemoryStore:
    """Three budget answers from different departments."""
    return InMemoryMemoryStore(
        [
            make_memory("mem_it_budget", similarity=0.89, departments=["it"]),
            make_memory("mem_general_budget", similarity=0.82, departments=["*"]),
            make_memory("mem_marketing_budget", similarity=0.76, departments=["marketing"]),
        ]
    )


@pytest.fixture
def directory(it_user: UserIdentity) -> InMemoryIdentityDirectory:
    return InMemoryIdentityDirectory(
        [
            it_user,
            make_user("u-fin", department="finance"),
            make_user("u-contractor", role="contractor", department="it", clearance=Clearance.PUBLIC),
        ]
    )
