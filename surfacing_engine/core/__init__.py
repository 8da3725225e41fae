"""Core domain types, access rules and reference backends."""

from surfacing_engine.core.access import (
    REDACTED_ANSWER,
    AccessDecision,
    AccessRule,
    AccessSubject,
    Clearance,
)
from surfacing_engine.core.interfaces import Embedder, IdentityResolver, MemoryStore, SearchFilters
from surfacing_engine.core.models import *  # noqa: F403
from surfacing_engine.core.models import __all__ as _models_all

__all__ = [
    "REDACTED_ANSWER",
    "AccessDecision",
    "AccessRule",
    "AccessSubject",
    "Clearance",
    "Embedder",
    "IdentityResolver",
    "MemoryStore",
    "SearchFilters",
    *_models_all,
]
