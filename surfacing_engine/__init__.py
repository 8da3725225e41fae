"""
Memory Surfacing Decision Engine.

Decides, for a user's live context and a corpus of approved knowledge units,
whether to surface a memory, which one(s), and how.

This package provides:
- Context extraction (platform, intent, urgency, workflow stage, identity)
- Floor-guarded, access-filtered candidate retrieval
- Composite relevance scoring with usage decay
- Tiered, per-user adaptive threshold gating
- Disambiguation and multi-memory stitching
- Idempotent, per-key ordered feedback ingestion
- FastAPI-based REST API and a typer CLI
"""

from __future__ import annotations

import logging
from typing import Any

__version__: str = "1.0.0"
# Rebuild the module docstring to embed the current version.
__doc__ = f"Memory Surfacing Decision Engine v{__version__}.\n\n" + __doc__.split("\n", 2)[2].lstrip("\n")

# Configure default logging (no handlers by default for library use)
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "FeedbackIngestor",
    "SurfacingEngine",
    "UnifiedSettings",
    "__version__",
    "create_app",
    "get_settings",
]


# Lazy attribute access to avoid heavy imports on package import.
def __getattr__(name: str) -> Any:
    """Lazily import and return objects from submodules on attribute access."""
    if name == "UnifiedSettings":
        from surfacing_engine.settings import UnifiedSettings

        return UnifiedSettings
    if name == "get_settings":
        from surfacing_engine.settings import get_settings

        return get_settings
    if name == "SurfacingEngine":
        from surfacing_engine.engine.evaluator import SurfacingEngine

        return SurfacingEngine
    if name == "FeedbackIngestor":
        from surfacing_engine.engine.feedback import FeedbackIngestor

        return FeedbackIngestor
    if name == "create_app":
        from surfacing_engine.api.app import create_app

        return create_app
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
