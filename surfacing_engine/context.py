"""Context variables carried through one HTTP request and one evaluation."""

from __future__ import annotations

from contextvars import ContextVar

REQUEST_ID: ContextVar[str | None] = ContextVar("request_id", default=None)
# Set by the engine for the duration of an evaluation.
FINGERPRINT: ContextVar[str | None] = ContextVar("context_fingerprint", default=None)

__all__ = ["FINGERPRINT", "REQUEST_ID"]
