"""Exception hierarchy for the surfacing engine."""

from __future__ import annotations


class SurfacingError(Exception):
    """Base class for all engine errors."""


class UnknownPlatform(SurfacingError):
    """Raised when an interaction event carries no platform metadata."""


class UnknownUser(SurfacingError):
    """Raised by identity lookups for unrecognized users."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"unknown user: {user_id!r}")
        self.user_id = user_id


class RetrievalTimeout(SurfacingError):
    """The memory store did not answer within the retrieval budget."""


class StoreUnavailable(SurfacingError):
    """The memory store failed or is unreachable."""


class EvaluationCancelled(SurfacingError):
    """The caller abandoned the evaluation before retrieval completed."""


class InvalidFeedbackEvent(SurfacingError):
    """Feedback event that is duplicated, malformed or references an unknown memory."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class InvariantViolation(SurfacingError):
    """An internal invariant was broken; this is a programming defect."""


class CorpusError(SurfacingError):
    """A corpus file could not be parsed into memories or users."""


__all__ = [
    "CorpusError",
    "EvaluationCancelled",
    "InvalidFeedbackEvent",
    "InvariantViolation",
    "RetrievalTimeout",
    "StoreUnavailable",
    "SurfacingError",
    "UnknownPlatform",
    "UnknownUser",
]
