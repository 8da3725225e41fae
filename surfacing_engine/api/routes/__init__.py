"""API route modules."""

from surfacing_engine.api.routes import evaluate, feedback, health

__all__ = ["evaluate", "feedback", "health"]
