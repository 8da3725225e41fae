"""Settings package providing configuration models for the surfacing engine."""

from .core import (
    APIConfig,
    ContextConfig,
    CorpusConfig,
    DisambiguationConfig,
    FeedbackConfig,
    MonitoringConfig,
    RetrievalConfig,
    ScoringConfig,
    StitchConfig,
    ThresholdBand,
    ThresholdConfig,
    UnifiedSettings,
    configure_logging,
    get_settings,
)

__all__ = [
    "APIConfig",
    "ContextConfig",
    "CorpusConfig",
    "DisambiguationConfig",
    "FeedbackConfig",
    "MonitoringConfig",
    "RetrievalConfig",
    "ScoringConfig",
    "StitchConfig",
    "ThresholdBand",
    "ThresholdConfig",
    "UnifiedSettings",
    "configure_logging",
    "get_settings",
]
