from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    model_validator,
)

from surfacing_engine import __version__
from surfacing_engine.utils.logging import LOG_FORMAT, ContextTagFilter, install_record_factory

ENV_PREFIX = "SURFACING_"


class ScoringConfig(BaseModel):
    """Weights for the composite relevance score."""

    w_similarity: NonNegativeFloat = 0.6
    w_context: NonNegativeFloat = 0.3
    w_timing: NonNegativeFloat = 0.1
    # contextFit sub-weights
    w_department: NonNegativeFloat = 0.5
    w_authority: NonNegativeFloat = 0.2
    w_intent: NonNegativeFloat = 0.3
    department_mentioned: float = Field(0.75, ge=0.0, le=1.0)
    department_org_wide: float = Field(0.5, ge=0.0, le=1.0)
    intent_neutral: float = Field(0.5, ge=0.0, le=1.0)
    recency_tau_days: PositiveFloat = 30.0
    never_accessed_recency: float = Field(0.5, ge=0.0, le=1.0)
    expiry_decay_start: float = Field(0.8, ge=0.0, lt=1.0)
    usage_decay_threshold: float = Field(0.3, ge=0.0, le=1.0)
    usage_decay_factor: float = Field(0.8, gt=0.0, lt=1.0)
    usage_decay_min_samples: NonNegativeInt = 5

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _non_degenerate(self) -> ScoringConfig:
        if self.w_similarity + self.w_context + self.w_timing <= 0.0:
            raise ValueError("score weights must not all be zero")
        if self.w_department + self.w_authority + self.w_intent <= 0.0:
            raise ValueError("context fit weights must not all be zero")
        return self


class ThresholdBand(BaseModel):
    """Confidence bands for one sensitivity class."""

    full: float = Field(0.85, ge=0.0, le=1.0)
    indicator: float = Field(0.65, ge=0.0, le=1.0)
    related: float = Field(0.45, ge=0.0, le=1.0)
    floor: float = Field(0.30, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _ordered(self) -> ThresholdBand:
        if not self.floor <= self.related <= self.indicator <= self.full:
            raise ValueError("bands must satisfy floor <= related <= indicator <= full")
        return self


def _default_bands() -> dict[str, ThresholdBand]:
    return {"standard": ThresholdBand(), "critical": ThresholdBand(floor=0.45)}


class ThresholdConfig(BaseModel):
    """Threshold gate bands and adaptive limits."""

    bands: dict[str, ThresholdBand] = Field(default_factory=_default_bands)
    critical_tags: list[str] = Field(default_factory=lambda: ["security", "legal"])
    min_threshold: float = Field(0.30, ge=0.0, le=1.0)
    max_threshold: float = Field(0.90, ge=0.0, le=1.0)
    max_positive_adjustment: NonNegativeFloat = 0.15
    max_negative_adjustment: NonNegativeFloat = 0.20
    urgency_trigger: float = Field(0.7, ge=0.0, le=1.0)
    urgency_adjustment: NonNegativeFloat = 0.10
    max_aggression: NonNegativeFloat = 0.20

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _validate(self) -> ThresholdConfig:
        if self.min_threshold > self.max_threshold:
            raise ValueError("min_threshold must not exceed max_threshold")
        if "standard" not in self.bands:
            raise ValueError("a 'standard' band is required")
        return self

    def band_for(self, sensitivity: str) -> ThresholdBand:
        return self.bands.get(sensitivity, self.bands["standard"])


class RetrievalConfig(BaseModel):
    """Candidate retrieval options."""

    similarity_floor: float = Field(0.45, ge=0.0, le=1.0)
    top_k: PositiveInt = 20
    timeout_seconds: PositiveFloat = 0.25

    model_config = ConfigDict(frozen=True)


class DisambiguationConfig(BaseModel):
    """Near-tie resolution options."""

    decisive_gap: NonNegativeFloat = 0.10
    max_cluster: PositiveInt = 3

    model_config = ConfigDict(frozen=True)


def _default_multi_step_patterns() -> list[str]:
    return [
        r"\bapproved? for (a|an|the|my|our)\b",
        r"\b(and then|after that|end[- ]to[- ]end|from start to finish)\b",
        r"\b(walk me through|step[- ]by[- ]step|all the steps|whole process)\b",
        r"\bonboard(ing)? (a )?new\b",
    ]


class StitchConfig(BaseModel):
    """Multi-memory stitching options."""

    max_members: PositiveInt = 5
    single_confidence_ceiling: float = Field(0.85, ge=0.0, le=1.0)
    multi_step_patterns: list[str] = Field(default_factory=_default_multi_step_patterns)
    multi_step_intents: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class FeedbackConfig(BaseModel):
    """Feedback aggregation options."""

    ema_decay: float = Field(0.1, gt=0.0, le=1.0)
    accepted_step: NonNegativeFloat = 0.03
    edited_step: NonNegativeFloat = 0.015
    rejected_step: NonNegativeFloat = 0.05
    ignored_step: NonNegativeFloat = 0.0
    # One worker per shard, keyed by user.  Users that hash to the same shard
    # share a worker, so a slow store lookup for one delays the others; raise
    # this with the number of concurrently active users.
    shards: PositiveInt = 4
    queue_size: PositiveInt = 10_000
    dedup_window: PositiveInt = 100_000
    # Issued fingerprints remembered to resolve feedback that omits the user.
    fingerprint_window: PositiveInt = 100_000

    model_config = ConfigDict(frozen=True)


def _default_departments() -> list[str]:
    return [
        "it",
        "finance",
        "hr",
        "legal",
        "marketing",
        "procurement",
        "security",
        "sales",
        "engineering",
        "operations",
    ]


class ContextConfig(BaseModel):
    """Context extraction options."""

    intent_floor: float = Field(0.3, ge=0.0, le=1.0)
    departments: list[str] = Field(default_factory=_default_departments)

    model_config = ConfigDict(frozen=True)


class CorpusConfig(BaseModel):
    """Reference store bootstrap options."""

    path: Path | None = None
    embedder: Literal["hashing", "sentence-transformers"] = "hashing"
    embedding_dim: PositiveInt = 256
    model_name: str = "all-MiniLM-L6-v2"

    model_config = ConfigDict(frozen=True)


class APIConfig(BaseModel):
    """HTTP API options."""

    host: str = "0.0.0.0"
    port: NonNegativeInt = 8_000
    enable_cors: bool = True
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    disconnect_poll_seconds: PositiveFloat = 0.05

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _validate_port(self) -> APIConfig:
        if self.port != 0 and (self.port < 1_024 or self.port > 65_535):
            raise ValueError("port must be between 1024 and 65535")
        return self


class MonitoringConfig(BaseModel):
    """Metrics and diagnostics configuration."""

    enable_metrics: bool = True
    log_level: str = "INFO"
    pseudonym_key: str = "surfacing-engine-pseudonyms"

    model_config = ConfigDict(frozen=True)


def _coerce_env(value: str) -> Any:
    stripped = value.strip()
    if stripped[:1] in {"[", "{"}:
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return value
    return value


def _env_overrides(
    fields: set[str], environ: dict[str, str] | None = None
) -> dict[str, Any]:
    """Collect ``SURFACING_<SECTION>__<FIELD>`` overrides as nested data."""
    environ = dict(os.environ) if environ is None else environ
    out: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        trimmed = key[len(ENV_PREFIX) :].lower()
        if "__" not in trimmed:
            if trimmed in fields:
                out[trimmed] = _coerce_env(value)
            continue
        section, field = trimmed.split("__", 1)
        if section in fields:
            out.setdefault(section, {})[field] = _coerce_env(value)
    return out


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, BaseModel):
            merged[key] = {**current.model_dump(), **value}
        elif isinstance(value, dict) and isinstance(current, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


class UnifiedSettings(BaseModel):
    """Aggregate all configuration sections."""

    version: str = __version__
    profile: str = "development"
    scoring: ScoringConfig = ScoringConfig()
    thresholds: ThresholdConfig = ThresholdConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    disambiguation: DisambiguationConfig = DisambiguationConfig()
    stitch: StitchConfig = StitchConfig()
    feedback: FeedbackConfig = FeedbackConfig()
    context: ContextConfig = ContextConfig()
    corpus: CorpusConfig = CorpusConfig()
    api: APIConfig = APIConfig()
    monitoring: MonitoringConfig = MonitoringConfig()

    model_config = ConfigDict(frozen=True)

    def __init__(self, **data: Any) -> None:
        overrides = _env_overrides(set(type(self).model_fields))
        super().__init__(**_merge(data, overrides))

    @property
    def strict_invariants(self) -> bool:
        """Fail loudly on invariant violations outside production."""
        return self.profile != "production"

    @classmethod
    def for_testing(cls) -> UnifiedSettings:
        return cls(
            profile="testing",
            corpus=CorpusConfig(embedding_dim=64),
            feedback=FeedbackConfig(shards=2, dedup_window=1_000),
            monitoring=MonitoringConfig(enable_metrics=False, log_level="DEBUG"),
            api=APIConfig(port=0),
        )

    @classmethod
    def for_production(cls) -> UnifiedSettings:
        return cls(
            profile="production",
            feedback=FeedbackConfig(shards=16),
            api=APIConfig(enable_cors=False, cors_origins=[]),
        )

    @classmethod
    def for_development(cls) -> UnifiedSettings:
        return cls(
            profile="development",
            monitoring=MonitoringConfig(enable_metrics=True, log_level="DEBUG"),
            api=APIConfig(enable_cors=True),
        )

    def get_config_summary(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["monitoring"].pop("pseudonym_key", None)
        return data

    def save_to_file(self, path: Path) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)

    @classmethod
    def load_from_file(cls, path: Path) -> UnifiedSettings:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls(**data)


def configure_logging(settings: UnifiedSettings | None = None) -> None:
    settings = settings or UnifiedSettings()
    level = getattr(logging, settings.monitoring.log_level.upper(), logging.INFO)
    install_record_factory()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, ContextTagFilter) for f in handler.filters):
            handler.addFilter(ContextTagFilter())


def get_settings(env: str | None = None) -> UnifiedSettings:
    env = env or os.getenv("SURFACING_ENV", "development")
    if env == "production":
        return UnifiedSettings.for_production()
    if env == "testing":
        return UnifiedSettings.for_testing()
    if env == "development":
        return UnifiedSettings.for_development()
    return UnifiedSettings()


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
