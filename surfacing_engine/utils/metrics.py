"""
Surfacing engine: Prometheus metrics utilities.

This module defines a common bucket configuration for latency histograms
so that dashboards can derive latency percentiles using
``histogram_quantile()``. A typical PromQL query for the 95th percentile
decision latency over the last five minutes is::

    histogram_quantile(0.95, rate(mse_evaluate_latency_seconds_bucket[5m]))

"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    make_asgi_app,
)

log = logging.getLogger(__name__)


def _build_registry() -> CollectorRegistry:
    """Return a ``CollectorRegistry`` with optional multiprocess support."""
    multiproc_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
    if not multiproc_dir:
        return REGISTRY

    registry = CollectorRegistry()
    try:  # pragma: no cover - best effort cleanup
        for file in Path(multiproc_dir).glob("*.db"):
            file.unlink(missing_ok=True)
    except OSError:
        log.debug("could not clean multiprocess metrics", exc_info=True)

    from prometheus_client import multiprocess

    multiprocess.MultiProcessCollector(registry)
    return registry


METRICS_REGISTRY = _build_registry()
metrics_app = make_asgi_app(METRICS_REGISTRY)

# Buckets in seconds. Decisions are expected well under 100ms excluding
# store I/O, so the low end is finer than usual.
LATENCY_BUCKETS = [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2]

MET_ERRORS_TOTAL = Counter(
    "mse_errors_total", "Total errors", ("type", "component"), registry=METRICS_REGISTRY
)
EVALUATIONS_TOTAL = Counter(
    "mse_evaluations_total",
    "Surfacing evaluations by presentation mode",
    ("mode",),
    registry=METRICS_REGISTRY,
)
SUPPRESSED_TOTAL = Counter(
    "mse_suppressed_total",
    "Suppressed evaluations by reason",
    ("reason",),
    registry=METRICS_REGISTRY,
)
LAT_EVALUATE = Histogram(
    "mse_evaluate_latency_seconds",
    "End-to-end evaluation latency",
    buckets=LATENCY_BUCKETS,
    registry=METRICS_REGISTRY,
)
LAT_RETRIEVAL = Histogram(
    "mse_retrieval_latency_seconds",
    "Memory store retrieval latency",
    buckets=LATENCY_BUCKETS,
    registry=METRICS_REGISTRY,
)
CANDIDATES_RETRIEVED = Histogram(
    "mse_candidates_retrieved",
    "Candidates returned by retrieval per evaluation",
    buckets=[0, 1, 2, 3, 5, 10, 20, 50],
    registry=METRICS_REGISTRY,
)
FEEDBACK_TOTAL = Counter(
    "mse_feedback_total",
    "Feedback events applied",
    ("outcome",),
    registry=METRICS_REGISTRY,
)
FEEDBACK_DROPPED_TOTAL = Counter(
    "mse_feedback_dropped_total",
    "Feedback events dropped",
    ("reason",),
    registry=METRICS_REGISTRY,
)


__all__ = [
    "CANDIDATES_RETRIEVED",
    "EVALUATIONS_TOTAL",
    "FEEDBACK_DROPPED_TOTAL",
    "FEEDBACK_TOTAL",
    "LATENCY_BUCKETS",
    "LAT_EVALUATE",
    "LAT_RETRIEVAL",
    "METRICS_REGISTRY",
    "MET_ERRORS_TOTAL",
    "SUPPRESSED_TOTAL",
    "metrics_app",
]
