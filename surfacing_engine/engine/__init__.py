"""Decision pipeline stages and the orchestrating engine."""

from surfacing_engine.engine.context_extractor import ContextExtractor
from surfacing_engine.engine.disambiguator import Disambiguator
from surfacing_engine.engine.evaluator import SurfacingEngine
from surfacing_engine.engine.feedback import FeedbackIngestor
from surfacing_engine.engine.gate import ThresholdGate
from surfacing_engine.engine.retriever import CandidateRetriever
from surfacing_engine.engine.scorer import RelevanceScorer
from surfacing_engine.engine.stitcher import Stitcher

__all__ = [
    "CandidateRetriever",
    "ContextExtractor",
    "Disambiguator",
    "FeedbackIngestor",
    "RelevanceScorer",
    "Stitcher",
    "SurfacingEngine",
    "ThresholdGate",
]
