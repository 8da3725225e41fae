"""
Text embedders used to build memory and query vectors.

``HashingEmbedder`` is a dependency-light feature-hashing model suitable for
tests and small deployments.  ``SentenceTransformerEmbedder`` loads a real
model lazily from the optional ``sentence-transformers`` extra.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import numpy as np

from surfacing_engine.core.interfaces import Embedder, Float32Array
from surfacing_engine.settings import CorpusConfig
from surfacing_engine.utils.blake import blake3_digest

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from sentence_transformers import SentenceTransformer
else:  # pragma: no cover - runtime helper
    SentenceTransformer = Any

log = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "a an and are be can do does for how i in is it me my of on or our the to we what when where which who with you".split()
)


class HashingEmbedder:
    """
    Signed feature hashing over word unigrams, bigrams and character trigrams.

    Vectors are L2-normalised so the dot product is the cosine similarity.
    """

    def __init__(self, dim: int = 256) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    @staticmethod
    def _features(text: str) -> list[tuple[str, float]]:
        words = [w for w in _TOKEN_RE.findall(text.lower()) if w not in _STOPWORDS]
        feats: list[tuple[str, float]] = [(f"w:{w}", 1.0) for w in words]
        feats.extend((f"b:{a}_{b}", 0.5) for a, b in zip(words, words[1:]))
        for w in words:
            padded = f"#{w}#"
            feats.extend((f"c:{padded[i:i + 3]}", 0.2) for i in range(len(padded) - 2))
        return feats

    def _vector(self, text: str) -> Float32Array:
        vec = np.zeros(self._dim, dtype=np.float32)
        for feature, weight in self._features(text):
            digest = blake3_digest(feature.encode("utf-8"), 8)
            idx = int.from_bytes(digest[:4], "big") % self._dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[idx] += sign * weight
        norm = float(np.linalg.norm(vec))
        if norm > 0.0:
            vec /= norm
        return vec

    def embed(self, texts: Sequence[str]) -> Float32Array:
        if not texts:
            return np.zeros((0, self._dim), dtype=np.float32)
        return np.stack([self._vector(t) for t in texts]).astype(np.float32, copy=False)


class SentenceTransformerEmbedder:
    """Embedder backed by a lazily loaded Sentence-Transformers model."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        self.model_name = model_name
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    def _load(self) -> SentenceTransformer:
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer as _ST
                except ModuleNotFoundError as exc:  # pragma: no cover - optional extra
                    raise RuntimeError(
                        "sentence-transformers is not installed; "
                        "install the 'embeddings' extra"
                    ) from exc
                log.info("Loading embedding model '%s'", self.model_name)
                self._model = _ST(self.model_name)
            return self._model

    @property
    def dim(self) -> int:
        return int(self._load().get_sentence_embedding_dimension())

    def embed(self, texts: Sequence[str]) -> Float32Array:
        model = self._load()
        vectors = model.encode(list(texts), normalize_embeddings=True)
        return np.asarray(vectors, dtype=np.float32)


def build_embedder(config: CorpusConfig) -> Embedder:
    """Return the embedder selected by ``config``."""
    if config.embedder == "sentence-transformers":
        return SentenceTransformerEmbedder(config.model_name)
    return HashingEmbedder(config.embedding_dim)


__all__ = ["HashingEmbedder", "SentenceTransformerEmbedder", "build_embedder"]
