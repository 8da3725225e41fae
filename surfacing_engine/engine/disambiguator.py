"""Deterministic resolution of several gated candidates."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from surfacing_engine.core.models import Context, GatedCandidate
from surfacing_engine.settings import DisambiguationConfig


def rank_key(gated: GatedCandidate) -> tuple[float, int, float, float, str]:
    """Tie-break order: score, own-department match, authority, recency, id."""
    cand = gated.candidate
    last = cand.last_accessed
    return (
        -cand.score,
        0 if cand.department_match else 1,
        -cand.memory.authority_score,
        -(last.timestamp() if last is not None else float("-inf")),
        cand.memory.id,
    )


@dataclass(frozen=True)
class Resolution:
    chosen: tuple[GatedCandidate, ...]
    clustered: bool

    @property
    def top(self) -> GatedCandidate:
        return self.chosen[0]


class Disambiguator:
    """Pick a single winner or a small near-tie cluster."""

    def __init__(self, config: DisambiguationConfig | None = None) -> None:
        self.config = config or DisambiguationConfig()

    def rank(self, candidates: Sequence[GatedCandidate]) -> list[GatedCandidate]:
        return sorted(candidates, key=rank_key)

    def resolve(self, candidates: Sequence[GatedCandidate], context: Context | None = None) -> Resolution:
        if not candidates:
            raise ValueError("nothing to disambiguate")
        ranked = self.rank(candidates)
        if len(ranked) == 1:
            return Resolution(chosen=(ranked[0],), clustered=False)
        top = ranked[0].score
        # Small epsilon keeps a gap of exactly decisive_gap decisive despite float error.
        if top - ranked[1].score >= self.config.decisive_gap - 1e-9:
            return Resolution(chosen=(ranked[0],), clustered=False)
        cluster = [
            g for g in ranked if top - g.score < self.config.decisive_gap - 1e-9
        ][: self.config.max_cluster]
        return Resolution(chosen=tuple(cluster), clustered=len(cluster) > 1)


__all__ = ["Disambiguator", "Resolution", "rank_key"]
