"""
Multi-memory workflow stitching.

Candidates that share a workflow (or reference each other directly) form a
dependency graph.  Components are re-checked member by member for permission
and freshness, largest first; the first that keeps two members is ordered by
declared workflow step and returned with bridge markers between consecutive
members.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from itertools import combinations

from surfacing_engine.core.models import Bridge, Context, GatedCandidate, Memory
from surfacing_engine.settings import StitchConfig

log = logging.getLogger(__name__)


def _linked(a: Memory, b: Memory) -> bool:
    return bool(a.related_workflows & b.related_workflows) or (
        a.id.lower() in b.related_workflows or b.id.lower() in a.related_workflows
    )


def _departments_overlap(a: Memory, b: Memory) -> bool:
    return a.org_wide or b.org_wide or bool(a.departments & b.departments)


@dataclass(frozen=True)
class StitchResult:
    members: tuple[GatedCandidate, ...]
    bridges: tuple[Bridge, ...]
    confidence: float
    dropped: tuple[str, ...] = ()


class Stitcher:
    """Assemble an ordered composite answer from related candidates."""

    def __init__(self, config: StitchConfig | None = None) -> None:
        self.config = config or StitchConfig()

    def applies(self, candidates: Sequence[GatedCandidate], context: Context) -> bool:
        if not context.multi_step or len(candidates) < 2:
            return False
        return all(c.score <= self.config.single_confidence_ceiling for c in candidates)

    @staticmethod
    def components(candidates: Sequence[GatedCandidate]) -> list[list[GatedCandidate]]:
        nodes = sorted(candidates, key=lambda c: c.memory.id)
        seen: set[str] = set()
        out: list[list[GatedCandidate]] = []
        for start in nodes:
            if start.memory.id in seen:
                continue
            seen.add(start.memory.id)
            component = [start]
            frontier = [start]
            while frontier:
                node = frontier.pop()
                for other in nodes:
                    if other.memory.id not in seen and _linked(node.memory, other.memory):
                        seen.add(other.memory.id)
                        component.append(other)
                        frontier.append(other)
            out.append(component)
        return out

    @staticmethod
    def _component_key(component: list[GatedCandidate]) -> tuple[int, float, str]:
        return (
            -len(component),
            -sum(c.score for c in component),
            min(c.memory.id for c in component),
        )

    @staticmethod
    def _order_key(gated: GatedCandidate) -> tuple[int, int, float, str]:
        step = gated.memory.workflow_step
        return (0 if step is not None else 1, step or 0, -gated.score, gated.memory.id)

    def _recheck(
        self, component: list[GatedCandidate], context: Context, now: dt.datetime
    ) -> tuple[list[GatedCandidate], list[str]]:
        members: list[GatedCandidate] = []
        dropped: list[str] = []
        for gated in component:
            if gated.memory.is_retrievable(context.subject, now):
                members.append(gated)
            else:
                dropped.append(gated.memory.id)
        return members, dropped

    def stitch(
        self, candidates: Sequence[GatedCandidate], context: Context, now: dt.datetime
    ) -> StitchResult | None:
        """
        Return a stitched set, or ``None`` when the caller should fall back.

        Components are tried largest first; the first one that keeps at
        least two members after the re-check is stitched.
        """
        members: list[GatedCandidate] = []
        dropped: list[str] = []
        for component in sorted(self.components(candidates), key=self._component_key):
            if len(component) < 2:
                break
            members, lost = self._recheck(component, context, now)
            dropped.extend(lost)
            if lost:
                log.debug("Stitch members dropped on re-check: %s", sorted(lost))
            if len(members) >= 2:
                break
        if len(members) < 2:
            return None

        if len(members) > self.config.max_members:
            members = sorted(members, key=lambda g: (-g.score, g.memory.id))[: self.config.max_members]
        if not any(_departments_overlap(a.memory, b.memory) for a, b in combinations(members, 2)):
            log.debug("Stitch rejected: no department overlap between members")
            return None

        members.sort(key=self._order_key)
        bridges = tuple(
            Bridge(
                from_id=a.memory.id,
                to_id=b.memory.id,
                shared_workflows=tuple(sorted(a.memory.related_workflows & b.memory.related_workflows)),
            )
            for a, b in zip(members, members[1:])
        )
        return StitchResult(
            members=tuple(members),
            bridges=bridges,
            confidence=min(m.score for m in members),
            dropped=tuple(sorted(dropped)),
        )


__all__ = ["StitchResult", "Stitcher"]
