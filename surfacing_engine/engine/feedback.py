"""
Feedback ingestion.

The ingestor is the only owner of mutable engine state: the usage ledger,
per user/platform adaptive threshold state, user preferences and the
deduplication window.  Events submitted through :meth:`FeedbackIngestor.submit`
are routed to one of ``N`` shard queues by a stable hash of the user id, so a
single worker applies all events of one user in arrival order.  Per-memory
updates additionally take a per-key lock so concurrent shards never lose an
update to the same memory, while different memories never contend.

Evaluations register the fingerprint they issue, so feedback may name only
the fingerprint and the ingestor resolves the user it was issued to.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import replace
from typing import Final

from surfacing_engine.core.interfaces import MemoryStore
from surfacing_engine.core.models import (
    AdaptiveState,
    FeedbackEvent,
    Outcome,
    Platform,
    UsageStats,
    UserPreferences,
)
from surfacing_engine.engine.context_extractor import parse_fingerprint
from surfacing_engine.settings import FeedbackConfig, ThresholdConfig, UnifiedSettings
from surfacing_engine.utils.blake import shard_for, stable_digest
from surfacing_engine.utils.exceptions import InvalidFeedbackEvent
from surfacing_engine.utils.locks import KeyedLock
from surfacing_engine.utils.metrics import FEEDBACK_DROPPED_TOTAL, FEEDBACK_TOTAL

log = logging.getLogger(__name__)

OUTCOME_VALUE: Final[dict[Outcome, float]] = {
    Outcome.ACCEPTED: 1.0,
    Outcome.EDITED: 0.5,
    Outcome.IGNORED: 0.0,
    Outcome.REJECTED: 0.0,
}


def dedup_key(event: FeedbackEvent) -> str:
    if event.event_id:
        return f"id:{event.event_id}"
    return "fp:" + stable_digest(
        event.memory_id, event.context_fingerprint, event.user_id or "", event.outcome.value
    )


class FeedbackIngestor:
    """Deduplicate and apply feedback events; expose immutable snapshots."""

    def __init__(
        self,
        store: MemoryStore,
        config: FeedbackConfig | None = None,
        thresholds: ThresholdConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or FeedbackConfig()
        self.thresholds = thresholds or ThresholdConfig()
        self._usage: dict[str, UsageStats] = {}
        self._adaptive: dict[tuple[str, Platform], AdaptiveState] = {}
        self._prefs: dict[str, UserPreferences] = {}
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._issued: OrderedDict[str, str] = OrderedDict()
        self._memory_locks = KeyedLock()
        self._queues: list[asyncio.Queue[FeedbackEvent]] = []
        self._workers: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(cls, store: MemoryStore, settings: UnifiedSettings) -> FeedbackIngestor:
        return cls(store, settings.feedback, settings.thresholds)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def usage(self, memory_id: str) -> UsageStats | None:
        """Ledger entry for ``memory_id``; ``None`` until feedback arrives."""
        return self._usage.get(memory_id)

    def adaptive_state(self, user_id: str, platform: Platform) -> AdaptiveState:
        return self._adaptive.get((user_id, platform), AdaptiveState())

    def preferences(self, user_id: str) -> UserPreferences:
        return self._prefs.get(user_id, UserPreferences())

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def pending(self) -> int:
        return sum(q.qsize() for q in self._queues)

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    def set_preferences(
        self,
        user_id: str,
        *,
        aggression: float | None = None,
        mute: Iterable[str] = (),
        unmute: Iterable[str] = (),
    ) -> UserPreferences:
        current = self.preferences(user_id)
        if aggression is not None and abs(aggression) > self.thresholds.max_aggression:
            raise ValueError(
                f"aggression must be within ±{self.thresholds.max_aggression:.2f}"
            )
        muted = (current.muted | frozenset(mute)) - frozenset(unmute)
        prefs = UserPreferences(
            aggression=current.aggression if aggression is None else aggression,
            muted=muted,
        )
        self._prefs[user_id] = prefs
        log.debug("Preferences updated (muted=%d)", len(muted))
        return prefs

    # ------------------------------------------------------------------
    # Deduplication window
    # ------------------------------------------------------------------
    def _claim(self, key: str) -> bool:
        if key in self._seen:
            self._seen.move_to_end(key)
            return False
        self._seen[key] = None
        while len(self._seen) > self.config.dedup_window:
            self._seen.popitem(last=False)
        return True

    def _release(self, key: str) -> None:
        self._seen.pop(key, None)

    # ------------------------------------------------------------------
    # Issued fingerprints
    # ------------------------------------------------------------------
    def remember_fingerprint(self, fingerprint: str, user_id: str) -> None:
        """Record that ``fingerprint`` was issued to ``user_id``."""
        self._issued[fingerprint] = user_id
        self._issued.move_to_end(fingerprint)
        while len(self._issued) > self.config.fingerprint_window:
            self._issued.popitem(last=False)

    def resolve_user(self, event: FeedbackEvent) -> FeedbackEvent:
        """
        Fill in the user a feedback event belongs to.

        Events without a user take the one the fingerprint was issued to.
        An explicit user must agree with the issued one when it is known.
        """
        issued = self._issued.get(event.context_fingerprint)
        if event.user_id is None:
            if issued is None:
                raise InvalidFeedbackEvent("unknown_fingerprint", event.context_fingerprint)
            return replace(event, user_id=issued)
        if issued is not None and issued != event.user_id:
            raise InvalidFeedbackEvent("user_mismatch", event.context_fingerprint)
        return event

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------
    def _next_usage(self, current: UsageStats, event: FeedbackEvent) -> UsageStats:
        alpha = self.config.ema_decay
        rate = (1.0 - alpha) * current.accept_rate + alpha * OUTCOME_VALUE[event.outcome]
        last = current.last_accessed
        if last is None or event.timestamp > last:
            last = event.timestamp
        return UsageStats(
            access_count=current.access_count + 1,
            last_accessed=last,
            accept_rate=min(1.0, max(0.0, rate)),
        )

    def _next_adaptive(self, current: AdaptiveState, outcome: Outcome) -> AdaptiveState:
        c = self.config
        t = self.thresholds
        positive, negative = current.positive, current.negative
        if outcome is Outcome.ACCEPTED:
            positive = min(t.max_positive_adjustment, positive + c.accepted_step)
        elif outcome is Outcome.EDITED:
            positive = min(t.max_positive_adjustment, positive + c.edited_step)
        elif outcome is Outcome.REJECTED:
            negative = min(t.max_negative_adjustment, negative + c.rejected_step)
        else:
            negative = min(t.max_negative_adjustment, negative + c.ignored_step)
        return AdaptiveState(positive=positive, negative=negative, version=current.version + 1)

    async def _apply(self, event: FeedbackEvent) -> None:
        platform = parse_fingerprint(event.context_fingerprint)
        event = self.resolve_user(event)
        if not event.memory_id or not event.user_id:
            raise InvalidFeedbackEvent("malformed", "memory_id and user_id are required")
        if event.timestamp.tzinfo is None:
            raise InvalidFeedbackEvent("malformed", "timestamp must be timezone-aware")
        key = dedup_key(event)
        if not self._claim(key):
            raise InvalidFeedbackEvent("duplicate", key)
        try:
            memory = await self.store.get(event.memory_id)
        except Exception:
            self._release(key)
            raise
        if memory is None:
            self._release(key)
            raise InvalidFeedbackEvent("unknown_memory", event.memory_id)

        async with self._memory_locks.hold(event.memory_id):
            current = self._usage.get(event.memory_id, memory.usage_stats)
            self._usage[event.memory_id] = self._next_usage(current, event)

        state_key = (event.user_id, platform)
        self._adaptive[state_key] = self._next_adaptive(
            self._adaptive.get(state_key, AdaptiveState()), event.outcome
        )

    async def ingest(self, event: FeedbackEvent) -> bool:
        """Apply ``event`` now; return ``False`` when it was dropped."""
        try:
            await self._apply(event)
        except InvalidFeedbackEvent as exc:
            FEEDBACK_DROPPED_TOTAL.labels(reason=exc.reason).inc()
            log.warning("Dropped feedback event for memory %s: %s", event.memory_id, exc)
            return False
        FEEDBACK_TOTAL.labels(outcome=event.outcome.value).inc()
        return True

    # ------------------------------------------------------------------
    # Shard queues
    # ------------------------------------------------------------------
    def _ensure_queues(self) -> None:
        if not self._queues:
            self._queues = [
                asyncio.Queue(maxsize=self.config.queue_size) for _ in range(self.config.shards)
            ]

    def submit(self, event: FeedbackEvent) -> bool:
        """
        Enqueue ``event`` on its user's shard.

        Returns ``False`` when the user cannot be resolved or the shard is
        full.  Users sharing a shard are applied by one worker in arrival
        order, so size ``FeedbackConfig.shards`` to the active user count.
        """
        self._ensure_queues()
        try:
            event = self.resolve_user(event)
        except InvalidFeedbackEvent as exc:
            FEEDBACK_DROPPED_TOTAL.labels(reason=exc.reason).inc()
            log.warning("Dropped feedback event for memory %s: %s", event.memory_id, exc)
            return False
        queue = self._queues[shard_for(event.user_id or "", len(self._queues))]
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            FEEDBACK_DROPPED_TOTAL.labels(reason="queue_full").inc()
            log.warning("Feedback shard full; event for memory %s dropped", event.memory_id)
            return False
        return True

    async def _worker(self, queue: asyncio.Queue[FeedbackEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.ingest(event)
            except Exception:
                log.exception("Feedback worker failed on event for memory %s", event.memory_id)
            finally:
                queue.task_done()

    def start(self) -> None:
        if self._workers:
            return
        self._ensure_queues()
        self._workers = [
            asyncio.create_task(self._worker(q), name=f"feedback-shard-{i}")
            for i, q in enumerate(self._queues)
        ]
        log.info("Feedback ingestor started with %d shards", len(self._workers))

    async def join(self) -> None:
        """Wait until every queued event has been applied."""
        for queue in self._queues:
            await queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        if drain and self._workers:
            await self.join()
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        for task in workers:
            with suppress(asyncio.CancelledError):
                await task
        if workers:
            log.info("Feedback ingestor stopped")

    async def __aenter__(self) -> FeedbackIngestor:
        self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()


__all__ = ["OUTCOME_VALUE", "FeedbackIngestor", "dedup_key"]
