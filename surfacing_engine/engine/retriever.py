"""Floor-guarded, access-filtered candidate retrieval."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from contextlib import suppress

from surfacing_engine.core.interfaces import Embedder, MemoryStore, SearchFilters
from surfacing_engine.core.models import Candidate, Context
from surfacing_engine.settings import RetrievalConfig
from surfacing_engine.utils.exceptions import (
    EvaluationCancelled,
    RetrievalTimeout,
    StoreUnavailable,
)
from surfacing_engine.utils.metrics import CANDIDATES_RETRIEVED, LAT_RETRIEVAL, MET_ERRORS_TOTAL

log = logging.getLogger(__name__)


class CandidateRetriever:
    """
    Ask the store for the top-k visible memories above the similarity floor.

    The store contract already promises approved, unexpired and permitted
    results; the retriever re-checks every hit so a faulty backend can never
    leak a hidden or sub-floor memory into scoring.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def _search(self, context: Context, now: dt.datetime, k: int) -> list[Candidate]:
        # Embedding is CPU bound; keep it off the loop so the timeout can fire.
        query = (await asyncio.to_thread(self.embedder.embed, [context.raw_input]))[0]
        filters = SearchFilters(
            subject=context.subject, now=now, similarity_floor=self.config.similarity_floor
        )
        return await self.store.search(query, filters, k)

    async def _bounded(
        self, context: Context, now: dt.datetime, k: int, cancel: asyncio.Event | None
    ) -> list[Candidate]:
        search = asyncio.ensure_future(self._search(context, now, k))
        if cancel is None:
            return await asyncio.wait_for(search, timeout=self.config.timeout_seconds)
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {search, watcher},
                timeout=self.config.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if search in done:
                return search.result()
            if watcher in done:
                raise EvaluationCancelled("caller disconnected during retrieval")
            raise TimeoutError
        finally:
            for task in (search, watcher):
                if not task.done():
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task

    async def retrieve(
        self,
        context: Context,
        now: dt.datetime,
        k: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[Candidate]:
        """
        Return at most ``k`` candidates ordered by similarity.

        Raises ``RetrievalTimeout``, ``StoreUnavailable`` or
        ``EvaluationCancelled``; never returns a partial result.
        """
        k = k or self.config.top_k
        if cancel is not None and cancel.is_set():
            raise EvaluationCancelled("caller disconnected before retrieval")
        start = time.perf_counter()
        try:
            raw = await self._bounded(context, now, k, cancel)
        except TimeoutError:
            MET_ERRORS_TOTAL.labels(type="timeout", component="retriever").inc()
            raise RetrievalTimeout(
                f"store did not answer within {self.config.timeout_seconds:.3f}s"
            ) from None
        except (EvaluationCancelled, asyncio.CancelledError):
            raise
        except Exception as exc:
            MET_ERRORS_TOTAL.labels(type=type(exc).__name__, component="retriever").inc()
            raise StoreUnavailable(str(exc) or type(exc).__name__) from exc
        finally:
            LAT_RETRIEVAL.observe(time.perf_counter() - start)

        subject = context.subject
        floor = self.config.similarity_floor
        out: list[Candidate] = []
        for cand in raw:
            if cand.similarity < floor:
                log.warning("Store returned sub-floor candidate %s; dropped", cand.memory.id)
                continue
            if not cand.memory.is_retrievable(subject, now):
                log.warning("Store returned invisible candidate %s; dropped", cand.memory.id)
                continue
            out.append(cand)
        out.sort(key=lambda c: (-c.similarity, c.memory.id))
        out = out[:k]
        CANDIDATES_RETRIEVED.observe(len(out))
        return out


__all__ = ["CandidateRetriever"]
