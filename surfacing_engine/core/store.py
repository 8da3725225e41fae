"""
In-memory reference implementations of the store and identity directory,
plus JSON corpus loading.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from surfacing_engine.core.access import AccessRule, Clearance
from surfacing_engine.core.interfaces import Embedder, Float32Array, SearchFilters
from surfacing_engine.core.models import (
    Candidate,
    ExpirationPolicy,
    IntentClass,
    Memory,
    MemoryStatus,
    UsageStats,
    UserIdentity,
)
from surfacing_engine.utils.exceptions import CorpusError, UnknownUser

log = logging.getLogger(__name__)


def _utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=dt.UTC)


class InMemoryMemoryStore:
    """
    Brute-force cosine search over canonical and variant embeddings.

    A memory's similarity is the best match among its canonical question and
    all semantic variants.  Visibility filtering happens before ranking so a
    memory the subject may not see never occupies a top-k slot.
    """

    def __init__(self, memories: Iterable[Memory] = ()) -> None:
        self._memories: dict[str, Memory] = {}
        for mem in memories:
            self.add(mem)

    def add(self, memory: Memory) -> None:
        if memory.id in self._memories:
            raise ValueError(f"duplicate memory id: {memory.id}")
        self._memories[memory.id] = memory

    def __len__(self) -> int:
        return len(self._memories)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._memories

    def memories(self) -> list[Memory]:
        return list(self._memories.values())

    @staticmethod
    def _similarity(query: Float32Array, memory: Memory) -> float:
        vectors = [memory.embedding, *memory.variant_embeddings]
        matrix = np.vstack(vectors).astype(np.float32, copy=False)
        q_norm = float(np.linalg.norm(query))
        if q_norm == 0.0:
            return 0.0
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = 1.0
        sims = (matrix @ query) / (norms * q_norm)
        return float(np.clip(sims.max(), -1.0, 1.0))

    def _search_sync(
        self,
        memories: tuple[Memory, ...],
        query_embedding: Float32Array,
        filters: SearchFilters,
        k: int,
    ) -> list[Candidate]:
        query = np.asarray(query_embedding, dtype=np.float32).reshape(-1)
        hits: list[Candidate] = []
        for mem in memories:
            if not mem.is_retrievable(filters.subject, filters.now):
                continue
            sim = self._similarity(query, mem)
            if sim < filters.similarity_floor:
                continue
            hits.append(Candidate(memory=mem, similarity=sim))
        hits.sort(key=lambda c: (-c.similarity, c.memory.id))
        return hits[:k]

    async def search(
        self, query_embedding: Float32Array, filters: SearchFilters, k: int
    ) -> list[Candidate]:
        # Snapshot so concurrent add() calls cannot resize the dict mid-scan.
        memories = tuple(self._memories.values())
        return await asyncio.to_thread(self._search_sync, memories, query_embedding, filters, k)

    async def get(self, memory_id: str) -> Memory | None:
        return self._memories.get(memory_id)


class InMemoryIdentityDirectory:
    """Static user directory keyed by ``user_id``."""

    def __init__(self, users: Iterable[UserIdentity] = ()) -> None:
        self._users = {u.user_id: u for u in users}

    def __len__(self) -> int:
        return len(self._users)

    def add(self, user: UserIdentity) -> None:
        self._users[user.user_id] = user

    async def resolve_user(self, user_id: str) -> UserIdentity:
        try:
            return self._users[user_id]
        except KeyError:
            raise UnknownUser(user_id) from None


# ---------------------------------------------------------------------------
# Corpus file schema
# ---------------------------------------------------------------------------


class AccessRecord(BaseModel):
    min_clearance: Clearance = Clearance.PUBLIC
    allowed_roles: list[str] = Field(default_factory=list)
    allowed_departments: list[str] = Field(default_factory=list)
    denied_roles: list[str] = Field(default_factory=list)
    redact_below: Clearance | None = None

    model_config = ConfigDict(extra="forbid")


class ExpirationRecord(BaseModel):
    expires_at: dt.datetime | None = None
    reconfirm_every_days: float | None = Field(None, gt=0)
    last_confirmed_at: dt.datetime | None = None
    starts_at: dt.datetime | None = None

    model_config = ConfigDict(extra="forbid")

    def to_policy(self) -> ExpirationPolicy:
        return ExpirationPolicy(
            expires_at=_utc(self.expires_at),
            reconfirm_every=(
                dt.timedelta(days=self.reconfirm_every_days)
                if self.reconfirm_every_days is not None
                else None
            ),
            last_confirmed_at=_utc(self.last_confirmed_at),
            starts_at=_utc(self.starts_at),
        )


class UsageRecord(BaseModel):
    access_count: int = Field(0, ge=0)
    last_accessed: dt.datetime | None = None
    accept_rate: float = Field(0.5, ge=0.0, le=1.0)


class MemoryRecord(BaseModel):
    id: str = Field(..., min_length=1)
    canonical_question: str = Field(..., min_length=1)
    answer: dict[str, Any] | str
    semantic_variants: list[str] = Field(default_factory=list)
    departments: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    intents: list[IntentClass] = Field(default_factory=list)
    related_workflows: list[str] = Field(default_factory=list)
    workflow_step: int | None = None
    access: AccessRecord = Field(default_factory=AccessRecord)
    expiration: ExpirationRecord = Field(default_factory=ExpirationRecord)
    authority_score: float = Field(0.5, ge=0.0, le=1.0)
    usage_stats: UsageRecord = Field(default_factory=UsageRecord)
    status: MemoryStatus = MemoryStatus.APPROVED


class UserRecord(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: str
    department: str | None = None
    clearance: Clearance = Clearance.GENERAL


class CorpusFile(BaseModel):
    memories: list[MemoryRecord] = Field(default_factory=list)
    users: list[UserRecord] = Field(default_factory=list)


def _lower(values: Iterable[str]) -> frozenset[str]:
    return frozenset(v.strip().lower() for v in values if v.strip())


def build_memory(record: MemoryRecord, embedder: Embedder) -> Memory:
    texts = [record.canonical_question, *record.semantic_variants]
    vectors = embedder.embed(texts)
    answer: Mapping[str, Any] = (
        {"text": record.answer} if isinstance(record.answer, str) else record.answer
    )
    usage = record.usage_stats
    return Memory(
        id=record.id,
        canonical_question=record.canonical_question,
        answer=answer,
        embedding=vectors[0],
        semantic_variants=tuple(record.semantic_variants),
        variant_embeddings=tuple(vectors[1:]),
        departments=_lower(record.departments),
        tags=_lower(record.tags),
        intents=frozenset(record.intents),
        related_workflows=_lower(record.related_workflows),
        workflow_step=record.workflow_step,
        access_rule=AccessRule.from_dict(record.access.model_dump(mode="json")),
        expiration=record.expiration.to_policy(),
        authority_score=record.authority_score,
        usage_stats=UsageStats(
            access_count=usage.access_count,
            last_accessed=_utc(usage.last_accessed),
            accept_rate=usage.accept_rate,
        ),
        status=record.status,
    )


def build_user(record: UserRecord) -> UserIdentity:
    return UserIdentity(
        user_id=record.user_id,
        role=record.role.lower(),
        department=record.department.lower() if record.department else None,
        clearance=record.clearance,
    )


def parse_corpus(
    data: Mapping[str, Any], embedder: Embedder
) -> tuple[InMemoryMemoryStore, InMemoryIdentityDirectory]:
    """Validate ``data`` and build a store and directory from it."""
    try:
        corpus = CorpusFile.model_validate(data)
    except ValidationError as exc:
        raise CorpusError(f"invalid corpus: {exc}") from exc
    store = InMemoryMemoryStore()
    for record in corpus.memories:
        try:
            store.add(build_memory(record, embedder))
        except ValueError as exc:
            raise CorpusError(str(exc)) from exc
    directory = InMemoryIdentityDirectory(build_user(u) for u in corpus.users)
    log.info("Loaded corpus: %d memories, %d users", len(store), len(directory))
    return store, directory


def load_corpus(
    path: Path, embedder: Embedder
) -> tuple[InMemoryMemoryStore, InMemoryIdentityDirectory]:
    """Load a JSON corpus file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise CorpusError(f"cannot read corpus {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise CorpusError("corpus root must be an object")
    return parse_corpus(data, embedder)


__all__ = [
    "CorpusFile",
    "InMemoryIdentityDirectory",
    "InMemoryMemoryStore",
    "MemoryRecord",
    "UserRecord",
    "build_memory",
    "build_user",
    "load_corpus",
    "parse_corpus",
]
