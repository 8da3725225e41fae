"""Protocol interfaces for the memory store, identity directory and embedder."""

from __future__ import annotations

import datetime as dt
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, TypeAlias, runtime_checkable

import numpy as np
from numpy.typing import NDArray

from surfacing_engine.core.access import AccessSubject
from surfacing_engine.core.models import Candidate, Memory, UserIdentity

Float32Array: TypeAlias = NDArray[np.float32]


@dataclass(frozen=True)
class SearchFilters:
    """Constraints every store must apply before returning candidates."""

    subject: AccessSubject
    now: dt.datetime
    similarity_floor: float = 0.0


@runtime_checkable
class MemoryStore(Protocol):
    """Protocol defining the expected memory backend behaviour."""

    async def search(
        self, query_embedding: Float32Array, filters: SearchFilters, k: int
    ) -> list[Candidate]:
        """Return at most ``k`` approved, unexpired, permitted candidates."""

    async def get(self, memory_id: str) -> Memory | None:
        """Fetch a memory by id, ``None`` when absent."""


@runtime_checkable
class IdentityResolver(Protocol):
    """Protocol for the organisation's identity directory."""

    async def resolve_user(self, user_id: str) -> UserIdentity:
        """Resolve ``user_id`` or raise :class:`UnknownUser`."""


@runtime_checkable
class Embedder(Protocol):
    """Protocol for text embedding models."""

    @property
    def dim(self) -> int:
        """Dimension of produced vectors."""

    def embed(self, texts: Sequence[str]) -> Float32Array:
        """Return an ``(n, dim)`` array of L2-normalised vectors."""


__all__ = ["Embedder", "Float32Array", "IdentityResolver", "MemoryStore", "SearchFilters"]
