"""
BLAKE3 digests used for fingerprints, deduplication keys and pseudonyms.

All helpers are deterministic so identical inputs always map to identical
identifiers across processes and restarts.
"""

from __future__ import annotations

import blake3 as _blake3

_SEP = b"\x1f"


def blake3_digest(data: bytes, length: int = 16) -> bytes:
    """Return a raw BLAKE3 digest."""
    return bytes(_blake3.blake3(data).digest(length))


def blake3_hex(data: bytes, length: int = 16) -> str:
    """Return a hexadecimal BLAKE3 digest."""
    return blake3_digest(data, length).hex()


def stable_digest(*parts: str, length: int = 16) -> str:
    """Digest of ``parts`` joined with a unit separator."""
    return blake3_hex(_SEP.join(p.encode("utf-8") for p in parts), length)


def pseudonymize(identifier: str, key: bytes, length: int = 12) -> str:
    """
    Return a keyed, non-reversible pseudonym for ``identifier``.

    ``key`` is stretched or truncated to the 32 bytes BLAKE3 keyed mode
    requires.
    """
    k = blake3_digest(key, 32) if len(key) != 32 else key
    return bytes(_blake3.blake3(identifier.encode("utf-8"), key=k).digest(length)).hex()


def shard_for(key: str, shards: int) -> int:
    """Map ``key`` onto ``[0, shards)`` independent of ``PYTHONHASHSEED``."""
    if shards <= 1:
        return 0
    return int.from_bytes(blake3_digest(key.encode("utf-8"), 8), "big") % shards


__all__ = ["blake3_digest", "blake3_hex", "pseudonymize", "shard_for", "stable_digest"]
