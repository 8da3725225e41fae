"""HTTP client settings shared by the command-line interface."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class HTTPTimeouts:
    """Separate connect/read timeouts for calls against a running engine."""

    connect: float = 5.0
    read: float = 10.0
    # Retries are for connection failures only; 4xx/5xx responses are returned as-is.
    backoff_base: float = 0.5
