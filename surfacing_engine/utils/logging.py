"""
Log record tagging.

Every record gets ``request_id`` (bound by the HTTP middleware) and
``fingerprint`` (bound by the engine while it evaluates an interaction), so
all lines of one decision can be correlated without logging user ids.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from surfacing_engine.context import FINGERPRINT, REQUEST_ID

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s %(fingerprint)s] %(message)s"


def _tag(record: logging.LogRecord) -> logging.LogRecord:
    record.request_id = REQUEST_ID.get() or "-"
    record.fingerprint = FINGERPRINT.get() or "-"
    return record


class ContextTagFilter(logging.Filter):
    """Tag records that were created before the record factory was installed."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "fingerprint"):
            _tag(record)
        return True


def install_record_factory() -> None:
    """Wrap the global log record factory once; later calls are no-ops."""
    current = logging.getLogRecordFactory()
    if getattr(current, "surfacing_tagged", False):
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        return _tag(current(*args, **kwargs))

    record_factory.surfacing_tagged = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(record_factory)


@contextmanager
def bound_fingerprint(fingerprint: str) -> Iterator[None]:
    """Bind ``fingerprint`` to log records emitted inside the block."""
    token = FINGERPRINT.set(fingerprint)
    try:
        yield
    finally:
        FINGERPRINT.reset(token)


__all__ = ["LOG_FORMAT", "ContextTagFilter", "bound_fingerprint", "install_record_factory"]
