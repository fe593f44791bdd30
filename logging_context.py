"""Lookup id logging context.

Every /lookup request gets a short id so the log lines of one caller's
search can be told apart when several calls are being served at once.
"""

import logging
import uuid
from contextvars import ContextVar

_lookup_id: ContextVar[str] = ContextVar("lookup_id", default="-")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s [%(lookup_id)s]: %(message)s"


def new_lookup_id() -> str:
    lookup_id = f"lk-{uuid.uuid4().hex[:10]}"
    _lookup_id.set(lookup_id)
    return lookup_id


class LookupIdFilter(logging.Filter):
    """Injects lookup_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.lookup_id = _lookup_id.get()  # type: ignore[attr-defined]
        return True


def configure_logging(level: str = "INFO") -> None:
    """basicConfig plus the lookup id filter on the root handlers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, LookupIdFilter) for f in handler.filters):
            handler.addFilter(LookupIdFilter())
