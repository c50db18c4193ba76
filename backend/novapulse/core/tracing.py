from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from time import monotonic
from uuid import uuid4

from novapulse.core.logging import get_structured_logger


_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_span_id: ContextVar[str | None] = ContextVar("span_id", default=None)

logger = get_structured_logger("trace")


def set_trace_id(value: str | None) -> None:
    if value:
        _trace_id.set(value)


def get_trace_id() -> str | None:
    return _trace_id.get()


def get_span_id() -> str | None:
    return _span_id.get()


def _new_span_id() -> str:
    return uuid4().hex[:16]


@contextmanager
def job_trace(job_id: int, queue_name: str):
    """Bind a trace id for the lifetime of one job attempt."""
    token = _trace_id.set(f"job-{queue_name}-{job_id}-{uuid4().hex[:8]}")
    try:
        yield _trace_id.get()
    finally:
        _trace_id.reset(token)


@contextmanager
def trace_span(name: str, **fields):
    span_id = _new_span_id()
    token = _span_id.set(span_id)
    start = monotonic()
    base = {"trace_id": get_trace_id(), "span_id": span_id, "span_name": name, **fields}
    logger.debug("span.start", extra=base)
    try:
        yield span_id
    except Exception:
        duration_ms = round((monotonic() - start) * 1000.0, 2)
        logger.exception("span.error", extra={**base, "duration_ms": duration_ms})
        raise
    finally:
        duration_ms = round((monotonic() - start) * 1000.0, 2)
        logger.info("span.end", extra={**base, "duration_ms": duration_ms})
        _span_id.reset(token)
