"""Trace id propagation across requests, sockets and background loops."""

from contextvars import ContextVar
from uuid import uuid4

_trace_id: ContextVar[str | None] = ContextVar("lockgate_trace_id", default=None)


def set_trace_id(trace_id: str | None = None) -> str:
    """Set (or generate) the trace id for the current context."""
    value = trace_id or uuid4().hex
    _trace_id.set(value)
    return value


def get_trace_id() -> str | None:
    return _trace_id.get()
