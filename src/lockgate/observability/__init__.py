"""Observability helpers for LockGate."""

from lockgate.observability.metrics import metrics
from lockgate.observability.trace import get_trace_id, set_trace_id

__all__ = ["metrics", "get_trace_id", "set_trace_id"]
