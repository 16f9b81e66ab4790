"""LockGate HTTP middleware."""

from lockgate.middleware.trace import trace_id_middleware

__all__ = ["trace_id_middleware"]
