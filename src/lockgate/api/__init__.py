"""LockGate REST API."""

from lockgate.api.router import router

__all__ = ["router"]
