"""LockGate - lease-based record locking with realtime lock notifications."""

__version__ = "0.1.0"
