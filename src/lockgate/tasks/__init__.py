"""LockGate background tasks."""

from lockgate.tasks.sweep import LeaseSweeper, MetricsPusher, PeriodicTask

__all__ = ["LeaseSweeper", "MetricsPusher", "PeriodicTask"]
