"""Lightweight metrics registry for LockGate."""

from dataclasses import dataclass
from threading import Lock
from typing import Any


@dataclass
class Counter:
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def snapshot(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "avg": self.total / self.count if self.count else 0.0,
            "max": self.maximum,
        }


class MetricsRegistry:
    """Thread-safe registry for lock counters, connection gauges and timings.

    The query listeners in ``lockgate.db.base`` run on aiosqlite / asyncpg
    worker threads, hence the lock.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.counters: dict[str, Counter] = {}
        self.gauges: dict[str, Gauge] = {}
        self.histograms: dict[str, Histogram] = {}

    def inc_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self.counters.setdefault(name, Counter()).inc(amount)

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self.gauges.setdefault(name, Gauge()).set(value)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self.histograms.setdefault(name, Histogram()).observe(value)

    def counter(self, name: str) -> float:
        with self._lock:
            counter = self.counters.get(name)
            return counter.value if counter else 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {name: c.value for name, c in self.counters.items()},
                "gauges": {name: g.value for name, g in self.gauges.items()},
                "histograms": {name: h.snapshot() for name, h in self.histograms.items()},
            }


metrics = MetricsRegistry()
