"""Bounded, time-windowed metric storage.

Design by Contract (P1 - MANDATORY):
- Durations MUST be non-negative (crash if negative)
- Memory figures MUST be non-negative
- Eviction is monotonic: once now - window has passed a record's timestamp,
  the next append removes it
- Append order equals arrival order; nothing is sorted on write
"""

import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from beartype import beartype

HOUR_MS = 3_600_000.0


def now_ms() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000


@dataclass(frozen=True)
class MemorySample:
    """Process memory counters in bytes."""

    timestamp: float
    heap_used: int
    heap_total: int
    external: int
    rss: int

    def __post_init__(self) -> None:
        assert min(self.heap_used, self.heap_total, self.external, self.rss) >= 0, (
            f"Memory counters cannot be negative: {self}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "heapUsed": self.heap_used,
            "heapTotal": self.heap_total,
            "external": self.external,
            "rss": self.rss,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemorySample":
        return cls(
            timestamp=data["timestamp"],
            heap_used=data["heapUsed"],
            heap_total=data["heapTotal"],
            external=data["external"],
            rss=data["rss"],
        )


@dataclass(frozen=True)
class CpuSample:
    """Cumulative process CPU seconds plus percent since the previous sample."""

    timestamp: float
    user_time: float
    system_time: float
    percent: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "user": self.user_time,
            "system": self.system_time,
            "percent": self.percent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CpuSample":
        return cls(
            timestamp=data["timestamp"],
            user_time=data["user"],
            system_time=data["system"],
            percent=data.get("percent", 0.0),
        )


@dataclass(frozen=True)
class GCEvent:
    timestamp: float
    duration: float
    kind: str = "unknown"
    flags: int = 0

    def __post_init__(self) -> None:
        assert self.duration >= 0, f"GC duration must be non-negative: {self.duration}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = data.pop("kind")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GCEvent":
        return cls(
            timestamp=data["timestamp"],
            duration=data["duration"],
            kind=data.get("type", "unknown"),
            flags=data.get("flags", 0),
        )


@dataclass(frozen=True)
class OperationRecord:
    timestamp: float
    duration: float
    start_time: float

    def __post_init__(self) -> None:
        assert self.duration >= 0, f"Operation duration must be non-negative: {self.duration}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "duration": self.duration,
            "startTime": self.start_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationRecord":
        return cls(
            timestamp=data["timestamp"],
            duration=data["duration"],
            start_time=data["startTime"],
        )


def _tail(items: list, last: int | None) -> list:
    if last is None:
        return list(items)
    assert last >= 0, f"last must be non-negative: {last}"
    return items[-last:] if last else []


class MetricBuffers:
    """Rolling in-memory store for memory, CPU, GC and operation metrics.

    Thread-safe: the GC hook appends from whichever thread triggered a
    collection while the sampler appends from the event loop.

    Memory, CPU and GC records are retained for ``window_ms`` (default one
    hour) and evicted lazily when a new record of the same kind arrives.
    Operation records have no cap; readers take the most recent N.

    Example:
        buffers = MetricBuffers()
        buffers.record_gc(GCEvent(timestamp=now_ms(), duration=1.2, kind="gen0"))
        recent = buffers.gc_events_since(now_ms() - 60_000)
    """

    @beartype
    def __init__(
        self,
        window_ms: float = HOUR_MS,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        assert window_ms > 0, f"Retention window must be positive: {window_ms}"
        self.window_ms = window_ms
        self._clock = clock
        self._memory: list[MemorySample] = []
        self._cpu: list[CpuSample] = []
        self._gc: list[GCEvent] = []
        self._operations: dict[str, list[OperationRecord]] = defaultdict(list)
        self._marks: dict[str, dict[str, float]] = {}
        self._lock = threading.RLock()

    def _evict(self, records: list) -> list:
        cutoff = self._clock() - self.window_ms
        return [r for r in records if r.timestamp > cutoff]

    @beartype
    def record_memory(self, sample: MemorySample) -> None:
        with self._lock:
            self._memory.append(sample)
            self._memory = self._evict(self._memory)

    @beartype
    def record_cpu(self, sample: CpuSample) -> None:
        with self._lock:
            self._cpu.append(sample)
            self._cpu = self._evict(self._cpu)

    @beartype
    def record_gc(self, event: GCEvent) -> int:
        """Append a GC event, evict expired ones, return the retained count."""
        with self._lock:
            self._gc.append(event)
            self._gc = self._evict(self._gc)
            return len(self._gc)

    @beartype
    def record_operation(self, name: str, record: OperationRecord) -> None:
        assert name, "Operation name must be non-empty"
        with self._lock:
            self._operations[name].append(record)

    @beartype
    def record_mark(self, name: str, timestamp: float, start_time: float) -> None:
        with self._lock:
            self._marks[name] = {"timestamp": timestamp, "startTime": start_time}

    def get_mark(self, name: str) -> dict[str, float] | None:
        with self._lock:
            mark = self._marks.get(name)
            return dict(mark) if mark is not None else None

    def memory_samples(self, last: int | None = None) -> list[MemorySample]:
        with self._lock:
            return _tail(self._memory, last)

    def cpu_samples(self, last: int | None = None) -> list[CpuSample]:
        with self._lock:
            return _tail(self._cpu, last)

    def gc_events(self, last: int | None = None) -> list[GCEvent]:
        with self._lock:
            return _tail(self._gc, last)

    def gc_events_since(self, cutoff: float) -> list[GCEvent]:
        """GC events strictly newer than ``cutoff``."""
        with self._lock:
            return [e for e in self._gc if e.timestamp > cutoff]

    def operation_names(self) -> list[str]:
        with self._lock:
            return list(self._operations)

    def operation_records(self, name: str, since: float | None = None) -> list[OperationRecord]:
        with self._lock:
            records = self._operations.get(name, [])
            if since is None:
                return list(records)
            return [r for r in records if r.timestamp > since]

    def operations(self, last: int | None = None) -> dict[str, list[OperationRecord]]:
        """Snapshot of every operation, optionally trimmed to the last N records each."""
        with self._lock:
            return {name: _tail(records, last) for name, records in self._operations.items()}
