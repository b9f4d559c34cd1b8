"""Instrumentation entry feed and the listener that routes it into metric buffers.

The feed is the host side: ``mark``/``measure`` for named operations,
``timerify`` for per-call function timing, and ``GCHook`` which turns
``gc.callbacks`` notifications into GC entries. The listener is the
profiler side and stays subscribed for the profiler's whole lifetime, so
marks and measures issued before a session starts are still recorded.
"""

import functools
import gc
import inspect
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from beartype import beartype
from loguru import logger

from runtime_profiling._buffers import GCEvent, MetricBuffers, OperationRecord, now_ms
from runtime_profiling._config import PerformanceThresholds
from runtime_profiling._events import EventBus, HighGCFrequency, SlowOperation

SLOW_OPERATION_MS = 1000.0
GC_RECENT_WINDOW_MS = 60_000.0


def _perf_ms() -> float:
    return time.perf_counter() * 1000


@dataclass(frozen=True)
class GCEntry:
    kind_name: ClassVar[str] = "gc"
    name: str
    start_time: float
    duration: float
    kind: str = "unknown"
    flags: int = 0


@dataclass(frozen=True)
class MeasureEntry:
    kind_name: ClassVar[str] = "measure"
    name: str
    start_time: float
    duration: float


@dataclass(frozen=True)
class MarkEntry:
    kind_name: ClassVar[str] = "mark"
    name: str
    start_time: float


@dataclass(frozen=True)
class FunctionEntry:
    kind_name: ClassVar[str] = "function"
    name: str
    start_time: float
    duration: float


Entry = Union[GCEntry, MeasureEntry, MarkEntry, FunctionEntry]


class InstrumentationFeed:
    """Publish/subscribe channel for instrumentation entries.

    Delivery is synchronous and in subscription order. ``start_time`` values
    are ``time.perf_counter()`` milliseconds, durations are milliseconds.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[Entry], None]] = []
        self._marks: dict[str, float] = {}
        self._lock = threading.RLock()

    def subscribe(self, callback: Callable[[Entry], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, entry: Entry) -> None:
        with self._lock:
            callbacks = list(self._subscribers)
        for callback in callbacks:
            callback(entry)

    @beartype
    def mark(self, name: str) -> MarkEntry:
        """Record a named point in time and publish it."""
        assert name, "Mark name must be non-empty"
        entry = MarkEntry(name=name, start_time=_perf_ms())
        with self._lock:
            self._marks[name] = entry.start_time
        self.publish(entry)
        return entry

    @beartype
    def measure(self, name: str, start_mark: str, end_mark: str | None = None) -> MeasureEntry:
        """Publish the duration between two marks (end defaults to now).

        Raises:
            KeyError: If either mark was never recorded
        """
        with self._lock:
            if start_mark not in self._marks:
                raise KeyError(f"Unknown mark: {start_mark!r}")
            start = self._marks[start_mark]
            if end_mark is None:
                end = _perf_ms()
            elif end_mark in self._marks:
                end = self._marks[end_mark]
            else:
                raise KeyError(f"Unknown mark: {end_mark!r}")
        entry = MeasureEntry(name=name, start_time=start, duration=max(0.0, end - start))
        self.publish(entry)
        return entry

    def timerify(self, fn: Callable) -> Callable:
        """Wrap ``fn`` so every call publishes a FunctionEntry."""
        name = getattr(fn, "__qualname__", repr(fn))

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = _perf_ms()
                try:
                    return await fn(*args, **kwargs)
                finally:
                    self.publish(FunctionEntry(name, start, _perf_ms() - start))

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = _perf_ms()
            try:
                return fn(*args, **kwargs)
            finally:
                self.publish(FunctionEntry(name, start, _perf_ms() - start))

        return wrapper


class GCHook:
    """Publishes a GCEntry for each completed collection via ``gc.callbacks``.

    ``kind`` is the generation (``gen0``..``gen2``); ``flags`` carries the
    number of uncollectable objects the collector reported.
    """

    def __init__(self, feed: InstrumentationFeed) -> None:
        self._feed = feed
        self._starts: dict[int, float] = {}
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        if not self._installed:
            gc.callbacks.append(self._on_gc)
            self._installed = True

    def uninstall(self) -> None:
        if self._installed:
            if self._on_gc in gc.callbacks:
                gc.callbacks.remove(self._on_gc)
            self._installed = False
            self._starts.clear()

    def _on_gc(self, phase: str, info: dict[str, Any]) -> None:
        generation = info.get("generation", 0)
        if phase == "start":
            self._starts[generation] = _perf_ms()
            return
        start = self._starts.pop(generation, None)
        if start is None:
            return
        self._feed.publish(
            GCEntry(
                name="gc",
                start_time=start,
                duration=_perf_ms() - start,
                kind=f"gen{generation}",
                flags=info.get("uncollectable", 0),
            )
        )


class InstrumentationListener:
    """Routes feed entries into MetricBuffers and emits threshold events.

    Entries are always recorded. ``HighGCFrequency`` and ``SlowOperation``
    are only emitted while ``is_active()`` returns True.
    """

    def __init__(
        self,
        feed: InstrumentationFeed,
        buffers: MetricBuffers,
        events: EventBus,
        thresholds: PerformanceThresholds,
        is_active: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self._buffers = buffers
        self._events = events
        self._thresholds = thresholds
        self._is_active = is_active
        self._clock = clock
        self._unsubscribe: Callable[[], None] | None = feed.subscribe(self.handle)

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle(self, entry: Entry) -> None:
        if isinstance(entry, GCEntry):
            self._handle_gc(entry)
        elif isinstance(entry, MeasureEntry):
            self._handle_measure(entry)
        elif isinstance(entry, MarkEntry):
            self._handle_mark(entry)
        elif isinstance(entry, FunctionEntry):
            logger.debug(f"Function {entry.name}: {entry.duration:.3f}ms")
        else:
            raise TypeError(f"Unsupported instrumentation entry: {entry!r}")

    def _handle_gc(self, entry: GCEntry) -> None:
        now = self._clock()
        self._buffers.record_gc(
            GCEvent(timestamp=now, duration=entry.duration, kind=entry.kind, flags=entry.flags)
        )
        recent = len(self._buffers.gc_events_since(now - GC_RECENT_WINDOW_MS))
        threshold = self._thresholds.gc_frequency
        if recent > threshold and self._is_active():
            self._events.emit(HighGCFrequency(count=recent, threshold=threshold))

    def _handle_measure(self, entry: MeasureEntry) -> None:
        self._buffers.record_operation(
            entry.name,
            OperationRecord(
                timestamp=self._clock(), duration=entry.duration, start_time=entry.start_time
            ),
        )
        if entry.duration > SLOW_OPERATION_MS and self._is_active():
            self._events.emit(
                SlowOperation(
                    operation=entry.name, duration=entry.duration, threshold=SLOW_OPERATION_MS
                )
            )

    def _handle_mark(self, entry: MarkEntry) -> None:
        self._buffers.record_mark(entry.name, self._clock(), entry.start_time)
