"""Profiler composition root.

Design by Contract (P1 - MANDATORY):
- One explicit PerformanceProfiler per host process; there is no global instance
- At most one active session per profiler
- The instrumentation listener stays subscribed from construction to close()

Memory and CPU counters come from psutil, logging goes through loguru.
"""

import asyncio
import inspect
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from beartype import beartype
from loguru import logger

from runtime_profiling._buffers import MetricBuffers, now_ms
from runtime_profiling._capture import CaptureBackend, SamplingCaptureBackend
from runtime_profiling._config import ProfilerConfig
from runtime_profiling._detector import Bottleneck, detect_bottlenecks
from runtime_profiling._events import EventBus, ProfilerEvent
from runtime_profiling._flamegraph import write_flame_graph
from runtime_profiling._instrumentation import (
    GCHook,
    InstrumentationFeed,
    InstrumentationListener,
)
from runtime_profiling._report import (
    DAY_MS,
    PerformanceReport,
    ProfileRegistry,
    ReportBuilder,
    cleanup_profiles,
    memory_trend,
)
from runtime_profiling._sampler import HostCounters, PsutilCounters, Sampler
from runtime_profiling._session import SessionManager
from runtime_profiling._timing import OperationTimer, profile_operation

E = TypeVar("E", bound=ProfilerEvent)


class PerformanceProfiler:
    """Runtime profiler for a single host process.

    Continuously samples memory/CPU while a session is active, records GC
    and measured operations from the instrumentation feed, captures CPU
    profiles and heap snapshots on demand, and derives bottleneck reports.

    Args:
        config: Profiler options (defaults to ProfilerConfig())
        counters: Memory/CPU counter source (defaults to psutil)
        backend: Capture subsystem (defaults to SamplingCaptureBackend)
        feed: Instrumentation feed (a fresh one by default)
        clock: Epoch-millisecond clock
        install_gc_hook: Publish gc.callbacks collections into the feed

    Example:
        profiler = PerformanceProfiler(ProfilerConfig(output_dir=Path("profiles")))
        profiler.subscribe(SlowOperation, lambda e: alert(e.operation))
        await profiler.start()
        with profiler.operation("db.query"):
            run_query()
        path = await profiler.generate_report()
        await profiler.stop()
    """

    @beartype
    def __init__(
        self,
        config: ProfilerConfig | None = None,
        *,
        counters: HostCounters | None = None,
        backend: CaptureBackend | None = None,
        feed: InstrumentationFeed | None = None,
        clock: Callable[[], float] = now_ms,
        install_gc_hook: bool = True,
    ) -> None:
        self.config = config if config is not None else ProfilerConfig()
        self._clock = clock
        self.events = EventBus()
        self.buffers = MetricBuffers(clock=clock)
        self.registry = ProfileRegistry()
        self.feed = feed if feed is not None else InstrumentationFeed()
        self._counters = counters if counters is not None else PsutilCounters()

        thresholds = self.config.thresholds
        self._sampler = Sampler(
            self._counters,
            self.buffers,
            self.events,
            thresholds,
            interval_s=self.config.sample_interval / 1000,
            clock=clock,
        )
        self._session = SessionManager(
            self.config,
            backend if backend is not None else SamplingCaptureBackend(),
            self._sampler,
            self._counters,
            self.registry,
            self.events,
            clock=clock,
        )
        self._listener = InstrumentationListener(
            self.feed,
            self.buffers,
            self.events,
            thresholds,
            is_active=lambda: self._session.active,
            clock=clock,
        )
        self._reports = ReportBuilder(
            self.buffers, self.registry, thresholds, self._counters, clock=clock
        )
        self._gc_hook = GCHook(self.feed)
        if install_gc_hook:
            self._gc_hook.install()

        self._ensure_output_directory()

    def _ensure_output_directory(self) -> None:
        try:
            self.config.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"Failed to create profiles directory: {exc}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._session.active

    async def start(self) -> None:
        await self._session.start()

    async def stop(self) -> None:
        await self._session.stop()

    async def close(self) -> None:
        """Stop the session and detach from the feed and the garbage collector."""
        await self.stop()
        self._listener.close()
        self._gc_hook.uninstall()

    @beartype
    def subscribe(self, event_type: type[E], callback: Callable[[E], None]) -> Callable[[], None]:
        """Subscribe to one event class. Returns an unsubscribe function.

        The callback runs synchronously on the emitting thread, which for
        ``HighGCFrequency`` may be any thread that triggered a collection.
        """
        return self.events.subscribe(event_type, callback)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def profile_cpu(self, duration_ms: int = 30_000) -> Path:
        return await self._session.profile_cpu(duration_ms)

    async def take_heap_snapshot(self) -> Path:
        return await self._session.take_heap_snapshot()

    async def profile_memory(self, duration_ms: int = 30_000) -> Path:
        return await self._session.profile_memory(duration_ms)

    @beartype
    def generate_flame_graph(self, profile_path: Path) -> Path:
        return write_flame_graph(profile_path)

    # ------------------------------------------------------------------
    # Operation timing
    # ------------------------------------------------------------------

    @beartype
    def mark(self, name: str) -> None:
        self.feed.mark(name)
        logger.debug(f"Performance mark: {name}")

    @beartype
    def measure(self, name: str, start_mark: str, end_mark: str | None = None) -> None:
        """Measure between two marks. A missing mark is logged, not raised."""
        try:
            self.feed.measure(name, start_mark, end_mark)
        except KeyError as exc:
            logger.error(f"Failed to measure {name}: {exc}")
            return
        logger.debug(f"Performance measure: {name}")

    async def time_function(self, name: str, fn: Callable[[], Any]) -> Any:
        """Call ``fn`` (sync or async) and record its duration under ``name``.

        The measure is recorded whether ``fn`` returns or raises.
        """
        start_mark, end_mark = f"{name}_start", f"{name}_end"
        self.mark(start_mark)
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self.mark(end_mark)
            self.measure(name, start_mark, end_mark)

    @contextmanager
    def operation(self, name: str, track_memory: bool = False) -> Generator[OperationTimer, None, None]:
        """Context manager recording the wrapped block as operation ``name``."""
        with profile_operation(name, self.feed, track_memory=track_memory) as timer:
            yield timer

    # ------------------------------------------------------------------
    # Analysis & retention
    # ------------------------------------------------------------------

    def detect_bottlenecks(self) -> list[Bottleneck]:
        return detect_bottlenecks(self.buffers, self.config.thresholds, self._clock())

    def build_report(self) -> PerformanceReport:
        return self._reports.build()

    async def generate_report(self) -> Path:
        """Build a report and write it to ``report_<ms>.json`` in the output directory.

        Raises:
            PersistenceError: If the report cannot be written
        """
        report = self.build_report()
        report_id = f"report_{int(self._clock())}"
        return await asyncio.to_thread(report.write, self.config.output_dir, report_id)

    async def cleanup_profiles(self, max_age_ms: float = DAY_MS) -> list[str]:
        """Delete profile artifacts older than ``max_age_ms`` (default 24h)."""
        return await asyncio.to_thread(
            cleanup_profiles, self.registry, float(max_age_ms), self._clock
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "profilesCount": len(self.registry),
            "outputDir": str(self.config.output_dir),
            "autoProfile": self.config.auto_profile,
            "recentBottlenecks": [b.to_dict() for b in self.detect_bottlenecks()],
            "memoryTrend": memory_trend(self.buffers),
        }
