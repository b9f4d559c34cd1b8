"""Periodic system metric sampling.

Design by Contract:
- interval MUST be positive
- A sample never touches the filesystem; persistence happens only when a
  report or profile artifact is written
- A failing tick is logged and the next tick still runs
"""

import asyncio
import time
import tracemalloc
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import psutil
from beartype import beartype
from loguru import logger

from runtime_profiling._buffers import CpuSample, MemorySample, MetricBuffers, now_ms
from runtime_profiling._config import PerformanceThresholds
from runtime_profiling._events import EventBus, HighMemoryUsage


@dataclass(frozen=True)
class MemoryUsage:
    heap_used: int
    heap_total: int
    external: int
    rss: int


@dataclass(frozen=True)
class CpuUsage:
    user_time: float
    system_time: float
    percent: float


@runtime_checkable
class HostCounters(Protocol):
    """Source of process memory/CPU counters."""

    def memory_usage(self) -> MemoryUsage: ...

    def cpu_usage(self) -> CpuUsage: ...

    def uptime(self) -> float: ...


class PsutilCounters:
    """HostCounters backed by psutil for the current process.

    ``heap_used`` is the traced Python heap when tracemalloc is running,
    otherwise RSS. ``heap_total`` is the virtual memory size and ``external``
    the shared memory figure where the platform reports one.
    """

    def __init__(self) -> None:
        self._process = psutil.Process()
        # Prime cpu_percent so the first real sample is meaningful
        self._process.cpu_percent(interval=None)

    def memory_usage(self) -> MemoryUsage:
        info = self._process.memory_info()
        heap_used = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else info.rss
        return MemoryUsage(
            heap_used=heap_used,
            heap_total=info.vms,
            external=getattr(info, "shared", 0),
            rss=info.rss,
        )

    def cpu_usage(self) -> CpuUsage:
        times = self._process.cpu_times()
        return CpuUsage(
            user_time=times.user,
            system_time=times.system,
            percent=self._process.cpu_percent(interval=None),
        )

    def uptime(self) -> float:
        return max(0.0, time.time() - self._process.create_time())


class Sampler:
    """Snapshots host counters into MetricBuffers on a fixed interval.

    Example:
        sampler = Sampler(PsutilCounters(), buffers, events, thresholds)
        sampler.start()          # inside a running event loop
        ...
        await sampler.stop()
    """

    @beartype
    def __init__(
        self,
        counters: HostCounters,
        buffers: MetricBuffers,
        events: EventBus,
        thresholds: PerformanceThresholds,
        interval_s: float = 5.0,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        assert interval_s > 0, f"Sampling interval must be positive: {interval_s}"
        self._counters = counters
        self._buffers = buffers
        self._events = events
        self._thresholds = thresholds
        self.interval_s = interval_s
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample_once(self) -> MemorySample:
        """Take one memory + CPU sample and check the memory threshold."""
        timestamp = self._clock()
        memory = self._counters.memory_usage()
        cpu = self._counters.cpu_usage()

        sample = MemorySample(
            timestamp=timestamp,
            heap_used=memory.heap_used,
            heap_total=memory.heap_total,
            external=memory.external,
            rss=memory.rss,
        )
        self._buffers.record_memory(sample)
        self._buffers.record_cpu(
            CpuSample(
                timestamp=timestamp,
                user_time=cpu.user_time,
                system_time=cpu.system_time,
                percent=cpu.percent,
            )
        )

        limit = self._thresholds.memory_usage
        if sample.heap_used > limit:
            self._events.emit(HighMemoryUsage(current=sample.heap_used, threshold=limit))
        if cpu.percent > self._thresholds.cpu_usage:
            logger.warning(
                f"CPU usage {cpu.percent:.1f}% above threshold {self._thresholds.cpu_usage}%"
            )
        return sample

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                self.sample_once()
            except Exception:
                logger.exception("System metric sample failed")
