"""Shared fixtures.

Internal classes are always real. Only the host collaborators are faked
(see ``_fakes.py``): the memory/CPU counter source, the capture backend,
and the wall clock.
"""

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from _fakes import FakeCaptureBackend, FakeClock, FakeCounters
from runtime_profiling import MetricBuffers, PerformanceProfiler, PerformanceThresholds, ProfilerConfig


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counters() -> FakeCounters:
    return FakeCounters()


@pytest.fixture
def backend() -> FakeCaptureBackend:
    return FakeCaptureBackend()


@pytest.fixture
def thresholds() -> PerformanceThresholds:
    return PerformanceThresholds()


@pytest.fixture
def buffers(clock: FakeClock) -> MetricBuffers:
    return MetricBuffers(clock=clock)


@pytest.fixture
def make_profiler(
    tmp_path: Path, clock: FakeClock, counters: FakeCounters, backend: FakeCaptureBackend
) -> Iterator[Callable[..., PerformanceProfiler]]:
    created: list[PerformanceProfiler] = []

    def factory(**overrides: Any) -> PerformanceProfiler:
        options: dict[str, Any] = {"output_dir": tmp_path / "profiles"}
        options.update(overrides)
        profiler = PerformanceProfiler(
            ProfilerConfig(**options),
            counters=counters,
            backend=backend,
            clock=clock,
            install_gc_hook=False,
        )
        created.append(profiler)
        return profiler

    yield factory

    for profiler in created:
        profiler._listener.close()
