"""Operation timing helpers that feed the instrumentation channel.

Design by Contract (P1 - MANDATORY):
- Elapsed time MUST be non-negative (crash if negative)
- label must be non-empty

All public callables use beartype for runtime type enforcement.
"""

import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import psutil
from beartype import beartype

from runtime_profiling._instrumentation import InstrumentationFeed, MeasureEntry


class OperationTimer:
    """Context manager for timing code blocks with optional RSS tracking.

    Args:
        track_memory: If True, record the process RSS delta via psutil

    Attributes:
        start_time: perf_counter at entry (ms)
        elapsed: Time elapsed in milliseconds (MUST be >= 0)
        memory_delta: Change in process RSS (bytes), 0 when not tracked

    Example:
        with OperationTimer() as timer:
            result = expensive_operation()
        print(f"Elapsed: {timer.elapsed:.1f}ms")
    """

    @beartype
    def __init__(self, track_memory: bool = False) -> None:
        self.track_memory = track_memory
        self.start_time: float = 0.0
        self.elapsed: float = 0.0
        self.memory_delta: int = 0
        self._start_rss: int = 0

    def __enter__(self) -> "OperationTimer":
        if self.track_memory:
            self._start_rss = psutil.Process().memory_info().rss
        self.start_time = time.perf_counter() * 1000
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() * 1000 - self.start_time

        assert self.elapsed >= 0, (
            f"Elapsed time cannot be negative: {self.elapsed:.6f}ms. "
            f"Monotonic clock went backwards or timing bug."
        )

        if self.track_memory:
            self.memory_delta = psutil.Process().memory_info().rss - self._start_rss


@beartype
@contextmanager
def profile_operation(
    label: str,
    feed: InstrumentationFeed | None,
    track_memory: bool = False,
) -> Generator[OperationTimer, None, None]:
    """Time a block and publish it as a measure entry named ``label``.

    When feed is None, the wrapped code still executes but nothing is published.
    The entry is published even when the block raises.

    Args:
        label: Operation name recorded in the metric buffers
        feed: Instrumentation feed to publish into, or None for no-op
        track_memory: Also record the RSS delta on the yielded timer

    Yields:
        OperationTimer instance for accessing elapsed time
    """
    assert label, "Operation label must be non-empty"
    timer = OperationTimer(track_memory=track_memory)
    try:
        with timer:
            yield timer
    finally:
        if feed is not None:
            feed.publish(
                MeasureEntry(name=label, start_time=timer.start_time, duration=timer.elapsed)
            )
