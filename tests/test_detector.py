"""Tests for bottleneck detection."""

import pytest

from _fakes import MIB, FakeClock
from runtime_profiling import (
    BottleneckKind,
    GCEvent,
    MemorySample,
    MetricBuffers,
    OperationRecord,
    PerformanceThresholds,
    Severity,
    calculate_growth_rate,
    detect_bottlenecks,
)


def add_gc(buffers: MetricBuffers, clock: FakeClock, count: int, age_ms: float = 1_000.0) -> None:
    for _ in range(count):
        buffers.record_gc(GCEvent(timestamp=clock.now - age_ms, duration=2.0, kind="gen0"))


def add_memory(buffers: MetricBuffers, clock: FakeClock, heap_values: list[int]) -> None:
    for value in heap_values:
        clock.advance(5_000.0)
        buffers.record_memory(
            MemorySample(timestamp=clock.now, heap_used=value, heap_total=value, external=0, rss=value)
        )


def add_operations(
    buffers: MetricBuffers, clock: FakeClock, name: str, count: int, duration: float
) -> None:
    for _ in range(count):
        buffers.record_operation(name, OperationRecord(clock.now - 1_000.0, duration, 0.0))


class TestGrowthRate:
    def test_fewer_than_two_values_is_zero(self):
        assert calculate_growth_rate([]) == 0.0
        assert calculate_growth_rate([5]) == 0.0

    def test_divides_by_sample_count(self):
        assert calculate_growth_rate([0, 50, 100, 200]) == pytest.approx(50.0)


class TestGCFrequency:
    def test_threshold_plus_one_flags_exactly_one(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_gc(buffers, clock, thresholds.gc_frequency + 1)
        found = detect_bottlenecks(buffers, thresholds, clock.now)
        assert [b.kind for b in found] == [BottleneckKind.HIGH_GC_FREQUENCY]
        assert found[0].severity is Severity.WARNING
        assert found[0].data == {"count": 11, "threshold": 10}

    def test_exactly_threshold_flags_nothing(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_gc(buffers, clock, thresholds.gc_frequency)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []

    def test_events_older_than_a_minute_ignored(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_gc(buffers, clock, 20, age_ms=120_000.0)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []


class TestMemoryGrowth:
    def test_two_mib_per_sample_flags_leak(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_memory(buffers, clock, [100 * MIB + i * 2 * MIB for i in range(10)])
        found = detect_bottlenecks(buffers, thresholds, clock.now)
        assert [b.kind for b in found] == [BottleneckKind.MEMORY_LEAK]
        assert found[0].severity is Severity.CRITICAL
        assert found[0].data["growthRate"] > MIB

    def test_constant_heap_flags_nothing(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_memory(buffers, clock, [100 * MIB] * 10)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []

    def test_single_sample_gives_no_verdict(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_memory(buffers, clock, [500 * MIB])
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []

    def test_only_last_ten_samples_considered(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        # Steep early growth followed by a flat tail of ten samples
        add_memory(buffers, clock, [i * 50 * MIB for i in range(5)] + [300 * MIB] * 10)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []


class TestSlowOperations:
    def test_six_slow_records_flag(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_operations(buffers, clock, "db.query", 6, 1_500.0)
        found = detect_bottlenecks(buffers, thresholds, clock.now)
        assert [b.kind for b in found] == [BottleneckKind.SLOW_OPERATION]
        assert found[0].data == {"operation": "db.query", "avgDuration": 1_500.0, "count": 6}

    @pytest.mark.parametrize("duration", [1_500.0, 50_000.0])
    def test_four_records_never_flag(
        self,
        buffers: MetricBuffers,
        clock: FakeClock,
        thresholds: PerformanceThresholds,
        duration: float,
    ):
        add_operations(buffers, clock, "db.query", 4, duration)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []

    def test_records_older_than_five_minutes_ignored(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_operations(buffers, clock, "batch", 10, 2_000.0)
        clock.advance(301_000.0)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []

    def test_fast_operations_do_not_flag(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_operations(buffers, clock, "cache.get", 100, 3.0)
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []


class TestOrdering:
    def test_results_follow_check_order(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_memory(buffers, clock, [i * 4 * MIB for i in range(10)])
        add_operations(buffers, clock, "a", 6, 2_000.0)
        add_operations(buffers, clock, "b", 6, 3_000.0)
        add_gc(buffers, clock, 15)

        kinds = [b.kind for b in detect_bottlenecks(buffers, thresholds, clock.now)]
        assert kinds == [
            BottleneckKind.HIGH_GC_FREQUENCY,
            BottleneckKind.MEMORY_LEAK,
            BottleneckKind.SLOW_OPERATION,
            BottleneckKind.SLOW_OPERATION,
        ]

    def test_empty_buffers_is_valid(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        assert detect_bottlenecks(buffers, thresholds, clock.now) == []

    def test_detection_does_not_mutate_buffers(
        self, buffers: MetricBuffers, clock: FakeClock, thresholds: PerformanceThresholds
    ):
        add_gc(buffers, clock, 12)
        before = buffers.gc_events()
        detect_bottlenecks(buffers, thresholds, clock.now)
        detect_bottlenecks(buffers, thresholds, clock.now)
        assert buffers.gc_events() == before
