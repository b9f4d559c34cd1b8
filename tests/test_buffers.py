"""Tests for the rolling metric buffers."""

import threading

import pytest
from beartype.roar import BeartypeCallHintParamViolation

from _fakes import MIB, FakeClock
from runtime_profiling import (
    CpuSample,
    GCEvent,
    MemorySample,
    MetricBuffers,
    OperationRecord,
)


def memory_at(ts: float, heap_used: int = MIB) -> MemorySample:
    return MemorySample(timestamp=ts, heap_used=heap_used, heap_total=2 * MIB, external=0, rss=4 * MIB)


class TestRetentionWindow:
    def test_old_memory_samples_evicted_on_next_append(self, clock: FakeClock):
        buffers = MetricBuffers(window_ms=1_000.0, clock=clock)
        buffers.record_memory(memory_at(clock.now))
        clock.advance(1_500.0)
        buffers.record_memory(memory_at(clock.now))

        samples = buffers.memory_samples()
        assert len(samples) == 1
        assert samples[0].timestamp == clock.now

    def test_eviction_is_lazy(self, clock: FakeClock):
        buffers = MetricBuffers(window_ms=1_000.0, clock=clock)
        buffers.record_memory(memory_at(clock.now))
        clock.advance(5_000.0)
        # Nothing new arrived, so nothing was evicted yet
        assert len(buffers.memory_samples()) == 1

    def test_sample_exactly_at_window_edge_is_evicted(self, clock: FakeClock):
        buffers = MetricBuffers(window_ms=1_000.0, clock=clock)
        buffers.record_cpu(CpuSample(timestamp=clock.now, user_time=1.0, system_time=0.1))
        clock.advance(1_000.0)
        buffers.record_cpu(CpuSample(timestamp=clock.now, user_time=1.1, system_time=0.1))
        assert [s.timestamp for s in buffers.cpu_samples()] == [clock.now]

    def test_gc_events_keep_one_hour(self, buffers: MetricBuffers, clock: FakeClock):
        buffers.record_gc(GCEvent(timestamp=clock.now, duration=1.0, kind="gen0"))
        clock.advance(30 * 60_000.0)
        buffers.record_gc(GCEvent(timestamp=clock.now, duration=2.0, kind="gen1"))
        assert len(buffers.gc_events()) == 2

        clock.advance(31 * 60_000.0)
        retained = buffers.record_gc(GCEvent(timestamp=clock.now, duration=3.0, kind="gen2"))
        assert retained == 2
        assert [e.kind for e in buffers.gc_events()] == ["gen1", "gen2"]

    def test_gc_events_since_is_strict(self, buffers: MetricBuffers, clock: FakeClock):
        buffers.record_gc(GCEvent(timestamp=clock.now - 60_000.0, duration=1.0))
        buffers.record_gc(GCEvent(timestamp=clock.now - 59_999.0, duration=1.0))
        assert len(buffers.gc_events_since(clock.now - 60_000.0)) == 1

    def test_non_positive_window_raises(self):
        with pytest.raises(AssertionError, match="positive"):
            MetricBuffers(window_ms=0.0)


class TestOperations:
    def test_records_grouped_by_name_in_arrival_order(self, buffers: MetricBuffers):
        for i in range(3):
            buffers.record_operation("db.query", OperationRecord(float(i), 10.0 * i, float(i)))
        buffers.record_operation("render", OperationRecord(5.0, 1.0, 5.0))

        ops = buffers.operations()
        assert list(ops) == ["db.query", "render"]
        assert [r.duration for r in ops["db.query"]] == [0.0, 10.0, 20.0]

    def test_operations_last_n(self, buffers: MetricBuffers):
        for i in range(15):
            buffers.record_operation("op", OperationRecord(float(i), 1.0, float(i)))
        assert [r.timestamp for r in buffers.operations(last=10)["op"]] == [
            float(i) for i in range(5, 15)
        ]

    def test_operation_records_since(self, buffers: MetricBuffers):
        buffers.record_operation("op", OperationRecord(100.0, 1.0, 0.0))
        buffers.record_operation("op", OperationRecord(200.0, 1.0, 0.0))
        assert len(buffers.operation_records("op", since=100.0)) == 1
        assert buffers.operation_records("missing") == []

    def test_empty_operation_name_raises(self, buffers: MetricBuffers):
        with pytest.raises(AssertionError, match="non-empty"):
            buffers.record_operation("", OperationRecord(1.0, 1.0, 1.0))

    def test_negative_duration_raises(self):
        with pytest.raises(AssertionError, match="non-negative"):
            OperationRecord(timestamp=1.0, duration=-1.0, start_time=0.0)


class TestMarks:
    def test_last_seen_mark_wins(self, buffers: MetricBuffers):
        buffers.record_mark("load_start", 1.0, 10.0)
        buffers.record_mark("load_start", 2.0, 20.0)
        assert buffers.get_mark("load_start") == {"timestamp": 2.0, "startTime": 20.0}
        assert buffers.get_mark("unknown") is None


class TestIsolation:
    def test_accessors_return_copies(self, buffers: MetricBuffers, clock: FakeClock):
        buffers.record_memory(memory_at(clock.now))
        buffers.memory_samples().clear()
        buffers.operations().clear()
        assert len(buffers.memory_samples()) == 1

    def test_last_zero_returns_empty(self, buffers: MetricBuffers, clock: FakeClock):
        buffers.record_memory(memory_at(clock.now))
        assert buffers.memory_samples(last=0) == []

    def test_negative_memory_counter_raises(self):
        with pytest.raises(AssertionError, match="cannot be negative"):
            MemorySample(timestamp=0.0, heap_used=-1, heap_total=0, external=0, rss=0)

    def test_beartype_rejects_wrong_record_type(self, buffers: MetricBuffers):
        with pytest.raises(BeartypeCallHintParamViolation):
            buffers.record_memory({"heapUsed": 1})

    def test_thread_safety(self, buffers: MetricBuffers, clock: FakeClock):
        def record_many(label: str, n: int) -> None:
            for i in range(n):
                buffers.record_operation(label, OperationRecord(clock.now, 1.0, float(i)))
                buffers.record_gc(GCEvent(timestamp=clock.now, duration=0.5))

        threads = [
            threading.Thread(target=record_many, args=(f"thread_{i}", 100)) for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ops = buffers.operations()
        for i in range(4):
            assert len(ops[f"thread_{i}"]) == 100
        assert len(buffers.gc_events()) == 400
