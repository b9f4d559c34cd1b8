"""Bottleneck detection over the current metric buffers.

Each pass is a pure read: nothing detected here is stored. Checks run in a
fixed order (GC frequency, memory growth, slow operations) and the result
keeps that order.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from beartype import beartype

from runtime_profiling._buffers import MetricBuffers
from runtime_profiling._config import MIB, PerformanceThresholds

GC_WINDOW_MS = 60_000.0
OPERATION_WINDOW_MS = 300_000.0
MEMORY_LEAK_SAMPLES = 10
MEMORY_GROWTH_LIMIT = float(MIB)
SLOW_OPERATION_AVG_MS = 1000.0
SLOW_OPERATION_MIN_COUNT = 5


class BottleneckKind(str, Enum):
    HIGH_GC_FREQUENCY = "high_gc_frequency"
    MEMORY_LEAK = "memory_leak"
    SLOW_OPERATION = "slow_operation"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Bottleneck:
    kind: BottleneckKind
    severity: Severity
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bottleneck":
        return cls(
            kind=BottleneckKind(data["type"]),
            severity=Severity(data["severity"]),
            message=data["message"],
            data=dict(data.get("data", {})),
        )


def calculate_growth_rate(values: list[int] | list[float]) -> float:
    """Average change per sample: (last - first) / len(values).

    Returns 0.0 for fewer than two values.
    """
    if len(values) < 2:
        return 0.0
    return (values[-1] - values[0]) / len(values)


def check_gc_frequency(
    buffers: MetricBuffers, thresholds: PerformanceThresholds, now: float
) -> Bottleneck | None:
    count = len(buffers.gc_events_since(now - GC_WINDOW_MS))
    if count <= thresholds.gc_frequency:
        return None
    return Bottleneck(
        kind=BottleneckKind.HIGH_GC_FREQUENCY,
        severity=Severity.WARNING,
        message=f"High GC frequency: {count} collections in the last minute",
        data={"count": count, "threshold": thresholds.gc_frequency},
    )


def check_memory_growth(buffers: MetricBuffers) -> Bottleneck | None:
    recent = buffers.memory_samples(last=MEMORY_LEAK_SAMPLES)
    if len(recent) < 2:
        return None
    growth_rate = calculate_growth_rate([s.heap_used for s in recent])
    if growth_rate <= MEMORY_GROWTH_LIMIT:
        return None
    return Bottleneck(
        kind=BottleneckKind.MEMORY_LEAK,
        severity=Severity.CRITICAL,
        message=f"Potential memory leak detected: {growth_rate / MIB:.2f}MB/sample growth",
        data={"growthRate": growth_rate},
    )


def check_slow_operations(buffers: MetricBuffers, now: float) -> list[Bottleneck]:
    found: list[Bottleneck] = []
    for operation in buffers.operation_names():
        recent = buffers.operation_records(operation, since=now - OPERATION_WINDOW_MS)
        if len(recent) <= SLOW_OPERATION_MIN_COUNT:
            continue
        avg_duration = sum(r.duration for r in recent) / len(recent)
        if avg_duration > SLOW_OPERATION_AVG_MS:
            found.append(
                Bottleneck(
                    kind=BottleneckKind.SLOW_OPERATION,
                    severity=Severity.WARNING,
                    message=f"Slow operation detected: {operation} (avg: {avg_duration:.1f}ms)",
                    data={
                        "operation": operation,
                        "avgDuration": avg_duration,
                        "count": len(recent),
                    },
                )
            )
    return found


@beartype
def detect_bottlenecks(
    buffers: MetricBuffers,
    thresholds: PerformanceThresholds,
    now: float,
) -> list[Bottleneck]:
    """Run every check against the buffers as of ``now`` (epoch ms).

    Returns:
        Flagged bottlenecks in check order; an empty list means nothing flagged.
    """
    bottlenecks: list[Bottleneck] = []
    gc_pressure = check_gc_frequency(buffers, thresholds, now)
    if gc_pressure is not None:
        bottlenecks.append(gc_pressure)
    leak = check_memory_growth(buffers)
    if leak is not None:
        bottlenecks.append(leak)
    bottlenecks.extend(check_slow_operations(buffers, now))
    return bottlenecks
