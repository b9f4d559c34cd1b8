"""Point-in-time performance reports and profile artifact retention.

Design by Contract:
- A CapturedProfile stays registered until its artifact is deleted
- A failed deletion is logged and leaves the entry for the next pass
- Reports round-trip through to_dict()/from_dict() without losing structure
"""

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_profiling._buffers import (
    CpuSample,
    GCEvent,
    MemorySample,
    MetricBuffers,
    OperationRecord,
    now_ms,
)
from runtime_profiling._config import MIB, PerformanceThresholds
from runtime_profiling._detector import Bottleneck, calculate_growth_rate, detect_bottlenecks
from runtime_profiling._errors import PersistenceError
from runtime_profiling._sampler import HostCounters

DAY_MS = 86_400_000.0
GC_SUMMARY_WINDOW_MS = 300_000.0
TREND_SAMPLES = 20
REPORT_MEMORY_SAMPLES = 100
REPORT_CPU_SAMPLES = 100
REPORT_GC_EVENTS = 50
REPORT_OPERATION_RECORDS = 10


class ProfileType(str, Enum):
    CPU = "cpu"
    HEAP = "heap"
    MEMORY = "memory"


@dataclass(frozen=True)
class CapturedProfile:
    """Metadata for a persisted profiling artifact.

    Attributes:
        profile_id: Unique id, e.g. ``cpu_1700000000000``
        type: Artifact kind
        filepath: Where the artifact was written
        timestamp: Capture completion time (epoch ms)
        size: Artifact size in bytes
        duration: Capture duration in ms (CPU and memory profiles)
        samples: Number of samples (memory profiles)
    """

    profile_id: str
    type: ProfileType
    filepath: Path
    timestamp: float
    size: int
    duration: int | None = None
    samples: int | None = None

    def __post_init__(self) -> None:
        assert self.size >= 0, f"Profile size must be non-negative: {self.size}"

    @property
    def filename(self) -> str:
        return self.filepath.name

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.profile_id,
            "type": self.type.value,
            "filename": self.filename,
            "filepath": str(self.filepath),
            "timestamp": self.timestamp,
            "size": self.size,
        }
        if self.duration is not None:
            data["duration"] = self.duration
        if self.samples is not None:
            data["samples"] = self.samples
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CapturedProfile":
        return cls(
            profile_id=data["id"],
            type=ProfileType(data["type"]),
            filepath=Path(data["filepath"]),
            timestamp=data["timestamp"],
            size=data["size"],
            duration=data.get("duration"),
            samples=data.get("samples"),
        )


class ProfileRegistry:
    """Insertion-ordered ``profile_id -> CapturedProfile`` mapping."""

    def __init__(self) -> None:
        self._profiles: dict[str, CapturedProfile] = {}

    def register(self, profile: CapturedProfile) -> None:
        assert profile.profile_id not in self._profiles, (
            f"Profile id already registered: {profile.profile_id}"
        )
        self._profiles[profile.profile_id] = profile

    def get(self, profile_id: str) -> CapturedProfile | None:
        return self._profiles.get(profile_id)

    def remove(self, profile_id: str) -> None:
        self._profiles.pop(profile_id, None)

    def items(self) -> list[tuple[str, CapturedProfile]]:
        return list(self._profiles.items())

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {pid: profile.to_dict() for pid, profile in self._profiles.items()}

    def __contains__(self, profile_id: object) -> bool:
        return profile_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._profiles))


@dataclass(frozen=True)
class GCSummary:
    count: int
    avg_duration: float
    total_time: float

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "avgDuration": self.avg_duration, "totalTime": self.total_time}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GCSummary":
        return cls(count=data["count"], avg_duration=data["avgDuration"], total_time=data["totalTime"])


@dataclass(frozen=True)
class PerformanceReport:
    timestamp: str
    uptime: float
    profiles: dict[str, CapturedProfile]
    memory: list[MemorySample]
    cpu: list[CpuSample]
    gc: list[GCEvent]
    operations: dict[str, list[OperationRecord]]
    bottlenecks: list[Bottleneck]
    memory_trend: str
    gc_summary: GCSummary
    total_profiles: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "total_profiles", len(self.profiles))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "uptime": self.uptime,
            "profiles": {pid: p.to_dict() for pid, p in self.profiles.items()},
            "metrics": {
                "memory": [s.to_dict() for s in self.memory],
                "cpu": [s.to_dict() for s in self.cpu],
                "gc": [e.to_dict() for e in self.gc],
                "operations": {
                    name: [r.to_dict() for r in records]
                    for name, records in self.operations.items()
                },
            },
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
            "summary": {
                "totalProfiles": self.total_profiles,
                "memoryTrend": self.memory_trend,
                "gcSummary": self.gc_summary.to_dict(),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PerformanceReport":
        metrics = data["metrics"]
        summary = data["summary"]
        return cls(
            timestamp=data["timestamp"],
            uptime=data["uptime"],
            profiles={pid: CapturedProfile.from_dict(p) for pid, p in data["profiles"].items()},
            memory=[MemorySample.from_dict(s) for s in metrics["memory"]],
            cpu=[CpuSample.from_dict(s) for s in metrics["cpu"]],
            gc=[GCEvent.from_dict(e) for e in metrics["gc"]],
            operations={
                name: [OperationRecord.from_dict(r) for r in records]
                for name, records in metrics["operations"].items()
            },
            bottlenecks=[Bottleneck.from_dict(b) for b in data["bottlenecks"]],
            memory_trend=summary["memoryTrend"],
            gc_summary=GCSummary.from_dict(summary["gcSummary"]),
        )

    @beartype
    def write(self, output_dir: Path, report_id: str) -> Path:
        """Write the report as ``<output_dir>/<report_id>.json``.

        Raises:
            PersistenceError: If the file cannot be written
        """
        path = output_dir / f"{report_id}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(self.to_dict(), f, indent=2, default=str)
        except OSError as exc:
            raise PersistenceError(f"Cannot write report {path}") from exc
        logger.success(f"Performance report generated: {path}")
        return path

    def log_summary(self, title: str = "PERFORMANCE REPORT") -> None:
        """Log a condensed snapshot of this report via loguru."""
        logger.info(f"[{title}] uptime={self.uptime:.0f}s profiles={self.total_profiles}")
        logger.info(f"  memory trend: {self.memory_trend}")
        logger.info(
            f"  gc (5 min): {self.gc_summary.count} collections, "
            f"avg {self.gc_summary.avg_duration:.2f}ms, total {self.gc_summary.total_time:.2f}ms"
        )
        if not self.bottlenecks:
            logger.info("  no bottlenecks detected")
        for bottleneck in self.bottlenecks:
            logger.warning(f"  [{bottleneck.severity.value}] {bottleneck.message}")


def memory_trend(buffers: MetricBuffers) -> str:
    """Classify heap growth over the most recent samples."""
    recent = buffers.memory_samples(last=TREND_SAMPLES)
    if len(recent) < 2:
        return "insufficient_data"
    trend = calculate_growth_rate([s.heap_used for s in recent])
    if trend > MIB:
        return "increasing"
    if trend < -MIB:
        return "decreasing"
    return "stable"


def gc_summary(buffers: MetricBuffers, now: float) -> GCSummary:
    recent = buffers.gc_events_since(now - GC_SUMMARY_WINDOW_MS)
    total = sum(e.duration for e in recent)
    return GCSummary(
        count=len(recent),
        avg_duration=total / len(recent) if recent else 0.0,
        total_time=total,
    )


class ReportBuilder:
    """Assembles PerformanceReport snapshots from buffers and detector output."""

    def __init__(
        self,
        buffers: MetricBuffers,
        registry: ProfileRegistry,
        thresholds: PerformanceThresholds,
        counters: HostCounters,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self._buffers = buffers
        self._registry = registry
        self._thresholds = thresholds
        self._counters = counters
        self._clock = clock

    def build(self) -> PerformanceReport:
        now = self._clock()
        return PerformanceReport(
            timestamp=datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
            uptime=self._counters.uptime(),
            profiles=dict(self._registry.items()),
            memory=self._buffers.memory_samples(last=REPORT_MEMORY_SAMPLES),
            cpu=self._buffers.cpu_samples(last=REPORT_CPU_SAMPLES),
            gc=self._buffers.gc_events(last=REPORT_GC_EVENTS),
            operations=self._buffers.operations(last=REPORT_OPERATION_RECORDS),
            bottlenecks=detect_bottlenecks(self._buffers, self._thresholds, now),
            memory_trend=memory_trend(self._buffers),
            gc_summary=gc_summary(self._buffers, now),
        )


@beartype
def cleanup_profiles(
    registry: ProfileRegistry,
    max_age_ms: float = DAY_MS,
    clock: Callable[[], float] = now_ms,
) -> list[str]:
    """Delete artifacts older than ``max_age_ms`` and unregister them.

    A deletion failure (including an already-missing file) is logged and the
    entry is kept, so the next pass tries again.

    Returns:
        Ids of the profiles that were deleted.
    """
    assert max_age_ms >= 0, f"max_age_ms must be non-negative: {max_age_ms}"
    cutoff = clock() - max_age_ms
    deleted: list[str] = []
    for profile_id, profile in registry.items():
        if profile.timestamp >= cutoff:
            continue
        try:
            profile.filepath.unlink()
        except OSError as exc:
            logger.error(f"Failed to delete profile {profile.filename}: {exc}")
            continue
        registry.remove(profile_id)
        deleted.append(profile_id)
        logger.info(f"Deleted old profile: {profile.filename}")

    logger.info(f"Cleaned up {len(deleted)} old profiles")
    return deleted
