"""Profiler configuration.

Design by Contract:
- Durations and intervals MUST be positive (crash if not)
- Thresholds MUST be non-negative
- Unknown option names are rejected, never silently ignored
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from beartype import beartype

MIB = 1024 * 1024

_CONFIG_ALIASES = {
    "outputDir": "output_dir",
    "autoProfile": "auto_profile",
    "profileDuration": "profile_duration",
    "heapSnapshotInterval": "heap_snapshot_interval",
    "sampleInterval": "sample_interval",
    "performanceThresholds": "thresholds",
    "performance_thresholds": "thresholds",
}

_THRESHOLD_ALIASES = {
    "cpuUsage": "cpu_usage",
    "memoryUsage": "memory_usage",
    "gcFrequency": "gc_frequency",
}


@beartype
@dataclass(frozen=True)
class PerformanceThresholds:
    """Instantaneous alert thresholds.

    Attributes:
        cpu_usage: Process CPU percent above which the sampler warns
        memory_usage: heap_used bytes above which high-memory-usage is emitted
        gc_frequency: Collections per minute above which GC pressure is flagged
    """

    cpu_usage: int | float = 80.0
    memory_usage: int = 512 * MIB
    gc_frequency: int = 10

    def __post_init__(self) -> None:
        assert self.cpu_usage >= 0, f"cpu_usage must be non-negative: {self.cpu_usage}"
        assert self.memory_usage >= 0, f"memory_usage must be non-negative: {self.memory_usage}"
        assert self.gc_frequency >= 0, f"gc_frequency must be non-negative: {self.gc_frequency}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PerformanceThresholds":
        """Build thresholds from camelCase or snake_case keys, merged over defaults."""
        return cls(**_normalize(data, _THRESHOLD_ALIASES, cls))


@beartype
@dataclass(frozen=True)
class ProfilerConfig:
    """Recognized profiler options. All durations are milliseconds.

    Attributes:
        output_dir: Where profile artifacts and reports are written
        auto_profile: Run a CPU profile + heap snapshot every heap_snapshot_interval
        profile_duration: Length of each automatic CPU profile
        heap_snapshot_interval: Period between automatic capture cycles
        sample_interval: Period between system metric samples
        thresholds: Alerting thresholds
    """

    output_dir: Path = Path("./profiles")
    auto_profile: bool = False
    profile_duration: int = 30_000
    heap_snapshot_interval: int = 300_000
    sample_interval: int = 5_000
    thresholds: PerformanceThresholds = field(default_factory=PerformanceThresholds)

    def __post_init__(self) -> None:
        assert self.profile_duration > 0, (
            f"profile_duration must be positive: {self.profile_duration}"
        )
        assert self.heap_snapshot_interval > 0, (
            f"heap_snapshot_interval must be positive: {self.heap_snapshot_interval}"
        )
        assert self.sample_interval > 0, (
            f"sample_interval must be positive: {self.sample_interval}"
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProfilerConfig":
        """Build a config from a plain mapping.

        Accepts the option names used by the JSON/JS configuration files
        (``outputDir``, ``performanceThresholds.gcFrequency``...) as well as
        the Python attribute names. Partial thresholds keep the remaining defaults.

        Raises:
            ValueError: If a key is not a recognized option
        """
        values = _normalize(data, _CONFIG_ALIASES, cls)
        if "output_dir" in values:
            values["output_dir"] = Path(values["output_dir"])
        thresholds = values.get("thresholds")
        if isinstance(thresholds, Mapping):
            values["thresholds"] = PerformanceThresholds.from_dict(thresholds)
        return cls(**values)


def _normalize(data: Mapping[str, Any], aliases: dict[str, str], target: type) -> dict[str, Any]:
    known = {f.name for f in fields(target)}
    values: dict[str, Any] = {}
    for key, value in data.items():
        name = aliases.get(key, key)
        if name not in known:
            raise ValueError(f"Unknown {target.__name__} option: {key!r}")
        values[name] = value
    return values
