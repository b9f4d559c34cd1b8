"""runtime-profiling: In-process performance profiling and bottleneck detection.

Provides:
- PerformanceProfiler: Session lifecycle, metric sampling, CPU/heap/memory capture
- MetricBuffers: Rolling one-hour windows of memory, CPU, GC and operation metrics
- detect_bottlenecks: GC pressure, memory growth and slow operation diagnostics
- build_flame_graph: Flattened per-node aggregation of a captured CPU profile
- profile_operation: Context manager publishing a timed block as a measure entry

Usage:
    from runtime_profiling import PerformanceProfiler, ProfilerConfig, SlowOperation

    profiler = PerformanceProfiler(ProfilerConfig.from_dict({"outputDir": "./profiles"}))
    profiler.subscribe(SlowOperation, lambda event: print(event.operation))

    await profiler.start()
    with profiler.operation("Feature Building"):
        build_features()
    await profiler.profile_cpu(5_000)
    report_path = await profiler.generate_report()
    await profiler.stop()
"""

from runtime_profiling._buffers import (
    CpuSample,
    GCEvent,
    MemorySample,
    MetricBuffers,
    OperationRecord,
)
from runtime_profiling._capture import CaptureBackend, SamplingCaptureBackend
from runtime_profiling._config import PerformanceThresholds, ProfilerConfig
from runtime_profiling._core import PerformanceProfiler
from runtime_profiling._detector import (
    Bottleneck,
    BottleneckKind,
    Severity,
    calculate_growth_rate,
    detect_bottlenecks,
)
from runtime_profiling._errors import (
    CaptureError,
    NotActiveError,
    PersistenceError,
    ProfilerError,
    SessionError,
)
from runtime_profiling._events import (
    EventBus,
    HighGCFrequency,
    HighMemoryUsage,
    ProfileComplete,
    ProfilerEvent,
    SlowOperation,
    Started,
    Stopped,
)
from runtime_profiling._flamegraph import FlameGraph, FlameNode, build_flame_graph, write_flame_graph
from runtime_profiling._instrumentation import (
    Entry,
    FunctionEntry,
    GCEntry,
    GCHook,
    InstrumentationFeed,
    InstrumentationListener,
    MarkEntry,
    MeasureEntry,
)
from runtime_profiling._report import (
    CapturedProfile,
    PerformanceReport,
    ProfileRegistry,
    ProfileType,
    ReportBuilder,
    cleanup_profiles,
)
from runtime_profiling._sampler import CpuUsage, HostCounters, MemoryUsage, PsutilCounters, Sampler
from runtime_profiling._session import SessionManager
from runtime_profiling._timing import OperationTimer, profile_operation

__all__ = [
    "Bottleneck",
    "BottleneckKind",
    "CaptureBackend",
    "CaptureError",
    "CapturedProfile",
    "CpuSample",
    "CpuUsage",
    "Entry",
    "EventBus",
    "FlameGraph",
    "FlameNode",
    "FunctionEntry",
    "GCEntry",
    "GCEvent",
    "GCHook",
    "HighGCFrequency",
    "HighMemoryUsage",
    "HostCounters",
    "InstrumentationFeed",
    "InstrumentationListener",
    "MarkEntry",
    "MeasureEntry",
    "MemorySample",
    "MemoryUsage",
    "MetricBuffers",
    "NotActiveError",
    "OperationRecord",
    "OperationTimer",
    "PerformanceProfiler",
    "PerformanceReport",
    "PerformanceThresholds",
    "PersistenceError",
    "ProfileComplete",
    "ProfileRegistry",
    "ProfileType",
    "ProfilerConfig",
    "ProfilerError",
    "ProfilerEvent",
    "PsutilCounters",
    "ReportBuilder",
    "Sampler",
    "SamplingCaptureBackend",
    "SessionError",
    "SessionManager",
    "Severity",
    "SlowOperation",
    "Started",
    "Stopped",
    "build_flame_graph",
    "calculate_growth_rate",
    "cleanup_profiles",
    "detect_bottlenecks",
    "profile_operation",
    "write_flame_graph",
]

__version__ = "0.1.0"
