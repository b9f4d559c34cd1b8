"""Fakes for the host collaborators: clock, counters and capture backend.

Internal classes are always real; only these external seams are replaced.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from runtime_profiling import CpuUsage, MemoryUsage, SessionError
from runtime_profiling._config import MIB


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeCounters:
    """HostCounters returning scripted memory figures."""

    def __init__(self, heap_used: int = 10 * MIB) -> None:
        self.heap_used = heap_used
        self.cpu_percent = 5.0
        self.reads = 0

    def memory_usage(self) -> MemoryUsage:
        self.reads += 1
        return MemoryUsage(
            heap_used=self.heap_used,
            heap_total=2 * self.heap_used,
            external=MIB,
            rss=4 * self.heap_used,
        )

    def cpu_usage(self) -> CpuUsage:
        return CpuUsage(user_time=1.5, system_time=0.5, percent=self.cpu_percent)

    def uptime(self) -> float:
        return 42.0


def two_node_profile() -> dict[str, Any]:
    return {
        "nodes": [
            {
                "id": 1,
                "callFrame": {
                    "functionName": "handle_request",
                    "url": "app/server.py",
                    "lineNumber": 10,
                    "columnNumber": 0,
                },
                "children": [2],
            },
            {
                "id": 2,
                "callFrame": {
                    "functionName": "",
                    "url": "app/db.py",
                    "lineNumber": 42,
                    "columnNumber": 4,
                },
                "children": [],
            },
        ],
        "startTime": 1_000,
        "endTime": 1_100,
        "samples": [1, 2, 1, 2],
        "timeDeltas": [10, 20, 30, 40],
    }


class FakeCaptureBackend:
    """CaptureBackend that records every call.

    ``heap_gate``, when set, makes take_heap_snapshot wait on it after the
    first chunk so a test can stop the session mid-stream.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.connections = 0
        self.connected = False
        self.fail_connect = False
        self.fail_stop_cpu = False
        self.fail_heap = False
        self.profile: dict[str, Any] = two_node_profile()
        self.chunks: list[str] = ['{"snapshot":', ' {"total_size": 10},', ' "statistics": []}']
        self.heap_gate: asyncio.Event | None = None

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.fail_connect:
            raise SessionError("inspector unavailable")
        self.connections += 1
        self.connected = True

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    async def enable_cpu_profiler(self) -> None:
        self.calls.append("enable_cpu")

    async def start_cpu_profile(self) -> None:
        self.calls.append("start_cpu")

    async def stop_cpu_profile(self) -> dict[str, Any]:
        self.calls.append("stop_cpu")
        if self.fail_stop_cpu:
            raise RuntimeError("Profiler.stop failed")
        return self.profile

    async def take_heap_snapshot(self, on_chunk: Callable[[str], None]) -> None:
        self.calls.append("heap")
        if self.fail_heap:
            raise RuntimeError("HeapProfiler.takeHeapSnapshot failed")
        for index, chunk in enumerate(self.chunks):
            on_chunk(chunk)
            if index == 0 and self.heap_gate is not None:
                await self.heap_gate.wait()
