"""Host capture subsystem: CPU profiles and heap snapshots.

``CaptureBackend`` is what the session talks to. ``SamplingCaptureBackend``
implements it in-process:

- CPU: a daemon thread samples the target thread's stack through
  ``sys._current_frames()`` and builds a call tree in the ``.cpuprofile``
  layout (``nodes``/``samples``/``timeDeltas``, times in microseconds).
- Heap: ``tracemalloc`` statistics grouped by line, serialized to JSON and
  delivered to the caller in fixed-size chunks, in order.
"""

import asyncio
import json
import sys
import threading
import time
import tracemalloc
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from runtime_profiling._errors import CaptureError, SessionError

DEFAULT_SAMPLING_INTERVAL_S = 0.001
DEFAULT_CHUNK_SIZE = 64 * 1024
MAX_STACK_DEPTH = 256


@runtime_checkable
class CaptureBackend(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def enable_cpu_profiler(self) -> None: ...

    async def start_cpu_profile(self) -> None: ...

    async def stop_cpu_profile(self) -> dict[str, Any]: ...

    async def take_heap_snapshot(self, on_chunk: Callable[[str], None]) -> None: ...


def _micros() -> int:
    return int(time.perf_counter() * 1_000_000)


class _CallTree:
    """Incrementally built call tree in cpuprofile node format."""

    def __init__(self) -> None:
        self.nodes: list[dict[str, Any]] = []
        self._index: dict[tuple, int] = {}
        self.root_id = self._add(None, "(root)", "", -1, -1)

    def _add(self, parent_id: int | None, name: str, url: str, line: int, column: int) -> int:
        node_id = len(self.nodes) + 1
        self.nodes.append(
            {
                "id": node_id,
                "callFrame": {
                    "functionName": name,
                    "url": url,
                    "lineNumber": line,
                    "columnNumber": column,
                },
                "hitCount": 0,
                "children": [],
            }
        )
        if parent_id is not None:
            self.nodes[parent_id - 1]["children"].append(node_id)
        return node_id

    def leaf_for(self, frames: list[tuple[str, str, int]]) -> int:
        """Walk/extend the tree along ``frames`` (outermost first), return the leaf id."""
        node_id = self.root_id
        for name, url, line in frames:
            key = (node_id, name, url, line)
            child = self._index.get(key)
            if child is None:
                child = self._add(node_id, name, url, line, 0)
                self._index[key] = child
            node_id = child
        self.nodes[node_id - 1]["hitCount"] += 1
        return node_id


class _StackSampler(threading.Thread):
    def __init__(self, target_ident: int, interval_s: float) -> None:
        super().__init__(name="runtime-profiling-cpu-sampler", daemon=True)
        self._target = target_ident
        self._interval = interval_s
        self._stop_event = threading.Event()
        self.tree = _CallTree()
        self.samples: list[int] = []
        self.time_deltas: list[int] = []
        self.start_time = _micros()
        self.end_time = self.start_time
        self._last = self.start_time

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            frame = sys._current_frames().get(self._target)
            if frame is None:
                continue
            frames: list[tuple[str, str, int]] = []
            while frame is not None and len(frames) < MAX_STACK_DEPTH:
                code = frame.f_code
                frames.append((code.co_name, code.co_filename, code.co_firstlineno))
                frame = frame.f_back
            frames.reverse()
            now = _micros()
            self.samples.append(self.tree.leaf_for(frames))
            self.time_deltas.append(now - self._last)
            self._last = now

    def finish(self) -> dict[str, Any]:
        self._stop_event.set()
        self.join()
        self.end_time = _micros()
        return {
            "nodes": self.tree.nodes,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "samples": self.samples,
            "timeDeltas": self.time_deltas,
        }


class SamplingCaptureBackend:
    """In-process CaptureBackend. At most one may be connected per process.

    Args:
        sampling_interval_s: Stack sampling period for CPU profiles
        chunk_size: Maximum characters per heap snapshot chunk
    """

    _attached_lock = threading.Lock()
    _attached: "SamplingCaptureBackend | None" = None

    def __init__(
        self,
        sampling_interval_s: float = DEFAULT_SAMPLING_INTERVAL_S,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        assert sampling_interval_s > 0, f"Sampling interval must be positive: {sampling_interval_s}"
        assert chunk_size > 0, f"Chunk size must be positive: {chunk_size}"
        self._interval = sampling_interval_s
        self._chunk_size = chunk_size
        self._connected = False
        self._cpu_enabled = False
        self._sampler: _StackSampler | None = None
        self._started_tracing = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        with SamplingCaptureBackend._attached_lock:
            if SamplingCaptureBackend._attached is not None:
                raise SessionError("Another capture session is already attached to this process")
            SamplingCaptureBackend._attached = self
        if not tracemalloc.is_tracing():
            tracemalloc.start()
            self._started_tracing = True
        self._connected = True

    async def disconnect(self) -> None:
        if self._sampler is not None:
            self._sampler.finish()
            self._sampler = None
        if self._started_tracing:
            tracemalloc.stop()
            self._started_tracing = False
        self._cpu_enabled = False
        self._connected = False
        with SamplingCaptureBackend._attached_lock:
            if SamplingCaptureBackend._attached is self:
                SamplingCaptureBackend._attached = None

    def _require_connected(self) -> None:
        if not self._connected:
            raise CaptureError("Capture backend is not connected")

    async def enable_cpu_profiler(self) -> None:
        self._require_connected()
        self._cpu_enabled = True

    async def start_cpu_profile(self) -> None:
        self._require_connected()
        if not self._cpu_enabled:
            raise CaptureError("CPU profiler must be enabled before starting")
        if self._sampler is not None:
            raise CaptureError("CPU profile already started")
        self._sampler = _StackSampler(threading.get_ident(), self._interval)
        self._sampler.start()

    async def stop_cpu_profile(self) -> dict[str, Any]:
        self._require_connected()
        sampler, self._sampler = self._sampler, None
        if sampler is None:
            raise CaptureError("CPU profile was not started")
        return await asyncio.to_thread(sampler.finish)

    async def take_heap_snapshot(self, on_chunk: Callable[[str], None]) -> None:
        self._require_connected()
        if not tracemalloc.is_tracing():
            raise CaptureError("tracemalloc is not tracing")
        payload = await asyncio.to_thread(self._serialize_heap)
        for offset in range(0, len(payload), self._chunk_size):
            on_chunk(payload[offset : offset + self._chunk_size])
        logger.debug(f"Heap snapshot delivered in {len(payload) // self._chunk_size + 1} chunks")

    @staticmethod
    def _serialize_heap() -> str:
        snapshot = tracemalloc.take_snapshot()
        stats = snapshot.statistics("lineno")
        return json.dumps(
            {
                "snapshot": {
                    "traceback_limit": snapshot.traceback_limit,
                    "total_size": sum(s.size for s in stats),
                    "total_count": sum(s.count for s in stats),
                },
                "statistics": [
                    {
                        "file": s.traceback[0].filename,
                        "line": s.traceback[0].lineno,
                        "size": s.size,
                        "count": s.count,
                    }
                    for s in stats
                ],
            }
        )
