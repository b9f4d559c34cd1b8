"""Profiling session lifecycle and artifact capture.

The session owns the single connection to the capture backend. Rules:

- ``start()`` twice opens one connection; the second call only warns.
- CPU profiles and heap snapshots need an active session
  (``NotActiveError``) and never overlap: a capture requested while
  another is in flight raises ``CaptureError``.
- ``stop()`` during a capture cancels it. The partial artifact is removed,
  nothing is registered, and the capture call raises ``CaptureError``.
- ``profile_memory()`` does not use the backend and works without a session.
- Artifact files are opened, written and removed on a worker thread; the
  event loop only awaits them.
"""

import asyncio
import itertools
import json
from collections.abc import Awaitable, Callable
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, TextIO, TypeVar

from beartype import beartype
from loguru import logger

from runtime_profiling._buffers import now_ms
from runtime_profiling._capture import CaptureBackend
from runtime_profiling._config import ProfilerConfig
from runtime_profiling._detector import calculate_growth_rate
from runtime_profiling._errors import (
    CaptureError,
    NotActiveError,
    PersistenceError,
    ProfilerError,
    SessionError,
)
from runtime_profiling._events import EventBus, ProfileComplete, Started, Stopped
from runtime_profiling._report import CapturedProfile, ProfileRegistry, ProfileType
from runtime_profiling._sampler import HostCounters, Sampler

MEMORY_PROFILE_INTERVAL_MS = 100
MEMORY_FIELDS = ("heapUsed", "heapTotal", "external", "rss")

T = TypeVar("T")


def summarize_memory_samples(samples: list[dict[str, Any]]) -> dict[str, Any]:
    """min/max/avg per memory field plus heapUsed growth per sample."""
    if not samples:
        return {}
    summary: dict[str, Any] = {}
    for name in MEMORY_FIELDS:
        values = [s[name] for s in samples]
        summary[name] = {
            "min": min(values),
            "max": max(values),
            "avg": sum(values) / len(values),
        }
    summary["growthRate"] = calculate_growth_rate([s["heapUsed"] for s in samples])
    return summary


class _ArtifactStream:
    """Artifact file whose I/O runs on one worker thread, in submission order.

    ``write`` and ``write_json`` only enqueue, so they are safe to call from
    synchronous callbacks on the event loop. ``finish`` waits for queued
    writes and closes the file; ``discard`` does the same and removes it.
    A cancelled caller never leaves a file behind: ``discard`` is queued
    after any write still running.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.size = 0
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="runtime-profiling-artifact"
        )
        self._file: TextIO | None = None
        self._writes: list[Future] = []

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)

    async def open(self) -> None:
        self._file = await self._run(self._open)

    def _open(self) -> TextIO:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.path, "w", encoding="utf-8")

    def write(self, chunk: str) -> None:
        assert self._file is not None, f"Artifact stream not open: {self.path}"
        self.size += len(chunk.encode())
        self._writes.append(self._executor.submit(self._file.write, chunk))

    def write_json(self, payload: Any) -> None:
        assert self._file is not None, f"Artifact stream not open: {self.path}"
        self._writes.append(self._executor.submit(self._dump, payload))

    def _dump(self, payload: Any) -> None:
        text = json.dumps(payload, indent=2)
        self.size += len(text.encode())
        self._file.write(text)

    async def finish(self) -> None:
        """Flush and close.

        Raises:
            OSError: The first failed write, or the failed close
        """
        await self._run(self._close, False)

    async def discard(self) -> None:
        try:
            await self._run(self._close, True)
        except OSError as exc:
            logger.warning(f"Failed to discard partial artifact {self.path.name}: {exc}")

    def _close(self, remove: bool) -> None:
        failures = [
            w.exception() for w in self._writes if not w.cancelled() and w.exception()
        ]
        try:
            if self._file is not None:
                self._file.close()
        finally:
            if remove:
                self.path.unlink(missing_ok=True)
        if failures and not remove:
            raise failures[0]

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


async def _write_artifact(path: Path, payload: Any) -> int:
    """Write ``payload`` as indented JSON off the event loop. Returns the byte size.

    On any failure or cancellation the file is removed before the error propagates.
    """
    stream = _ArtifactStream(path)
    completed = False
    try:
        await stream.open()
        stream.write_json(payload)
        await stream.finish()
        completed = True
    finally:
        if not completed:
            await stream.discard()
        stream.shutdown()
    return stream.size


class SessionManager:
    """Owns the capture session, the sampler, and the auto-profile loop."""

    @beartype
    def __init__(
        self,
        config: ProfilerConfig,
        backend: CaptureBackend,
        sampler: Sampler,
        counters: HostCounters,
        registry: ProfileRegistry,
        events: EventBus,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self._config = config
        self._backend = backend
        self._sampler = sampler
        self._counters = counters
        self._registry = registry
        self._events = events
        self._clock = clock
        self._active = False
        self._auto_task: asyncio.Task | None = None
        self._capture_task: asyncio.Task | None = None
        self._cancelled_by_stop = False
        self._ids = itertools.count()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def capture_in_flight(self) -> bool:
        return self._capture_task is not None

    async def start(self) -> None:
        """Open the capture connection and begin sampling.

        Raises:
            SessionError: If the capture backend cannot be opened (any
                connect failure is wrapped)
        """
        if self._active:
            logger.warning("Profiler already running")
            return

        logger.info("Starting performance profiler")
        try:
            await self._backend.connect()
        except ProfilerError:
            raise
        except Exception as exc:
            raise SessionError(f"Cannot open capture session: {exc}") from exc
        self._active = True
        self._sampler.start()
        if self._config.auto_profile:
            self._auto_task = asyncio.get_running_loop().create_task(self._auto_profile_loop())
        self._events.emit(Started())

    async def stop(self) -> None:
        """Close the session. Collected metrics and registered profiles are kept."""
        if not self._active:
            return

        logger.info("Stopping performance profiler")
        self._active = False

        capture = self._capture_task
        if capture is not None:
            logger.warning("Cancelling in-flight capture because the session is stopping")
            self._cancelled_by_stop = True
            capture.cancel()
            await asyncio.gather(capture, return_exceptions=True)

        auto, self._auto_task = self._auto_task, None
        if auto is not None:
            auto.cancel()
            await asyncio.gather(auto, return_exceptions=True)

        await self._sampler.stop()
        await self._backend.disconnect()
        self._events.emit(Stopped())

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{int(self._clock())}_{next(self._ids)}"

    async def _run_capture(self, capture: Awaitable[T]) -> T:
        if not self._active:
            if asyncio.iscoroutine(capture):
                capture.close()
            raise NotActiveError("Profiler session not active")
        if self._capture_task is not None:
            if asyncio.iscoroutine(capture):
                capture.close()
            raise CaptureError("Another capture is already in progress")

        task = asyncio.ensure_future(capture)
        self._capture_task = task
        self._cancelled_by_stop = False
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled_by_stop:
                raise CaptureError("Capture cancelled because the session stopped") from None
            raise
        finally:
            self._capture_task = None

    @beartype
    async def profile_cpu(self, duration_ms: int = 30_000) -> Path:
        """Capture a CPU profile for ``duration_ms`` and save it as ``.cpuprofile``.

        Raises:
            NotActiveError: If no session is active
            CaptureError: If a capture is in flight, the backend fails, or stop() cancels it
            PersistenceError: If the artifact cannot be written
        """
        assert duration_ms > 0, f"duration_ms must be positive: {duration_ms}"
        return await self._run_capture(self._capture_cpu(duration_ms))

    async def _capture_cpu(self, duration_ms: int) -> Path:
        profile_id = self._new_id("cpu")
        logger.info(f"Starting CPU profile: {profile_id} ({duration_ms}ms)")

        started = False
        try:
            await self._backend.enable_cpu_profiler()
            await self._backend.start_cpu_profile()
            started = True
            await asyncio.sleep(duration_ms / 1000)
            started = False
            profile = await self._backend.stop_cpu_profile()
        except ProfilerError:
            raise
        except asyncio.CancelledError:
            if started:
                await self._discard_cpu_profile()
            raise
        except Exception as exc:
            raise CaptureError(f"CPU profile {profile_id} failed: {exc}") from exc

        filepath = self._config.output_dir / f"{profile_id}.cpuprofile"
        try:
            size = await _write_artifact(filepath, profile)
        except OSError as exc:
            raise PersistenceError(f"Cannot write CPU profile {filepath}") from exc

        self._registry.register(
            CapturedProfile(
                profile_id=profile_id,
                type=ProfileType.CPU,
                filepath=filepath,
                timestamp=self._clock(),
                size=size,
                duration=duration_ms,
            )
        )
        logger.success(f"CPU profile saved: {filepath.name}")
        self._events.emit(ProfileComplete(type="cpu", profile_id=profile_id, filepath=str(filepath)))
        return filepath

    async def _discard_cpu_profile(self) -> None:
        try:
            await self._backend.stop_cpu_profile()
        except Exception:
            logger.exception("Failed to stop CPU profile while discarding it")

    async def take_heap_snapshot(self) -> Path:
        """Stream a heap snapshot into a ``.heapsnapshot`` artifact.

        Raises:
            NotActiveError: If no session is active
            CaptureError: If a capture is in flight, the backend fails, or stop() cancels it
            PersistenceError: If the artifact cannot be written
        """
        return await self._run_capture(self._capture_heap())

    async def _capture_heap(self) -> Path:
        snapshot_id = self._new_id("heap")
        logger.info(f"Taking heap snapshot: {snapshot_id}")
        filepath = self._config.output_dir / f"{snapshot_id}.heapsnapshot"
        stream = _ArtifactStream(filepath)

        completed = False
        try:
            try:
                await stream.open()
            except OSError as exc:
                raise PersistenceError(f"Cannot open heap snapshot {filepath}") from exc
            await self._backend.take_heap_snapshot(stream.write)
            await stream.finish()
            completed = True
        except ProfilerError:
            raise
        except OSError as exc:
            raise PersistenceError(f"Cannot write heap snapshot {filepath}") from exc
        except Exception as exc:
            raise CaptureError(f"Heap snapshot {snapshot_id} failed: {exc}") from exc
        finally:
            if not completed:
                await stream.discard()
            stream.shutdown()

        size = stream.size
        self._registry.register(
            CapturedProfile(
                profile_id=snapshot_id,
                type=ProfileType.HEAP,
                filepath=filepath,
                timestamp=self._clock(),
                size=size,
            )
        )
        logger.success(f"Heap snapshot saved: {filepath.name} ({size / 1024 / 1024:.2f}MB)")
        self._events.emit(
            ProfileComplete(type="heap", profile_id=snapshot_id, filepath=str(filepath))
        )
        return filepath

    @beartype
    async def profile_memory(self, duration_ms: int = 30_000) -> Path:
        """Sample process memory every 100ms for ``duration_ms`` into a JSON artifact.

        Takes ``duration_ms // 100`` samples (at least one). Independent of
        the session and of the metric buffers.

        Raises:
            PersistenceError: If the artifact cannot be written
        """
        assert duration_ms > 0, f"duration_ms must be positive: {duration_ms}"
        profile_id = self._new_id("memory")
        logger.info(f"Starting memory profile: {profile_id} ({duration_ms}ms)")

        total = max(1, duration_ms // MEMORY_PROFILE_INTERVAL_MS)
        samples: list[dict[str, Any]] = []
        for _ in range(total):
            await asyncio.sleep(MEMORY_PROFILE_INTERVAL_MS / 1000)
            usage = self._counters.memory_usage()
            samples.append(
                {
                    "timestamp": self._clock(),
                    "heapUsed": usage.heap_used,
                    "heapTotal": usage.heap_total,
                    "external": usage.external,
                    "rss": usage.rss,
                }
            )

        filepath = self._config.output_dir / f"{profile_id}.json"
        payload = {
            "profileId": profile_id,
            "type": "memory",
            "duration": duration_ms,
            "samples": samples,
            "summary": summarize_memory_samples(samples),
        }
        try:
            size = await _write_artifact(filepath, payload)
        except OSError as exc:
            logger.error(f"Failed to save memory profile: {exc}")
            raise PersistenceError(f"Cannot write memory profile {filepath}") from exc

        self._registry.register(
            CapturedProfile(
                profile_id=profile_id,
                type=ProfileType.MEMORY,
                filepath=filepath,
                timestamp=self._clock(),
                size=size,
                duration=duration_ms,
                samples=len(samples),
            )
        )
        logger.success(f"Memory profile saved: {filepath.name}")
        return filepath

    async def run_auto_profile_cycle(self) -> None:
        """One CPU profile followed by one heap snapshot."""
        await self.profile_cpu(self._config.profile_duration)
        await self.take_heap_snapshot()

    async def _auto_profile_loop(self) -> None:
        interval = self._config.heap_snapshot_interval / 1000
        while self._active:
            await asyncio.sleep(interval)
            if not self._active:
                break
            try:
                await self.run_auto_profile_cycle()
            except Exception:
                logger.exception("Auto-profile failed")
