"""Typed diagnostic messages and the bus that delivers them.

Consumers subscribe to a message class rather than a string event name.
Each class still carries ``event_name`` so log lines and external alerting
keep the familiar names (``high-gc-frequency``, ``profile-complete``...).
"""

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar, TypeVar

from beartype import beartype
from loguru import logger


@dataclass(frozen=True)
class ProfilerEvent:
    event_name: ClassVar[str] = "event"


@dataclass(frozen=True)
class Started(ProfilerEvent):
    event_name: ClassVar[str] = "started"


@dataclass(frozen=True)
class Stopped(ProfilerEvent):
    event_name: ClassVar[str] = "stopped"


@dataclass(frozen=True)
class HighGCFrequency(ProfilerEvent):
    event_name: ClassVar[str] = "high-gc-frequency"
    count: int
    threshold: int


@dataclass(frozen=True)
class HighMemoryUsage(ProfilerEvent):
    event_name: ClassVar[str] = "high-memory-usage"
    current: int
    threshold: int


@dataclass(frozen=True)
class SlowOperation(ProfilerEvent):
    event_name: ClassVar[str] = "slow-operation"
    operation: str
    duration: float
    threshold: float


@dataclass(frozen=True)
class ProfileComplete(ProfilerEvent):
    event_name: ClassVar[str] = "profile-complete"
    type: str
    profile_id: str
    filepath: str


E = TypeVar("E", bound=ProfilerEvent)


class EventBus:
    """Synchronous observer registry keyed by event class.

    A subscriber that raises is logged and skipped; delivery to the
    remaining subscribers continues.

    Callbacks run on the emitting thread. ``HighGCFrequency`` is emitted from
    the ``gc.callbacks`` hook, i.e. on whichever thread triggered the
    collection (a worker thread, the CPU sampler thread...). A callback that
    touches asyncio objects must hand off with ``loop.call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable]] = defaultdict(list)
        self._lock = threading.RLock()

    @beartype
    def subscribe(
        self, event_type: type[E], callback: Callable[[E], None]
    ) -> Callable[[], None]:
        """Register ``callback`` for ``event_type``. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers[event_type].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[event_type]:
                    self._subscribers[event_type].remove(callback)

        return unsubscribe

    @beartype
    def emit(self, event: ProfilerEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), ()))
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber failed handling '{event.event_name}'")
