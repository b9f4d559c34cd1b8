"""Error taxonomy for the profiler.

Lifecycle and capture-start failures propagate to the caller. Periodic work
(sampler ticks, auto-profile cycles, artifact deletion) logs these and carries on.
"""


class ProfilerError(Exception):
    """Base class for every profiler failure."""


class SessionError(ProfilerError):
    """The host instrumentation subsystem could not be opened."""


class NotActiveError(ProfilerError):
    """A capture was requested without an active session."""


class CaptureError(ProfilerError):
    """The capture subsystem failed, was cancelled, or is already busy."""


class PersistenceError(ProfilerError):
    """An artifact could not be written, read, or deleted."""
