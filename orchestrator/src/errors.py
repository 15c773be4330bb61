from __future__ import annotations

import logging
import threading

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Initialisation could not complete; nothing was published and it may be retried."""


class FatalError(RuntimeError):
    """A condition the process cannot recover from in place.

    Raised by watch handlers and the capability poller, collected by a
    :class:`FatalErrorSink` and acted on only by the process entry point,
    which exits so the supervisor restarts the container.
    """

    reason = "fatal"


class RequiredResourceDeleted(FatalError):
    """A config object or custom resource backing a feature table was deleted."""

    reason = "required_resource_deleted"

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(
            f"{kind} {name!r} in namespace {namespace!r} deleted. "
            "This is a system resource, kindly restore it."
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name


class CapabilityActivated(FatalError):
    """A remote capability flipped to enabled and needs a clean start to take effect."""

    reason = "capability_activated"

    def __init__(self, capability: str) -> None:
        super().__init__(
            f"{capability} capability has been enabled; restarting as the "
            "capability changed from false to true"
        )
        self.capability = capability


class FatalErrorSink:
    """Collects the first fatal error raised anywhere in the process.

    Background threads report into the sink instead of exiting; the entry
    point waits on :attr:`triggered` (or on the optional *wake* event it
    passes in) and terminates the process.
    """

    def __init__(self, wake: threading.Event | None = None) -> None:
        self.triggered = threading.Event()
        self._wake = wake
        self._lock = threading.Lock()
        self._error: FatalError | None = None

    @property
    def error(self) -> FatalError | None:
        with self._lock:
            return self._error

    def report(self, error: FatalError) -> None:
        with self._lock:
            if self._error is None:
                self._error = error
        LOGGER.error("Fatal condition reported: %s", error)
        self.triggered.set()
        if self._wake is not None:
            self._wake.set()
