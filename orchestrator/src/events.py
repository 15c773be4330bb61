from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Protocol, Union

from orchestrator.src.errors import FatalError, FatalErrorSink
from orchestrator.src.metrics import METRICS


class ResourceKind(str, enum.Enum):
    PERSISTENT_VOLUME = "persistentvolume"
    PERSISTENT_VOLUME_CLAIM = "persistentvolumeclaim"
    VOLUME_ATTACHMENT = "volumeattachment"
    NODE = "node"
    CONFIG_MAP = "configmap"
    FEATURE_STATE = "cnscsisvfeaturestate"
    CAPABILITY = "capability"


@dataclass(frozen=True)
class Added:
    obj: Any


@dataclass(frozen=True)
class Updated:
    old: Any
    new: Any


@dataclass(frozen=True)
class Deleted:
    obj: Any


WatchEvent = Union[Added, Updated, Deleted]


class EventHandler(Protocol):
    def on_added(self, obj: Any) -> None: ...

    def on_updated(self, old: Any, new: Any) -> None: ...

    def on_deleted(self, obj: Any) -> None: ...


def dispatch(handler: EventHandler, event: WatchEvent) -> None:
    """Route one tagged event to the matching handler method."""
    if isinstance(event, Added):
        handler.on_added(event.obj)
    elif isinstance(event, Updated):
        handler.on_updated(event.old, event.new)
    elif isinstance(event, Deleted):
        handler.on_deleted(event.obj)
    else:
        raise TypeError(f"unsupported watch event {event!r}")


_CLOSED = object()


class EventChannel:
    """Ordered, unbounded queue of :data:`WatchEvent` for one resource kind.

    The watch feed for the kind is the only producer and one
    :class:`ChannelConsumer` is the only consumer, so per-kind ordering is
    preserved end to end.
    """

    def __init__(self, kind: ResourceKind) -> None:
        self.kind = kind
        self._queue: queue.Queue[Any] = queue.Queue()

    def publish(self, event: WatchEvent) -> None:
        self._queue.put(event)

    def close(self) -> None:
        self._queue.put(_CLOSED)

    def get(self, timeout: float | None = None) -> WatchEvent | None:
        """Return the next event, or ``None`` once the channel is closed."""
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            return None
        return item

    def join(self) -> None:
        """Block until every published event has been handled."""
        self._queue.join()

    def task_done(self) -> None:
        self._queue.task_done()


class ChannelConsumer:
    """Dedicated thread applying one channel's events to one handler.

    Handler failures are transient by policy: the event is logged and
    dropped.  A :class:`FatalError` is forwarded to the sink and the
    consumer keeps draining so the process can shut down in an orderly way.
    """

    def __init__(
        self,
        channel: EventChannel,
        handler: EventHandler,
        fatal: FatalErrorSink,
        logger: logging.Logger | None = None,
    ) -> None:
        self.channel = channel
        self.handler = handler
        self.fatal = fatal
        self.logger = logger or logging.getLogger(__name__)
        self._thread: threading.Thread | None = None

    def handle(self, event: WatchEvent) -> None:
        kind = self.channel.kind.value
        try:
            dispatch(self.handler, event)
        except FatalError as exc:
            self.fatal.report(exc)
        except Exception:
            METRICS.handler_errors_total.labels(kind=kind).inc()
            self.logger.exception("Dropping %s event after handler failure", kind)

    def run(self) -> None:
        while True:
            event = self.channel.get()
            try:
                if event is None:
                    return
                self.handle(event)
            finally:
                self.channel.task_done()

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run,
            name=f"consumer-{self.channel.kind.value}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self.channel.close()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
