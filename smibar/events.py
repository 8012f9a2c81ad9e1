"""Event sink between the poll worker and whatever presents its results."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

EVENT_SNAPSHOT = "gpu:data"
EVENT_ERROR = "gpu:error"
EVENT_META = "gpu:conn_meta"


@dataclass(frozen=True)
class Event:
    name: str
    payload: Any
    timestamp: float = field(default_factory=time.time)


class EventSink(Protocol):
    """Anything the supervisor can emit events into."""

    def emit(self, name: str, payload: Any) -> None:
        ...


Listener = Callable[[Event], None]


class EventHub:
    """Thread-safe fan-out of supervisor events.

    - Remembers the latest event of each name, so late joiners can catch up
    - Calls synchronous listeners on the emitting thread
    - Feeds asyncio subscribers through their own event loop
    """

    def __init__(self, max_queue_size: int = 100):
        self._lock = threading.Lock()
        self._latest: Dict[str, Event] = {}
        self._listeners: List[Listener] = []
        self._subscribers: List[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
        self._max_queue_size = max_queue_size

    def emit(self, name: str, payload: Any) -> None:
        event = Event(name=name, payload=payload)
        with self._lock:
            self._latest[name] = event
            listeners = list(self._listeners)
            subscribers = list(self._subscribers)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {name}: {e}", exc_info=True)

        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(_offer, queue, event)
            except RuntimeError:
                # Subscriber's loop is closed; it will be dropped on unsubscribe.
                logger.debug("Dropping event for subscriber on closed loop")

    def latest(self, name: str) -> Optional[Event]:
        with self._lock:
            return self._latest.get(name)

    def latest_payload(self, name: str, default: Any = None) -> Any:
        event = self.latest(name)
        return event.payload if event is not None else default

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        """Register a queue on the running event loop. Call from a coroutine."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [(l, q) for l, q in self._subscribers if q is not queue]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


def _offer(queue: asyncio.Queue, event: Event) -> None:
    """Put without blocking; a slow consumer loses its oldest event."""
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    queue.put_nowait(event)
