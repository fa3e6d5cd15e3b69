"""
Event Bus
Typed in-process observer with explicit subscription handles.

Listeners are async callables. A listener that raises is logged and does not
affect other listeners or the publisher.
"""
import logging
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar
import itertools

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Awaitable[None]]
Predicate = Callable[[T], bool]


class Subscription:
    """Handle returned by EventBus.subscribe. unsubscribe() is idempotent."""

    def __init__(self, bus: "EventBus", key: int):
        self._bus = bus
        self._key = key
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self._key)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()


class EventBus(Generic[T]):
    """Fan-out of typed events to subscribed listeners"""

    def __init__(self, name: str = "events"):
        self.name = name
        self._listeners: Dict[int, tuple] = {}
        self._keys = itertools.count()

    def subscribe(
        self,
        listener: Listener,
        predicate: Optional[Predicate] = None
    ) -> Subscription:
        key = next(self._keys)
        self._listeners[key] = (listener, predicate)
        return Subscription(self, key)

    async def publish(self, event: T) -> None:
        # Snapshot: listeners may unsubscribe while being notified
        for listener, predicate in list(self._listeners.values()):
            if predicate is not None and not predicate(event):
                continue
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"{self.name} listener failed: {e}", exc_info=True)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _remove(self, key: int) -> None:
        self._listeners.pop(key, None)
