import logging
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from vtc.domain.events import Event

class EventBus:
    """A simple synchronous event bus for decoupled communication.

    Publishing walks the event's MRO, so subscribers of a base event class
    also receive its subclasses. Safe to publish from engine reader threads.
    A failing subscriber is logged and skipped; publishers never see its error.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        return callback

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]) -> bool:
        """Removes a callback. Returns False if it was not subscribed."""
        with self._lock:
            callbacks = self._subscribers.get(event_type)
            if not callbacks or callback not in callbacks:
                return False
            callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[event_type]
            return True

    def subscriber_count(self, event_type: Optional[Type[Event]] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._subscribers.get(event_type, []))
            return sum(len(v) for v in self._subscribers.values())

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            callbacks = [
                cb
                for klass in type(event).__mro__
                for cb in self._subscribers.get(klass, [])
            ]
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                self.logger.exception(f"Subscriber {callback!r} failed on {type(event).__name__}")
