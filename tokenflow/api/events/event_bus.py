# Event Bus for TokenFlow Engine
# Simple synchronous event bus for execution events

import logging
import threading
from typing import Callable, Dict, List, Optional, Type, TypeVar

from .execution_events import ExecutionEvent

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound=ExecutionEvent)

# Type alias for event handlers
EventHandler = Callable[[ExecutionEvent], None]


def _name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class ExecutionEventBus:
    """Simple synchronous event bus for execution events.

    Each engine owns its bus; there is no shared instance. Events are
    delivered immediately when published, global subscribers first, then
    subscribers of the event type, each group in subscription order.

    A subscriber that raises is logged and skipped. Tracing must never
    change the outcome of a step.

    Example usage:

        bus = ExecutionEventBus()

        def on_step(event: StepExecutedEvent):
            print(f"{event.step} -> {event.exit_port}")

        bus.subscribe(StepExecutedEvent, on_step)
    """

    def __init__(self):
        """Initialize the event bus with empty subscriber registry."""
        self._subscribers: Dict[Type[ExecutionEvent], List[EventHandler]] = {}
        self._global_subscribers: List[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        """Subscribe a handler to a specific event type.

        Args:
            event_type: The type of event to subscribe to
            handler: Callable that will be invoked when the event is published
        """
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                logger.debug(f"Subscribed {_name(handler)} to {event_type.__name__}")

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe a handler to ALL event types.

        Args:
            handler: Callable that will be invoked for every event
        """
        with self._lock:
            if handler not in self._global_subscribers:
                self._global_subscribers.append(handler)
                logger.debug(f"Subscribed {_name(handler)} to all events")

    def unsubscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> bool:
        """Unsubscribe a handler from a specific event type.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def unsubscribe_all(self, handler: EventHandler) -> bool:
        """Unsubscribe a handler from the global subscribers."""
        with self._lock:
            if handler in self._global_subscribers:
                self._global_subscribers.remove(handler)
                return True
            return False

    def publish(self, event: ExecutionEvent) -> int:
        """Publish an event to all subscribed handlers.

        Args:
            event: The event to publish

        Returns:
            Number of handlers that raised
        """
        event_type = type(event)
        with self._lock:
            handlers = list(self._global_subscribers)
            handlers.extend(self._subscribers.get(event_type, []))

        failures = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                failures += 1
                logger.exception(
                    f"Error in handler {_name(handler)} for {event_type.__name__}"
                )
        return failures

    def get_subscriber_count(self, event_type: Optional[Type[ExecutionEvent]] = None) -> int:
        """Get the number of subscribers.

        Args:
            event_type: If provided, count subscribers for this type only.
                       If None, count all subscribers across all types.
        """
        with self._lock:
            if event_type is not None:
                return len(self._subscribers.get(event_type, [])) + len(
                    self._global_subscribers
                )
            return len(self._global_subscribers) + sum(
                len(handlers) for handlers in self._subscribers.values()
            )

    def clear(self) -> None:
        """Remove all subscribers."""
        with self._lock:
            self._subscribers.clear()
            self._global_subscribers.clear()
        logger.debug("Cleared all event subscribers")
