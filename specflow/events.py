"""
Event Bus

Ordered pub/sub fan-out for progress and approval observers.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)


Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


class EventTypes:
    PROGRESS = "workflow.progress"
    APPROVAL_REQUIRED = "workflow.approval_required"


async def maybe_await(value: Any) -> Any:
    """Await value if it is awaitable, otherwise return it as-is."""
    if inspect.isawaitable(value):
        return await value
    return value


class EventBus:
    """
    Event bus with multiple subscribers per event type.

    Every subscriber receives every event, in registration order, and an
    event is fully delivered before publish() returns. Handler errors are
    logged and never reach the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """
        Subscribe to an event type.

        Args:
            event_type: Event type to subscribe to
            handler: Plain function or coroutine function

        Returns:
            A callable that removes the subscription
        """
        self._subscribers.setdefault(event_type, []).append(handler)

        def unsubscribe():
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribers(self, event_type: str) -> List[Handler]:
        return list(self._subscribers.get(event_type, []))

    async def publish(self, event_type: str, event: Any) -> None:
        """Deliver an event to every subscriber, awaiting async handlers in turn."""
        for handler in self.subscribers(event_type):
            try:
                await maybe_await(handler(event))
            except Exception:
                logger.exception(f"Error in {event_type} handler {handler!r}")
