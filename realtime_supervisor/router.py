"""Dispatch of inbound protocol events by their ``type`` discriminant."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from .events import ProtocolEvent

Handler = Callable[[ProtocolEvent], Union[None, Awaitable[None]]]


class EventRouter:
    """
    Routes each event to exactly one handler.

    Events are dispatched in the order they are handed in; the router never
    buffers or reorders. Unknown types are logged and dropped, and a failing
    handler is logged without taking the session down.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("EventRouter")
        self._handlers: Dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for '{event_type}'")
        self._handlers[event_type] = handler

    def register_log_sink(self, event_types: Iterable[str]) -> None:
        """Route ``event_types`` to the debug log only."""
        for event_type in event_types:
            self.register(event_type, self._log_sink)

    async def dispatch(self, event: ProtocolEvent) -> bool:
        """Run the handler for ``event``; returns False when it was dropped."""
        event_type = event.get("type", "unknown")
        handler: Optional[Handler] = self._handlers.get(event_type)
        if handler is None:
            self.logger.debug(f"Dropping unrecognized event type: {event_type}")
            return False

        try:
            result: Any = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Error handling {event_type}: {e}", exc_info=True)
            return False
        return True

    def _log_sink(self, event: ProtocolEvent) -> None:
        self.logger.debug(f"Server event: {event.get('type')}")
