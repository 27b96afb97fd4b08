"""
Event subscription system for the Picologs runtime.

Inbound WebSocket messages (by their ``type``) and local notifications such
as ``logs.updated`` or ``connection.status`` are dispatched through one
callback-based subscription API.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[dict[str, Any]], Coroutine[Any, Any, None] | None]

# Local notifications
LOGS_UPDATED = "logs.updated"
CONNECTION_STATUS = "connection.status"
AUTH_EXPIRED = "auth.expired"
BATCH_REJECTED = "batch.rejected"
ROSTER_UPDATED = "roster.updated"


class EventManager:
    """Dispatches events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: list[EventHandler] = []

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for all event types."""
        self._wildcard_handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [h for h in handlers if h is not handler]

    async def emit(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Dispatch a local notification."""
        await self.dispatch({"type": event_type, **(data or {})})

    async def dispatch(self, event: dict[str, Any]) -> None:
        """Dispatch an event to all matching handlers."""
        handlers = list(self._handlers.get(event.get("type", ""), []))
        handlers.extend(self._wildcard_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in event handler for %s", event.get("type"))
