"""
Push-based event emission for whatever view sits on top of a peer.

Handlers are plain callables registered per event name; emission is
synchronous and in registration order.  A failing handler is logged and
never interrupts the emitter or the remaining handlers.
"""

from collections import defaultdict
from collections.abc import Callable
from enum import Enum
import logging
from typing import Any

logger = logging.getLogger(__name__)


class Event(str, Enum):
    CONNECTION_STATE = "connection_state"  # (ConnectionState)
    ROOM_CREATED = "room_created"          # (room_id: str)
    PROGRESS = "progress"                  # (percent: int)
    RECEIVED = "received"                  # (TransferMetadata)
    SENT = "sent"                          # ()
    JOIN_ERROR = "join_error"              # (reason: str)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


Handler = Callable[..., Any]


class EventEmitter:
    def __init__(self) -> None:
        self._handlers: dict[Event, list[Handler]] = defaultdict(list)

    def on(self, event: Event, handler: Handler | None = None) -> Any:
        """Register *handler* for *event*; usable as a decorator when omitted."""
        if handler is None:

            def decorator(func: Handler) -> Handler:
                self._handlers[Event(event)].append(func)
                return func

            return decorator
        self._handlers[Event(event)].append(handler)
        return handler

    def off(self, event: Event, handler: Handler) -> None:
        handlers = self._handlers.get(Event(event))
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return

    def emit(self, event: Event, *args: Any) -> None:
        event = Event(event)
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Handler {handler!r} failed for {event.value}")
