"""Async pub/sub EventBus carrying renderable chat events to the UI."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from chat_tui.types import ChatEvent, EventType

_logger = logging.getLogger(__name__)

# Key used for wildcard subscriptions (receive all events)
_WILDCARD = "*"

# Handlers are sync or async callables taking a ChatEvent
Handler = Callable[[ChatEvent], Any]


class EventBus:
    """Lightweight async pub/sub event bus.

    - Subscribe to a specific EventType or ``"*"`` for all events.
    - Handlers may be sync or async.
    - Handlers for one event run in subscription order, so fragments
      reach the screen in the order they were emitted.
    - A failing handler is logged and does not affect the others.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[ChatEvent] = []
        self._max_history = max_history

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Remove *handler* from *event_type*."""
        handlers = self._handlers.get(self._key(event_type), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def emit(self, event: ChatEvent) -> None:
        """Deliver *event* to the specific and the wildcard handlers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        for handler in handlers:
            await self._call_handler(handler, event)

    @property
    def history(self) -> list[ChatEvent]:
        """Return a copy of the event history."""
        return list(self._history)

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: ChatEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type,
            )
