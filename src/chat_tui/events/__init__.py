"""Event bus decoupling the controller from the presentation layer."""

from chat_tui.events.bus import EventBus

__all__ = ["EventBus"]
