"""Conversation history plus the buffer of the reply being streamed.

Invariants kept by :class:`ConversationState`:

- a system message, if any, sits at index 0 and there is at most one;
- ``streaming_buffer`` is non-empty only while ``phase`` is ``STREAMING``;
- the buffer becomes an assistant message only through
  :meth:`commit_streaming`, and only when it is non-empty.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Iterable

from chat_tui.errors import InvalidTransition, NothingToDelete
from chat_tui.types import Message, RequestStats, Role

_logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    ERRORED = "errored"


class ConversationState:
    """Ordered message history and the in-flight streaming buffer."""

    def __init__(self, system_prompt: str = "") -> None:
        self.system_prompt = system_prompt
        self._messages: list[Message] = []
        self.streaming_buffer = ""
        self.in_flight_stats: RequestStats | None = None
        self.phase = Phase.IDLE
        self.last_error: BaseException | None = None
        self.reset()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        """A copy of the history, in order."""
        return list(self._messages)

    @property
    def has_system_message(self) -> bool:
        return bool(self._messages) and self._messages[0].role == Role.SYSTEM

    def turn_messages(self) -> list[Message]:
        """History without the leading system message."""
        return self._messages[1:] if self.has_system_message else list(self._messages)

    def last_assistant_message(self) -> Message | None:
        for msg in reversed(self._messages):
            if msg.role == Role.ASSISTANT:
                return msg
        return None

    def to_payload(self) -> list[dict[str, str]]:
        return [m.to_dict() for m in self._messages]

    # ------------------------------------------------------------------
    # User input
    # ------------------------------------------------------------------

    def append_user(self, text: str) -> None:
        if self.phase == Phase.STREAMING:
            raise InvalidTransition("cannot add a user message while streaming")
        self.clear_error()
        self._messages.append(Message(Role.USER, text))

    # ------------------------------------------------------------------
    # Streaming lifecycle
    # ------------------------------------------------------------------

    def begin_streaming(self, stats: RequestStats | None) -> None:
        if self.phase == Phase.STREAMING:
            raise InvalidTransition("a reply is already streaming")
        self.clear_error()
        self.phase = Phase.STREAMING
        self.streaming_buffer = ""
        self.in_flight_stats = stats

    def append_stream_fragment(self, text: str) -> None:
        if self.phase != Phase.STREAMING:
            raise InvalidTransition("no reply is streaming")
        self.streaming_buffer += text

    def commit_streaming(self) -> Message | None:
        """Finish the reply.  Returns the appended assistant message, if any."""
        if self.phase != Phase.STREAMING:
            raise InvalidTransition("no reply is streaming")
        committed = None
        if self.streaming_buffer:
            committed = Message(Role.ASSISTANT, self.streaming_buffer)
            self._messages.append(committed)
        self.streaming_buffer = ""
        self.phase = Phase.IDLE
        return committed

    def abandon_streaming(self) -> None:
        """Drop the partial reply without touching the history."""
        if self.phase != Phase.STREAMING:
            raise InvalidTransition("no reply is streaming")
        if self.streaming_buffer:
            _logger.debug("Discarding %d buffered chars", len(self.streaming_buffer))
        self.streaming_buffer = ""
        self.phase = Phase.IDLE

    def record_error(self, cause: BaseException) -> None:
        """Enter the errored phase.  Any streaming reply must be abandoned first."""
        if self.phase == Phase.STREAMING:
            raise InvalidTransition("abandon the streaming reply before recording an error")
        self.last_error = cause
        self.phase = Phase.ERRORED

    def clear_error(self) -> None:
        """Leave the errored phase, if in it."""
        self.last_error = None
        if self.phase == Phase.ERRORED:
            self.phase = Phase.IDLE

    # ------------------------------------------------------------------
    # History mutation
    # ------------------------------------------------------------------

    def set_system_prompt(self, text: str) -> None:
        self.system_prompt = text
        if self.has_system_message:
            self._messages[0] = Message(Role.SYSTEM, text)
        else:
            self._messages.insert(0, Message(Role.SYSTEM, text))

    def delete_last_turn(self) -> list[Message]:
        """Remove the last turn and return the removed messages."""
        self._require_not_streaming()
        turns = self.turn_messages()
        if not turns:
            raise NothingToDelete()
        last = self._messages[-1]
        if (
            last.role == Role.ASSISTANT
            and len(turns) >= 2
            and self._messages[-2].role == Role.USER
        ):
            removed = self._messages[-2:]
            del self._messages[-2:]
        else:
            removed = [self._messages.pop()]
        return removed

    def reset(self, system_prompt: str | None = None) -> None:
        """Clear history, keeping (or replacing) the system prompt."""
        self._require_not_streaming()
        if system_prompt is not None:
            self.system_prompt = system_prompt
        self._messages = []
        if self.system_prompt:
            self._messages.append(Message(Role.SYSTEM, self.system_prompt))
        self.streaming_buffer = ""
        self.clear_error()

    def prepare_retry(self) -> str:
        """Drop a trailing assistant reply and return the last user text.

        The user message stays in the history so it can be resent as is.
        """
        self._require_not_streaming()
        if self._messages and self._messages[-1].role == Role.ASSISTANT:
            if len(self._messages) >= 2 and self._messages[-2].role == Role.USER:
                self._messages.pop()
        if not self._messages or self._messages[-1].role != Role.USER:
            raise NothingToDelete("no user message to retry")
        self.clear_error()
        return self._messages[-1].content

    def take_last_user(self) -> str:
        """Remove the last turn and return its user text (for editing)."""
        removed = self.delete_last_turn()
        for msg in removed:
            if msg.role == Role.USER:
                return msg.content
        # Last message was an orphan assistant reply; put it back
        self._messages.extend(removed)
        raise NothingToDelete("no user message to edit")

    def replace_history(self, messages: Iterable[Message]) -> None:
        """Replace all messages, keeping at most one system message at index 0."""
        self._require_not_streaming()
        system: Message | None = None
        rest: list[Message] = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                if system is None:
                    system = msg
                continue
            rest.append(msg)
        if system is not None:
            self.system_prompt = system.content
            self._messages = [system, *rest]
        else:
            self._messages = rest
            if self.system_prompt:
                self._messages.insert(0, Message(Role.SYSTEM, self.system_prompt))
        self.clear_error()

    def _require_not_streaming(self) -> None:
        if self.phase == Phase.STREAMING:
            raise InvalidTransition("not allowed while a reply is streaming")

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "messages": len(self._messages),
            "buffer": len(self.streaming_buffer),
        }
