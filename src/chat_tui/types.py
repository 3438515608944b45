"""Shared data types for chat-tui."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Author of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """A single chat message, replayed verbatim to the backend."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(role=Role(raw["role"]), content=str(raw.get("content", "")))


# ---------------------------------------------------------------------------
# Stream chunks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentChunk:
    """A non-empty text fragment from the model."""

    text: str


@dataclass(frozen=True)
class DoneChunk:
    """Terminal chunk: the stream ended normally."""


@dataclass(frozen=True)
class ErrorChunk:
    """Terminal chunk: the transport failed mid-stream."""

    error: BaseException


StreamChunk = Union[ContentChunk, DoneChunk, ErrorChunk]


def is_terminal(chunk: StreamChunk) -> bool:
    return isinstance(chunk, (DoneChunk, ErrorChunk))


# ---------------------------------------------------------------------------
# Request statistics
# ---------------------------------------------------------------------------

@dataclass
class RequestStats:
    """Timing and throughput metrics for one request.

    Times are monotonic clock readings in seconds; durations are seconds.
    Optional fields stay ``None`` when their preconditions do not hold
    (e.g. no token was received), so consumers must check before use.
    """

    model: str = ""
    start_time: float = 0.0
    end_time: float = 0.0
    first_token_time: float | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    time_to_first_token: float | None = None
    generation_time: float | None = None
    avg_tokens_per_sec: float | None = None
    post_first_token_tokens_per_sec: float | None = None
    total_latency: float = 0.0
    http_status: int = 0
    cost_estimate: float | None = None

    def compact_summary(self) -> str:
        """One-line summary such as ``42 tok | 1.20s | TTFT 0.31s | 35.0 tok/s``."""
        parts: list[str] = []
        tokens = self.total_tokens or self.output_tokens
        if tokens:
            parts.append(f"{tokens} tok")
        parts.append(f"{self.total_latency:.2f}s")
        if self.time_to_first_token is not None:
            parts.append(f"TTFT {self.time_to_first_token:.2f}s")
        if self.avg_tokens_per_sec is not None:
            parts.append(f"{self.avg_tokens_per_sec:.1f} tok/s")
        if self.cost_estimate is not None:
            parts.append(f"${self.cost_estimate:.6f}")
        return " | ".join(parts)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by the controller for the presentation layer."""

    TURN_STARTED = "turn.started"
    STREAM_FRAGMENT = "stream.fragment"
    STREAM_DONE = "stream.done"
    STREAM_CANCELLED = "stream.cancelled"
    ERROR = "error"
    NOTICE = "notice"
    CONFIG_RELOADED = "config.reloaded"
    HISTORY_CHANGED = "history.changed"


@dataclass
class ChatEvent:
    """Event emitted by the chat system via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
