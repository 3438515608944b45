"""LLM backend, SSE parsing and request statistics for chat-tui."""

from chat_tui.llm.base import ChatBackend
from chat_tui.llm.client import ChunkStream, OpenAICompatClient
from chat_tui.llm.stats import SessionUsage, StatsAccumulator

__all__ = [
    "ChatBackend",
    "ChunkStream",
    "OpenAICompatClient",
    "SessionUsage",
    "StatsAccumulator",
]
