"""Backend capability interface.

The controller talks to backends only through :class:`ChatBackend`, so a
different provider can be added without touching it.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

from chat_tui.types import Message, RequestStats

if TYPE_CHECKING:
    from chat_tui.llm.client import ChunkStream


class ChatBackend(ABC):
    """Operations every chat backend must provide."""

    @abstractmethod
    async def start_stream(
        self,
        messages: Sequence[Message],
        cancel: asyncio.Event | None = None,
    ) -> tuple[ChunkStream, RequestStats]:
        """Dispatch a streaming request.

        Returns the chunk stream and the stats record it fills in.  The
        record may be read once the stream has yielded its terminal chunk.
        """

    @abstractmethod
    async def chat(self, messages: Sequence[Message]) -> tuple[str, RequestStats]:
        """Dispatch a non-streaming request and return the full reply."""

    @property
    @abstractmethod
    def model(self) -> str: ...

    @model.setter
    @abstractmethod
    def model(self, value: str) -> None: ...

    @property
    @abstractmethod
    def temperature(self) -> float: ...

    @temperature.setter
    @abstractmethod
    def temperature(self, value: float) -> None: ...

    async def aclose(self) -> None:
        """Release transport resources."""
