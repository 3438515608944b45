"""Shared test helpers."""

from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from chat_tui.llm.base import ChatBackend
from chat_tui.llm.client import ChunkStream
from chat_tui.llm.stats import StatsAccumulator
from chat_tui.types import ContentChunk, DoneChunk, Message, RequestStats, StreamChunk


class FakeBackend(ChatBackend):
    """Scripted backend: streams *fragments*, then *terminal*.

    With ``terminal=None`` the stream stalls after the fragments until it
    is cancelled.
    """

    def __init__(
        self,
        model: str = "fake-model",
        temperature: float = 0.7,
        fragments: Sequence[str] = ("Hello", " world"),
        terminal: StreamChunk | None = DoneChunk(),
        start_error: Exception | None = None,
    ) -> None:
        self._model = model
        self._temperature = temperature
        self.fragments = list(fragments)
        self.terminal = terminal
        self.start_error = start_error
        self.requests: list[list[Message]] = []
        self.reader_closed = False
        self.closed = False

    @property
    def model(self) -> str:
        return self._model

    @model.setter
    def model(self, value: str) -> None:
        self._model = value

    @property
    def temperature(self) -> float:
        return self._temperature

    @temperature.setter
    def temperature(self, value: float) -> None:
        self._temperature = value

    async def start_stream(self, messages, cancel=None):
        self.requests.append(list(messages))
        if self.start_error is not None:
            raise self.start_error
        cancel = cancel or asyncio.Event()
        acc = StatsAccumulator(self._model)
        acc.record_status(200)
        queue: asyncio.Queue[StreamChunk] = asyncio.Queue(maxsize=10)
        task = asyncio.create_task(self._produce(queue, acc))
        return ChunkStream(queue, task, cancel, acc.stats), acc.stats

    async def _produce(self, queue, acc: StatsAccumulator) -> None:
        try:
            for text in self.fragments:
                acc.record_token()
                await queue.put(ContentChunk(text))
            if self.terminal is None:
                await asyncio.Event().wait()
        finally:
            acc.finalize()
            self.reader_closed = True
        await queue.put(self.terminal)

    async def chat(self, messages) -> tuple[str, RequestStats]:
        self.requests.append(list(messages))
        if self.start_error is not None:
            raise self.start_error
        acc = StatsAccumulator(self._model)
        acc.record_usage({"prompt_tokens": 3, "completion_tokens": 2}, completion=True)
        return "".join(self.fragments), acc.finalize()

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
