"""Async client for OpenAI-compatible chat completion endpoints.

Streaming requests are read by a background task that parses the SSE body
and feeds a bounded queue.  The caller consumes the queue through a
:class:`ChunkStream`; closing the stream signals the task's cancellation
token, cancels it and waits until the HTTP response has been released.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Sequence

import httpx

from chat_tui.config import ChatConfig, PricingConfig
from chat_tui.errors import APIError, DecodeError, StreamReadError, TransportError
from chat_tui.types import (
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    Message,
    RequestStats,
    StreamChunk,
    is_terminal,
)

from . import sse
from .base import ChatBackend
from .stats import Clock, StatsAccumulator

_logger = logging.getLogger(__name__)

# Retry configuration (non-streaming requests only)
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4
_RETRY_STATUSES = (429, 500, 502, 503, 504)

# Capacity of the reader -> consumer channel; the reader blocks when full
_CHANNEL_SIZE = 10


class ChunkStream:
    """Single-consumer async iterator over the chunks of one response.

    Yields ``ContentChunk`` items in arrival order and ends after exactly
    one terminal ``DoneChunk`` or ``ErrorChunk``.  Use as an async context
    manager (or call :meth:`aclose`) so the transport is released on every
    exit path, including early abandonment.
    """

    def __init__(
        self,
        queue: asyncio.Queue[StreamChunk],
        task: asyncio.Task[None],
        cancel: asyncio.Event,
        stats: RequestStats,
    ) -> None:
        self._queue = queue
        self._task = task
        self._cancel = cancel
        self._stats = stats
        self._finished = False

    @property
    def stats(self) -> RequestStats:
        """Stats record; complete once the terminal chunk has been seen."""
        return self._stats

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> StreamChunk:
        if self._finished:
            raise StopAsyncIteration
        chunk = await self._queue.get()
        if is_terminal(chunk):
            self._finished = True
        return chunk

    async def aclose(self) -> None:
        """Stop the reader task and wait for the response to be closed."""
        self._cancel.set()
        self._finished = True
        if not self._task.done():
            self._task.cancel()
        await asyncio.wait([self._task])
        if not self._task.cancelled() and self._task.exception() is not None:
            _logger.warning("Stream reader ended with %r", self._task.exception())

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class OpenAICompatClient(ChatBackend):
    """Client for OpenAI-compatible APIs (OpenAI, LM Studio, Ollama /v1, ...)."""

    def __init__(
        self,
        config: ChatConfig,
        timeout: float = 60,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._model = config.model
        self._temperature = config.temperature
        self._max_tokens = config.max_tokens
        self._pricing: PricingConfig = config.pricing
        self._clock = clock
        self.base_url = config.base_url.rstrip("/")

        headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=30, read=timeout),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

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
        if not 0 <= value <= 2:
            raise ValueError("temperature must be between 0 and 2")
        self._temperature = value

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    def _payload(self, messages: Sequence[Message], stream: bool) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": [m.to_dict() for m in messages],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "stream": stream,
        }

    def _accumulator(self) -> StatsAccumulator:
        return StatsAccumulator(self._model, clock=self._clock, pricing=self._pricing)

    # ------------------------------------------------------------------
    # Non-streaming chat
    # ------------------------------------------------------------------

    async def chat(self, messages: Sequence[Message]) -> tuple[str, RequestStats]:
        """Send a non-streaming chat completion request."""
        payload = self._payload(messages, stream=False)
        acc = self._accumulator()
        resp: httpx.Response | None = None
        last_error: Exception | None = None

        for attempt in range(_MAX_RETRIES):
            resp = None
            try:
                resp = await self._client.post("/chat/completions", json=payload)
            except httpx.HTTPError as e:
                last_error = e
                _logger.warning(
                    "LLM API request failed (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
            else:
                if resp.status_code not in _RETRY_STATUSES:
                    break
                _logger.warning(
                    "LLM API returned %d (attempt %d/%d)",
                    resp.status_code, attempt + 1, _MAX_RETRIES,
                )
            if attempt < _MAX_RETRIES - 1:
                await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))

        if resp is None:
            acc.finalize()
            raise TransportError(f"failed to send request: {last_error}") from last_error

        acc.record_status(resp.status_code)
        if not resp.is_success:
            acc.finalize()
            raise APIError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            acc.finalize()
            raise DecodeError("failed to decode response JSON") from e

        choices = data.get("choices") or []
        if not choices:
            acc.finalize()
            raise DecodeError("no choices in response")
        message = choices[0].get("message") or {}
        content = message.get("content") or ""

        usage = data.get("usage") or {}
        if usage:
            acc.record_usage(usage, completion=True)
        stats = acc.finalize()
        return content, stats

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def start_stream(
        self,
        messages: Sequence[Message],
        cancel: asyncio.Event | None = None,
    ) -> tuple[ChunkStream, RequestStats]:
        """Dispatch a streaming request and start the background reader.

        Raises ``TransportError`` if no response arrives and ``APIError`` on
        a non-2xx status; in both cases no stream is returned.
        """
        cancel = cancel or asyncio.Event()
        payload = self._payload(messages, stream=True)
        acc = self._accumulator()
        request = self._client.build_request(
            "POST", "/chat/completions",
            json=payload,
            headers={"Accept": "text/event-stream"},
        )
        _logger.debug(
            "Streaming request: model=%s messages=%d", self._model, len(messages),
        )

        try:
            resp = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            acc.finalize()
            raise TransportError(f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            acc.finalize()
            raise TransportError(f"failed to send request: {e}") from e

        acc.record_status(resp.status_code)
        if not resp.is_success:
            body = ""
            try:
                body = (await resp.aread()).decode(errors="replace")
            except httpx.HTTPError as e:
                _logger.debug("Could not read error body: %s", e)
            finally:
                await resp.aclose()
            acc.finalize()
            _logger.warning("LLM stream API returned %d", resp.status_code)
            raise APIError(resp.status_code, body)

        queue: asyncio.Queue[StreamChunk] = asyncio.Queue(maxsize=_CHANNEL_SIZE)
        task = asyncio.create_task(
            self._read_stream(resp, queue, acc, cancel),
            name="chat-stream-reader",
        )
        return ChunkStream(queue, task, cancel, acc.stats), acc.stats

    async def _read_stream(
        self,
        resp: httpx.Response,
        queue: asyncio.Queue[StreamChunk],
        acc: StatsAccumulator,
        cancel: asyncio.Event,
    ) -> None:
        """Producer: parse SSE lines into chunks until a terminal condition."""
        terminal: StreamChunk | None = DoneChunk()
        try:
            async for line in resp.aiter_lines():
                if cancel.is_set():
                    terminal = None
                    break
                event = sse.parse_line(line)
                if event is None:
                    continue
                if event is sse.SSE_DONE:
                    break

                usage = sse.extract_usage(event)
                if usage:
                    acc.record_usage(usage)

                text = sse.extract_delta(event)
                if not text:
                    continue
                if acc.record_token():
                    _logger.debug(
                        "First token after %.3fs", acc.stats.time_to_first_token,
                    )
                await queue.put(ContentChunk(text))
        except (httpx.HTTPError, httpx.StreamError) as e:
            _logger.warning("Stream read error: %s", e)
            terminal = ErrorChunk(_read_error(e))
        except Exception as e:
            _logger.exception("Unexpected failure in stream reader")
            terminal = ErrorChunk(_read_error(e))
        finally:
            acc.finalize()
            await resp.aclose()

        # Stats are final before the terminal chunk is handed over
        if terminal is not None:
            await queue.put(terminal)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def _read_error(cause: BaseException) -> StreamReadError:
    err = StreamReadError(f"stream read error: {cause}")
    err.__cause__ = cause
    return err
