"""Tests for OpenAICompatClient with mocked httpx transports."""

from __future__ import annotations

import asyncio
import json
import logging
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from chat_tui.config import ChatConfig, PricingConfig
from chat_tui.errors import APIError, DecodeError, StreamReadError, TransportError
from chat_tui.llm.client import OpenAICompatClient
from chat_tui.types import ContentChunk, DoneChunk, ErrorChunk, Message, Role


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig(
        api_key="test-key",
        base_url="http://test/v1/",
        model="small-model",
        temperature=0.5,
        max_tokens=256,
    )


@pytest.fixture
def messages() -> list[Message]:
    return [
        Message(Role.SYSTEM, "be brief"),
        Message(Role.USER, "Hello"),
    ]


def _sse(*payloads: dict | str) -> bytes:
    """Build an SSE body; ``str`` payloads are sent verbatim."""
    out = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode()


def _delta(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def _client(config: ChatConfig, handler) -> OpenAICompatClient:
    return OpenAICompatClient(config, transport=httpx.MockTransport(handler))


async def _collect(stream) -> list:
    return [chunk async for chunk in stream]


class FailingStream(httpx.AsyncByteStream):
    """Yields some bytes, then fails like a dropped connection."""

    def __init__(self, body: bytes) -> None:
        self.body = body
        self.closed = False

    async def __aiter__(self):
        yield self.body
        raise httpx.ReadError("connection reset")

    async def aclose(self) -> None:
        self.closed = True


class HangingStream(httpx.AsyncByteStream):
    """Yields some bytes, then never sends more."""

    def __init__(self, body: bytes) -> None:
        self.body = body
        self.closed = False

    async def __aiter__(self):
        yield self.body
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Tests: streaming
# ---------------------------------------------------------------------------

class TestStartStream:
    async def test_single_token_then_done(self, config, messages):
        body = (
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n'
            b"data: [DONE]\n"
        )
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        chunks = await _collect(stream)

        assert chunks == [ContentChunk("Hi"), DoneChunk()]
        assert stats.output_tokens == 1
        assert stats.post_first_token_tokens_per_sec is None
        assert stats.time_to_first_token is not None
        assert 0 <= stats.time_to_first_token <= stats.total_latency
        assert stats.http_status == 200
        assert stream.finished
        await stream.aclose()
        await client.aclose()

    async def test_first_token_logged_once(self, config, messages, caplog):
        body = _sse(_delta("a"), _delta("b"), "[DONE]")
        client = _client(config, lambda req: httpx.Response(200, content=body))

        with caplog.at_level(logging.DEBUG, logger="chat_tui.llm.client"):
            stream, _ = await client.start_stream(messages)
            await _collect(stream)
        await client.aclose()

        first = [r for r in caplog.records if r.getMessage().startswith("First token after")]
        assert len(first) == 1

    async def test_request_body_and_headers(self, config, messages):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=_sse("[DONE]"))

        client = _client(config, handler)
        stream, _ = await client.start_stream(messages)
        await _collect(stream)
        await client.aclose()

        req = seen[0]
        assert str(req.url) == "http://test/v1/chat/completions"
        assert req.headers["authorization"] == "Bearer test-key"
        assert req.headers["accept"] == "text/event-stream"
        assert json.loads(req.content) == {
            "model": "small-model",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "Hello"},
            ],
            "temperature": 0.5,
            "max_tokens": 256,
            "stream": True,
        }

    async def test_content_chunks_match_non_empty_deltas(self, config, messages):
        body = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            _delta("Hel"),
            _delta(""),
            _delta("lo"),
            {"choices": []},
            _delta(" there"),
            "[DONE]",
        )
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        chunks = await _collect(stream)
        await client.aclose()

        assert [c.text for c in chunks[:-1]] == ["Hel", "lo", " there"]
        assert isinstance(chunks[-1], DoneChunk)
        assert stats.output_tokens == 3

    async def test_malformed_and_comment_lines_skipped(self, config, messages):
        body = (
            b": keep-alive\n\n"
            b"data: {broken\n\n"
            b"event: ping\n\n"
            + _sse(_delta("ok"), "[DONE]")
        )
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        chunks = await _collect(stream)
        await client.aclose()

        assert chunks == [ContentChunk("ok"), DoneChunk()]
        assert stats.output_tokens == 1

    async def test_end_of_body_without_sentinel(self, config, messages):
        body = _sse(_delta("a"), _delta("b"))
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        chunks = await _collect(stream)
        await client.aclose()

        assert chunks == [ContentChunk("a"), ContentChunk("b"), DoneChunk()]
        assert stats.output_tokens == 2
        assert stats.post_first_token_tokens_per_sec is None or (
            stats.post_first_token_tokens_per_sec > 0
        )

    async def test_lines_after_sentinel_ignored(self, config, messages):
        body = _sse(_delta("a"), "[DONE]", _delta("late"))
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        chunks = await _collect(stream)
        await client.aclose()

        assert chunks == [ContentChunk("a"), DoneChunk()]
        assert stats.output_tokens == 1

    async def test_usage_payload_sets_input_tokens(self, config, messages):
        body = _sse(
            _delta("x"),
            {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 1}},
            "[DONE]",
        )
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        await _collect(stream)
        await client.aclose()

        assert stats.input_tokens == 7
        assert stats.output_tokens == 1
        assert stats.total_tokens == 8

    async def test_cost_estimate_with_pricing(self, messages):
        config = ChatConfig(
            base_url="http://test/v1",
            pricing=PricingConfig(input_per_million=2.0, output_per_million=4.0),
        )
        body = _sse(
            _delta("x"),
            {"choices": [], "usage": {"prompt_tokens": 500_000}},
            "[DONE]",
        )
        client = _client(config, lambda req: httpx.Response(200, content=body))

        stream, stats = await client.start_stream(messages)
        await _collect(stream)
        await client.aclose()

        assert stats.cost_estimate == pytest.approx(1.000004)

    async def test_non_2xx_raises_api_error(self, config, messages):
        client = _client(
            config, lambda req: httpx.Response(401, text="invalid api key"),
        )
        with pytest.raises(APIError) as exc_info:
            await client.start_stream(messages)
        await client.aclose()

        assert exc_info.value.status == 401
        assert exc_info.value.body == "invalid api key"
        assert "status 401" in str(exc_info.value)

    async def test_connect_failure_raises_transport_error(self, config, messages):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(config, handler)
        with pytest.raises(TransportError, match="connection refused"):
            await client.start_stream(messages)
        await client.aclose()

    async def test_timeout_raises_transport_error(self, config, messages):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = _client(config, handler)
        with pytest.raises(TransportError, match="timed out"):
            await client.start_stream(messages)
        await client.aclose()

    async def test_mid_stream_read_error(self, config, messages):
        body_stream = FailingStream(_sse(_delta("part")))
        client = _client(
            config, lambda req: httpx.Response(200, stream=body_stream),
        )

        stream, stats = await client.start_stream(messages)
        chunks = await _collect(stream)
        await client.aclose()

        assert chunks[0] == ContentChunk("part")
        assert len(chunks) == 2
        assert isinstance(chunks[1], ErrorChunk)
        assert isinstance(chunks[1].error, StreamReadError)
        assert isinstance(chunks[1].error.__cause__, httpx.ReadError)
        assert stats.output_tokens == 1
        assert stats.end_time >= stats.start_time
        assert body_stream.closed

    async def test_abandoned_stream_releases_response(self, config, messages):
        body_stream = HangingStream(_sse(_delta("one")))
        client = _client(
            config, lambda req: httpx.Response(200, stream=body_stream),
        )
        cancel = asyncio.Event()

        stream, stats = await client.start_stream(messages, cancel=cancel)
        first = await stream.__anext__()
        assert first == ContentChunk("one")

        await stream.aclose()
        await client.aclose()

        assert cancel.is_set()
        assert body_stream.closed
        assert stream.finished
        assert stats.output_tokens == 1

    async def test_context_manager_closes(self, config, messages):
        body_stream = HangingStream(_sse(_delta("one")))
        client = _client(
            config, lambda req: httpx.Response(200, stream=body_stream),
        )

        stream, _ = await client.start_stream(messages)
        async with stream:
            async for chunk in stream:
                assert chunk == ContentChunk("one")
                break
        await client.aclose()

        assert body_stream.closed

    async def test_iteration_ends_after_terminal(self, config, messages):
        client = _client(
            config, lambda req: httpx.Response(200, content=_sse("[DONE]")),
        )
        stream, _ = await client.start_stream(messages)
        assert await _collect(stream) == [DoneChunk()]
        assert await _collect(stream) == []
        await client.aclose()


# ---------------------------------------------------------------------------
# Tests: non-streaming chat
# ---------------------------------------------------------------------------

def _completion(content: str = "Hello!") -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
    }


class TestChat:
    async def test_basic_chat(self, config, messages):
        seen: list[dict] = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_completion("World"))

        client = _client(config, handler)
        content, stats = await client.chat(messages)
        await client.aclose()

        assert content == "World"
        assert seen[0]["stream"] is False
        assert stats.input_tokens == 10
        assert stats.output_tokens == 20
        assert stats.total_tokens == 30
        assert stats.http_status == 200

    async def test_retries_server_errors(self, config, messages):
        responses = [
            httpx.Response(503, text="busy"),
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, json=_completion("finally")),
        ]
        client = _client(config, lambda req: responses.pop(0))

        with patch("chat_tui.llm.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            content, _ = await client.chat(messages)
        await client.aclose()

        assert content == "finally"
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1, 2]

    async def test_gives_up_after_max_retries(self, config, messages):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        client = _client(config, handler)
        with patch("chat_tui.llm.client.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(APIError) as exc_info:
                await client.chat(messages)
        await client.aclose()

        assert len(calls) == 3
        assert exc_info.value.status == 500

    async def test_client_error_not_retried(self, config, messages):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad request")

        client = _client(config, handler)
        with pytest.raises(APIError):
            await client.chat(messages)
        await client.aclose()

        assert len(calls) == 1

    async def test_transport_failure(self, config, messages):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(config, handler)
        with patch("chat_tui.llm.client.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransportError):
                await client.chat(messages)
        await client.aclose()

    async def test_bad_json(self, config, messages):
        client = _client(config, lambda req: httpx.Response(200, text="not json"))
        with pytest.raises(DecodeError):
            await client.chat(messages)
        await client.aclose()

    async def test_no_choices(self, config, messages):
        client = _client(config, lambda req: httpx.Response(200, json={"choices": []}))
        with pytest.raises(DecodeError, match="no choices"):
            await client.chat(messages)
        await client.aclose()


class TestSettings:
    async def test_temperature_bounds(self, config):
        client = OpenAICompatClient(config)
        client.temperature = 1.5
        assert client.temperature == 1.5
        with pytest.raises(ValueError):
            client.temperature = 2.5
        assert client.temperature == 1.5
        await client.aclose()

    async def test_model_setter(self, config):
        client = OpenAICompatClient(config)
        client.model = "large-model"
        assert client.model == "large-model"
        assert client.max_tokens == 256
        await client.aclose()

    async def test_base_url_trailing_slash(self, config):
        client = OpenAICompatClient(config)
        assert client.base_url == "http://test/v1"
        await client.aclose()
