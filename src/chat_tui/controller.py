"""Interaction controller: the chat state machine.

    user text ──► command?  ──► CommandProcessor ──► IDLE | ERROR
                  └─ no ──► append user ──► start_stream ──► STREAMING
    STREAMING + Content ──► append fragment
    STREAMING + Done    ──► commit reply, record stats ──► IDLE
    STREAMING + Error   ──► abandon reply ──► ERROR
    STREAMING + cancel  ──► abandon reply ──► IDLE (with a notice)

The controller handles one transition at a time.  A turn runs in its own
task so :meth:`cancel` (e.g. from a SIGINT handler) can interrupt it; the
caller of :meth:`submit` simply waits for that task.  Everything the UI
needs is published on the :class:`EventBus`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable

from chat_tui.commands import Action, Clipboard, CommandProcessor, UIFlags, is_command
from chat_tui.config import ChatConfig
from chat_tui.conversation import ConversationState, Phase
from chat_tui.errors import ChatError, InvalidTransition
from chat_tui.events.bus import EventBus
from chat_tui.llm.base import ChatBackend
from chat_tui.llm.client import ChunkStream, OpenAICompatClient
from chat_tui.llm.stats import SessionUsage
from chat_tui.types import (
    ChatEvent,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    EventType,
    Message,
    RequestStats,
)

_logger = logging.getLogger(__name__)

BackendFactory = Callable[[ChatConfig], ChatBackend]
ConfigLoader = Callable[[], ChatConfig]


class ControllerState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    ERROR = "error"


class InteractionController:
    """Sequences user input, requests, stream chunks and cancellation.

    Parameters
    ----------
    config:
        Initial configuration.
    backend:
        Pre-built backend.  If ``None``, one is made with *backend_factory*.
    event_bus:
        Bus the presentation layer subscribes to (optional).
    backend_factory:
        Builds a backend from a config; used again on reload.
    config_loader:
        Returns fresh configuration for ``/reload`` (optional).
    clipboard:
        Clipboard writer for ``/copy`` (optional).
    """

    def __init__(
        self,
        config: ChatConfig,
        backend: ChatBackend | None = None,
        event_bus: EventBus | None = None,
        backend_factory: BackendFactory = OpenAICompatClient,
        config_loader: ConfigLoader | None = None,
        clipboard: Clipboard | None = None,
    ) -> None:
        self._config = config
        self._backend_factory = backend_factory
        self._backend = backend or backend_factory(config)
        self._config_loader = config_loader
        self.events = event_bus or EventBus()

        self.state = ConversationState(config.system_prompt)
        self.flags = UIFlags(show_stats=config.ui.show_stats, debug=config.debug.verbose)
        self.usage = SessionUsage()
        self.commands = CommandProcessor(
            self.state, lambda: self._backend, self.flags, self.usage, clipboard,
        )

        self.status = ControllerState.IDLE
        self.error: BaseException | None = None
        self.last_stats: RequestStats | None = None
        self.exit_requested = False
        # Text the UI should prefill after /edit
        self.pending_edit = ""

        self._turn_task: asyncio.Task[None] | None = None
        self._cancel_token: asyncio.Event | None = None
        self._cancel_requested = False
        self._retired: list[ChatBackend] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> ChatConfig:
        return self._config

    @property
    def backend(self) -> ChatBackend:
        return self._backend

    @property
    def messages(self) -> list[Message]:
        return self.state.messages

    @property
    def is_streaming(self) -> bool:
        return self.status == ControllerState.STREAMING

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def submit(self, text: str, stream: bool = True) -> ControllerState:
        """Handle one line of user input and return the resulting state.

        Chat errors never escape; they leave the controller in ``ERROR``
        with :attr:`error` set.  Submitting while a turn is streaming is a
        programming error and raises ``InvalidTransition``.
        """
        if self.is_streaming:
            raise InvalidTransition("a reply is still streaming")
        text = text.strip()
        if not text:
            return self.status

        if is_command(text):
            await self._run_command(text)
            return self.status

        self.state.append_user(text)
        await self._emit(EventType.HISTORY_CHANGED)
        if stream:
            await self._run_turn()
        else:
            await self._run_blocking_turn()
        return self.status

    def cancel(self) -> bool:
        """Cancel the streaming turn, if any.  Safe to call from signal handlers.

        Returns ``True`` when a turn was cancelled.
        """
        task = self._turn_task
        if task is None or task.done() or self._cancel_requested:
            return False
        _logger.debug("Cancellation requested")
        self._cancel_requested = True
        if self._cancel_token is not None:
            self._cancel_token.set()
        task.cancel()
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _run_command(self, line: str) -> None:
        try:
            result = self.commands.execute(line)
        except ChatError as e:
            await self._fail(e)
            return

        self._clear_error()
        if result.message:
            await self._emit(EventType.NOTICE, {"message": result.message})

        if result.action == Action.RELOAD:
            await self.reload_config()
        elif result.action == Action.RETRY:
            await self._emit(EventType.HISTORY_CHANGED)
            await self._run_turn()
        elif result.action == Action.EDIT:
            self.pending_edit = result.text
            await self._emit(EventType.HISTORY_CHANGED, {"edit": result.text})
        elif result.action == Action.EXIT:
            self.exit_requested = True
        else:
            await self._emit(EventType.HISTORY_CHANGED)

    # ------------------------------------------------------------------
    # Config reload
    # ------------------------------------------------------------------

    async def reload_config(self, config: ChatConfig | None = None) -> None:
        """Swap in a backend built from fresh config.

        The conversation and any in-flight stream are left alone; a backend
        replaced mid-stream is closed once that stream has ended.
        """
        if config is None:
            if self._config_loader is None:
                await self._fail(ChatError("config reload is not available"))
                return
            try:
                config = self._config_loader()
            except Exception as e:
                _logger.warning("Config reload failed: %s", e)
                await self._fail(ChatError(f"failed to reload config: {e}"))
                return

        new_backend = self._backend_factory(config)
        old_backend = self._backend
        self._config, self._backend = config, new_backend
        if self._turn_task is not None and not self._turn_task.done():
            self._retired.append(old_backend)
        elif old_backend is not new_backend:
            await old_backend.aclose()

        _logger.info("Config reloaded: model=%s base_url=%s", config.model, config.base_url)
        if self.status == ControllerState.ERROR:
            self._clear_error()
        await self._emit(EventType.CONFIG_RELOADED, {
            "model": config.model,
            "base_url": config.base_url,
        })

    # ------------------------------------------------------------------
    # Streaming turn
    # ------------------------------------------------------------------

    async def _run_turn(self) -> None:
        """Run one streaming turn in its own task and wait for it."""
        self.status = ControllerState.STREAMING
        self._clear_error(keep_status=True)
        self._cancel_requested = False
        task = asyncio.create_task(self._stream_turn(), name="chat-turn")
        self._turn_task = task
        try:
            await asyncio.wait([task])
            if task.cancelled() and self.status == ControllerState.STREAMING:
                # Cancelled before the turn got to run
                await self._on_cancelled()
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.wait([task])
            raise
        finally:
            self._turn_task = None
            self._cancel_requested = False
            await self._close_retired()

    async def _stream_turn(self) -> None:
        backend = self._backend
        cancel = asyncio.Event()
        self._cancel_token = cancel
        stream: ChunkStream | None = None
        try:
            await self._emit(EventType.TURN_STARTED, {"model": backend.model})
            stream, stats = await backend.start_stream(self.state.messages, cancel=cancel)
            self.state.begin_streaming(stats)
            async for chunk in stream:
                if isinstance(chunk, ContentChunk):
                    self.state.append_stream_fragment(chunk.text)
                    await self._emit(EventType.STREAM_FRAGMENT, {"text": chunk.text})
                elif isinstance(chunk, DoneChunk):
                    await self._complete(stream.stats)
                elif isinstance(chunk, ErrorChunk):
                    await self._fail(chunk.error)
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            await self._on_cancelled()
        except ChatError as e:
            await self._fail(e)
        except Exception as e:
            _logger.exception("Unexpected failure during streaming turn")
            await self._fail(ChatError(f"{type(e).__name__}: {e}"))
        finally:
            cancel.set()
            self._cancel_token = None
            if stream is not None:
                await stream.aclose()

    async def _run_blocking_turn(self) -> None:
        """Non-streaming variant: one request, the reply arrives whole."""
        self.status = ControllerState.STREAMING
        self._clear_error(keep_status=True)
        backend = self._backend
        try:
            await self._emit(EventType.TURN_STARTED, {"model": backend.model})
            content, stats = await backend.chat(self.state.messages)
        except ChatError as e:
            await self._fail(e)
            return
        self.state.begin_streaming(stats)
        if content:
            self.state.append_stream_fragment(content)
            await self._emit(EventType.STREAM_FRAGMENT, {"text": content})
        await self._complete(stats)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _complete(self, stats: RequestStats) -> None:
        committed = self.state.commit_streaming()
        self.last_stats = stats
        self.usage.add(stats)
        self.status = ControllerState.IDLE
        _logger.debug("Turn complete: %s", stats.compact_summary())
        await self._emit(EventType.STREAM_DONE, {
            "stats": stats,
            "content": committed.content if committed else "",
        })

    async def _fail(self, error: BaseException) -> None:
        if self.state.phase == Phase.STREAMING:
            self.state.abandon_streaming()
        self.state.record_error(error)
        self.error = error
        self.status = ControllerState.ERROR
        _logger.debug("Entered error state: %s %s", error, self.state.snapshot())
        await self._emit(EventType.ERROR, {"error": error, "message": str(error)})

    async def _on_cancelled(self) -> None:
        if self.state.phase == Phase.STREAMING:
            self.state.abandon_streaming()
        self.status = ControllerState.IDLE
        _logger.debug("Turn cancelled")
        await self._emit(EventType.STREAM_CANCELLED, {"message": "streaming cancelled"})

    def _clear_error(self, keep_status: bool = False) -> None:
        self.error = None
        if not keep_status:
            self.status = ControllerState.IDLE
            self.state.clear_error()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _close_retired(self) -> None:
        retired, self._retired = self._retired, []
        for backend in retired:
            await backend.aclose()

    async def aclose(self) -> None:
        """Cancel any running turn and close all backends."""
        task = self._turn_task
        if task is not None and not task.done():
            self.cancel()
            await asyncio.wait([task])
        await self._close_retired()
        await self._backend.aclose()

    async def _emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        await self.events.emit(ChatEvent(type=event_type, data=data or {}))
