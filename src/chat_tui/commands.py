"""Slash commands: parsing, catalog and execution.

A command line starts with ``/``; the name is case-insensitive and the
arguments are whitespace separated.  :class:`CommandProcessor` applies each
command synchronously to the conversation, the backend settings or the UI
flags.  Work that needs the event loop (reloading config, re-streaming a
reply, leaving the app) is requested through :class:`CommandResult.action`
and carried out by the controller.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable

from chat_tui import storage
from chat_tui.conversation import ConversationState
from chat_tui.errors import (
    ArityError,
    CommandUsageError,
    EmptyCommand,
    InvalidArgument,
    NotACommand,
    OutOfRange,
    UnknownCommand,
)
from chat_tui.llm.base import ChatBackend
from chat_tui.llm.stats import SessionUsage

_logger = logging.getLogger(__name__)

COMMAND_PREFIX = "/"

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0


@dataclass(frozen=True)
class CommandDef:
    name: str
    description: str
    usage: str


AVAILABLE_COMMANDS: list[CommandDef] = [
    CommandDef("help", "Show help message", "/help"),
    CommandDef("new", "Start a new conversation", "/new"),
    CommandDef("clear", "Clear chat history", "/clear"),
    CommandDef("reload", "Reload configuration", "/reload"),
    CommandDef("temp", "Set temperature", "/temp <0-2>"),
    CommandDef("system", "Set system prompt", "/system <text>"),
    CommandDef("delete", "Delete last turn", "/delete"),
    CommandDef("save", "Save conversation", "/save <file>"),
    CommandDef("load", "Load conversation", "/load <file>"),
    CommandDef("tokens", "Show token usage", "/tokens"),
    CommandDef("cost", "Show estimated cost", "/cost"),
    CommandDef("export", "Export as markdown", "/export [file]"),
    CommandDef("stats", "Toggle stats panel", "/stats"),
    CommandDef("debug", "Toggle debug mode", "/debug"),
    CommandDef("retry", "Retry last message", "/retry"),
    CommandDef("copy", "Copy last response", "/copy"),
    CommandDef("edit", "Edit last message", "/edit"),
    CommandDef("multiline", "Toggle multiline mode", "/multiline"),
    CommandDef("exit", "Exit the application", "/exit"),
]

_ALIASES = {"quit": "exit", "q": "exit"}


@dataclass
class Command:
    """A parsed command line."""

    name: str
    args: list[str] = field(default_factory=list)

    def require_args(self, minimum: int, maximum: int | None = None) -> None:
        if len(self.args) < minimum:
            raise ArityError(
                f"command /{self.name} requires at least {minimum} argument(s)"
            )
        if maximum is not None and len(self.args) > maximum:
            raise ArityError(
                f"command /{self.name} accepts at most {maximum} argument(s)"
            )

    def float_arg(self, index: int) -> float:
        self.require_args(index + 1)
        raw = self.args[index]
        try:
            return float(raw)
        except ValueError:
            raise InvalidArgument(f"invalid number: {raw}") from None

    def rest(self, start: int = 0) -> str:
        return " ".join(self.args[start:])


def is_command(text: str) -> bool:
    return text.strip().startswith(COMMAND_PREFIX)


def parse_command(text: str) -> Command:
    """Parse ``/name arg ...`` into a :class:`Command`."""
    text = text.strip()
    if not text.startswith(COMMAND_PREFIX):
        raise NotACommand()
    parts = text[len(COMMAND_PREFIX):].split()
    if not parts:
        raise EmptyCommand()
    return Command(name=parts[0].lower(), args=parts[1:])


def get_suggestions(text: str) -> list[CommandDef]:
    """Catalog entries whose name starts with what has been typed so far."""
    text = text.strip()
    if not text.startswith(COMMAND_PREFIX) or " " in text:
        return []
    query = text[len(COMMAND_PREFIX):].lower()
    return [c for c in AVAILABLE_COMMANDS if c.name.startswith(query)]


def command_help() -> str:
    width = max(len(c.usage) for c in AVAILABLE_COMMANDS)
    lines = ["Available Commands:"]
    for c in AVAILABLE_COMMANDS:
        lines.append(f"{c.usage.ljust(width)}  - {c.description}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class Action(enum.Enum):
    """Follow-up the controller must perform after a command."""

    NONE = "none"
    RELOAD = "reload"
    RETRY = "retry"
    EDIT = "edit"
    EXIT = "exit"


@dataclass
class CommandResult:
    action: Action = Action.NONE
    message: str = ""
    # Payload for RETRY (text being resent) and EDIT (text to prefill)
    text: str = ""


@dataclass
class UIFlags:
    """Presentation toggles owned by the controller."""

    show_stats: bool = True
    debug: bool = False
    multiline: bool = False


Clipboard = Callable[[str], None]


class CommandProcessor:
    """Executes parsed commands against the chat state.

    Parameters
    ----------
    state:
        The conversation to mutate.
    backend:
        Callable returning the current backend.  A callable rather than the
        backend itself because ``/reload`` swaps the backend.
    flags:
        UI visibility toggles.
    usage:
        Session token/cost totals.
    clipboard:
        Callable that puts text on the system clipboard (optional).
    """

    def __init__(
        self,
        state: ConversationState,
        backend: Callable[[], ChatBackend],
        flags: UIFlags,
        usage: SessionUsage,
        clipboard: Clipboard | None = None,
    ) -> None:
        self._state = state
        self._backend = backend
        self._flags = flags
        self._usage = usage
        self._clipboard = clipboard
        self._handlers: dict[str, Callable[[Command], CommandResult]] = {
            "help": self._help,
            "new": self._new,
            "clear": self._new,
            "reload": self._reload,
            "temp": self._temp,
            "system": self._system,
            "delete": self._delete,
            "save": self._save,
            "load": self._load,
            "tokens": self._tokens,
            "cost": self._cost,
            "export": self._export,
            "stats": self._stats,
            "debug": self._debug,
            "retry": self._retry,
            "copy": self._copy,
            "edit": self._edit,
            "multiline": self._multiline,
            "exit": self._exit,
        }

    def execute(self, line: str) -> CommandResult:
        """Parse and run one command line.

        Raises a ``CommandError`` subclass (or ``NothingToDelete`` /
        ``StorageError``) without mutating anything when the command fails.
        """
        cmd = parse_command(line)
        name = _ALIASES.get(cmd.name, cmd.name)
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownCommand(cmd.name)
        _logger.debug("Executing /%s %s", name, cmd.args)
        return handler(cmd)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _help(self, cmd: Command) -> CommandResult:
        return CommandResult(message=command_help())

    def _new(self, cmd: Command) -> CommandResult:
        self._state.reset()
        return CommandResult(message="Started a new conversation.")

    def _system(self, cmd: Command) -> CommandResult:
        cmd.require_args(1)
        prompt = cmd.rest()
        self._state.set_system_prompt(prompt)
        return CommandResult(message="System prompt updated.")

    def _delete(self, cmd: Command) -> CommandResult:
        cmd.require_args(0, 0)
        removed = self._state.delete_last_turn()
        return CommandResult(message=f"Deleted {len(removed)} message(s).")

    def _retry(self, cmd: Command) -> CommandResult:
        cmd.require_args(0, 0)
        text = self._state.prepare_retry()
        return CommandResult(action=Action.RETRY, text=text)

    def _edit(self, cmd: Command) -> CommandResult:
        cmd.require_args(0, 0)
        text = self._state.take_last_user()
        return CommandResult(
            action=Action.EDIT, text=text,
            message="Last message removed for editing.",
        )

    # ------------------------------------------------------------------
    # Backend settings
    # ------------------------------------------------------------------

    def _reload(self, cmd: Command) -> CommandResult:
        return CommandResult(action=Action.RELOAD)

    def _temp(self, cmd: Command) -> CommandResult:
        cmd.require_args(1, 1)
        temp = cmd.float_arg(0)
        if not TEMPERATURE_MIN <= temp <= TEMPERATURE_MAX:
            raise OutOfRange(
                f"temperature must be between {TEMPERATURE_MIN:g} and {TEMPERATURE_MAX:g}"
            )
        self._backend().temperature = temp
        return CommandResult(message=f"Temperature set to {temp:.2f}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self, cmd: Command) -> CommandResult:
        cmd.require_args(1, 1)
        path = storage.save_conversation(
            cmd.args[0],
            self._state.messages,
            model=self._backend().model,
            system_prompt=self._state.system_prompt,
        )
        return CommandResult(message=f"Conversation saved to {path}")

    def _load(self, cmd: Command) -> CommandResult:
        cmd.require_args(1, 1)
        messages = storage.load_conversation(cmd.args[0])
        self._state.replace_history(messages)
        return CommandResult(message=f"Loaded {len(messages)} message(s) from {cmd.args[0]}")

    def _export(self, cmd: Command) -> CommandResult:
        cmd.require_args(0, 1)
        target = cmd.args[0] if cmd.args else None
        path = storage.export_markdown(self._state.turn_messages(), target)
        return CommandResult(message=f"Conversation exported to {path}")

    def _copy(self, cmd: Command) -> CommandResult:
        if self._clipboard is None:
            raise CommandUsageError("clipboard is not available")
        last = self._state.last_assistant_message()
        if last is None:
            raise CommandUsageError("no response to copy")
        self._clipboard(last.content)
        return CommandResult(message="Last response copied to clipboard")

    # ------------------------------------------------------------------
    # Usage reporting
    # ------------------------------------------------------------------

    def _tokens(self, cmd: Command) -> CommandResult:
        u = self._usage
        lines = [
            f"Requests: {u.requests}",
            f"Input tokens: {u.input_tokens}",
            f"Output tokens: {u.output_tokens}",
            f"Total tokens: {u.total_tokens}",
        ]
        if u.last is not None:
            lines.append(f"Last request: {u.last.compact_summary()}")
        return CommandResult(message="\n".join(lines))

    def _cost(self, cmd: Command) -> CommandResult:
        if not self._usage.priced:
            return CommandResult(message="Cost estimate unavailable: pricing not configured")
        return CommandResult(
            message=f"Estimated session cost: ${self._usage.cost:.6f} "
            f"({self._usage.requests} request(s))"
        )

    # ------------------------------------------------------------------
    # UI toggles
    # ------------------------------------------------------------------

    def _stats(self, cmd: Command) -> CommandResult:
        self._flags.show_stats = not self._flags.show_stats
        return CommandResult(message=f"Stats {'shown' if self._flags.show_stats else 'hidden'}")

    def _debug(self, cmd: Command) -> CommandResult:
        self._flags.debug = not self._flags.debug
        logging.getLogger("chat_tui").setLevel(
            logging.DEBUG if self._flags.debug else logging.NOTSET
        )
        return CommandResult(message=f"Debug mode {'on' if self._flags.debug else 'off'}")

    def _multiline(self, cmd: Command) -> CommandResult:
        self._flags.multiline = not self._flags.multiline
        mode = "on (Esc+Enter to send)" if self._flags.multiline else "off"
        return CommandResult(message=f"Multiline mode {mode}")

    def _exit(self, cmd: Command) -> CommandResult:
        return CommandResult(action=Action.EXIT)
