"""Exception hierarchy for chat-tui.

Everything raised on purpose derives from :class:`ChatError` so the
controller can recover from any of them with a single ``except`` clause.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for all chat-tui errors."""


# ---------------------------------------------------------------------------
# Transport / protocol
# ---------------------------------------------------------------------------

class TransportError(ChatError):
    """Connection or timeout failure before any response arrived."""


class APIError(ChatError):
    """The endpoint answered with a non-2xx status."""

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"API error (status {status}): {body}")


class StreamReadError(ChatError):
    """The transport failed while the response body was being read."""


class DecodeError(ChatError):
    """A response payload could not be decoded."""


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class InvalidTransition(ChatError):
    """An operation was attempted in a phase that does not allow it."""


class NothingToDelete(ChatError):
    """The history holds no turn to remove."""

    def __init__(self, message: str = "no messages to delete") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class CommandError(ChatError):
    """A slash command could not be parsed or executed."""


class NotACommand(CommandError):
    def __init__(self) -> None:
        super().__init__("not a command")


class EmptyCommand(CommandError):
    def __init__(self) -> None:
        super().__init__("empty command")


class UnknownCommand(CommandError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"unknown command: /{name} (type /help for available commands)"
        )


class CommandUsageError(CommandError):
    """A command was invoked incorrectly."""


class ArityError(CommandUsageError):
    """Too few or too many arguments."""


class InvalidArgument(CommandUsageError):
    """An argument could not be parsed."""


class OutOfRange(CommandUsageError):
    """A numeric argument parsed but lies outside its allowed range."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(ChatError):
    """Saving, loading or exporting a conversation failed."""
