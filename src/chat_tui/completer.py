"""Tab-completion for slash commands in the REPL."""

from __future__ import annotations

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from chat_tui.commands import COMMAND_PREFIX, get_suggestions


class SlashCommandCompleter(Completer):
    """Completes command names after a leading ``/``."""

    def get_completions(self, document: Document, complete_event):
        text = document.text_before_cursor
        if not text.startswith(COMMAND_PREFIX) or " " in text:
            return

        # Replace everything typed after the slash
        start_position = -(len(text) - len(COMMAND_PREFIX))
        for cmd in get_suggestions(text):
            yield Completion(
                cmd.name,
                start_position=start_position,
                display=cmd.usage,
                display_meta=cmd.description,
            )
