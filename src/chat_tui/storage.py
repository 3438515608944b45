"""Save, load and export conversations."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Sequence

from chat_tui.errors import StorageError
from chat_tui.types import Message, Role

_logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1

_ROLE_HEADINGS = {
    Role.SYSTEM: "System",
    Role.USER: "You",
    Role.ASSISTANT: "Assistant",
}


def save_conversation(
    path: str | Path,
    messages: Sequence[Message],
    model: str = "",
    system_prompt: str = "",
) -> Path:
    """Write the conversation as JSON."""
    out = Path(path).expanduser()
    doc: dict[str, Any] = {
        "version": _FORMAT_VERSION,
        "model": model,
        "system_prompt": system_prompt,
        "saved_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        "messages": [m.to_dict() for m in messages],
    }
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(doc, indent=2, ensure_ascii=False))
    except OSError as e:
        raise StorageError(f"failed to save conversation: {e}") from e
    _logger.info("Saved %d messages to %s", len(messages), out)
    return out


def load_conversation(path: str | Path) -> list[Message]:
    """Read a conversation written by :func:`save_conversation`."""
    src = Path(path).expanduser()
    try:
        doc = json.loads(src.read_text())
    except OSError as e:
        raise StorageError(f"failed to load conversation: {e}") from e
    except json.JSONDecodeError as e:
        raise StorageError(f"not a conversation file: {src}") from e

    raw_messages = doc.get("messages") if isinstance(doc, dict) else None
    if not isinstance(raw_messages, list):
        raise StorageError(f"not a conversation file: {src}")
    try:
        messages = [Message.from_dict(m) for m in raw_messages]
    except (KeyError, TypeError, ValueError) as e:
        raise StorageError(f"invalid message in {src}: {e}") from e
    _logger.info("Loaded %d messages from %s", len(messages), src)
    return messages


def default_export_path() -> Path:
    return Path(time.strftime("chat-export-%Y%m%d-%H%M%S.md"))


def render_markdown(messages: Sequence[Message], title: str = "Chat export") -> str:
    lines = [f"# {title}", ""]
    for msg in messages:
        lines.append(f"## {_ROLE_HEADINGS[msg.role]}")
        lines.append("")
        lines.append(msg.content)
        lines.append("")
    return "\n".join(lines)


def export_markdown(
    messages: Sequence[Message],
    path: str | Path | None = None,
) -> Path:
    """Write the conversation as a Markdown transcript."""
    out = Path(path).expanduser() if path else default_export_path()
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(render_markdown(messages))
    except OSError as e:
        raise StorageError(f"failed to export conversation: {e}") from e
    return out
