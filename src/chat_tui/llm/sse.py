"""Line-level parsing of OpenAI-style server-sent-event bodies.

Only ``data:`` lines carry payloads.  The literal ``[DONE]`` payload ends
the stream; every other payload is JSON.  Malformed payloads are skipped
by returning ``None`` rather than raising.
"""

from __future__ import annotations

import json
import logging
from typing import Any

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class _Done:
    """Marker returned by :func:`parse_line` for the termination sentinel."""

    def __repr__(self) -> str:
        return "SSE_DONE"


SSE_DONE = _Done()


def parse_line(line: str) -> dict[str, Any] | _Done | None:
    """Parse one body line.

    Returns the decoded JSON object, ``SSE_DONE`` for the sentinel, or
    ``None`` for blank, non-data and undecodable lines.
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):].strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return SSE_DONE
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        _logger.debug("Skipping malformed SSE payload: %.80s", data)
        return None
    if not isinstance(payload, dict):
        _logger.debug("Skipping non-object SSE payload: %.80s", data)
        return None
    return payload


def extract_delta(payload: dict[str, Any]) -> str:
    """Return the text delta of the first choice, or ``""``."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    choice = choices[0]
    if not isinstance(choice, dict):
        return ""
    delta = choice.get("delta") or {}
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def extract_usage(payload: dict[str, Any]) -> dict[str, int] | None:
    usage = payload.get("usage")
    if isinstance(usage, dict) and usage:
        return usage
    return None
