"""Server-sent event payloads of the messages stream."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from orchidsproxy.stream_tools import _encode_json


@dataclass
class SSEMessage:
    """One event received from the upstream."""

    type: str = ""
    event: dict[str, Any] | None = None


@dataclass
class ToolCall:
    """A tool call collected from the upstream."""

    id: str = ""
    name: str = ""
    input: str = ""


def format_sse(event: str, data: str) -> str:
    """Frame an event and its data for the wire."""
    return f"event: {event}\ndata: {data}\n\n"


def block_start_event(index: int, content_block: dict[str, Any]) -> str:
    return _encode_json(
        {"type": "content_block_start", "index": index, "content_block": content_block}
    )


def block_delta_event(index: int, delta: dict[str, Any]) -> str:
    return _encode_json({"type": "content_block_delta", "index": index, "delta": delta})


def block_stop_event(index: int) -> str:
    return _encode_json({"type": "content_block_stop", "index": index})


def tool_use_events(index: int, tool_id: str, name: str, input_json: str) -> list[tuple[str, str]]:
    """Start, input delta and stop events of a complete tool_use block."""
    partial = input_json.strip() or "{}"
    return [
        (
            "content_block_start",
            block_start_event(index, {"type": "tool_use", "id": tool_id, "name": name, "input": {}}),
        ),
        (
            "content_block_delta",
            block_delta_event(index, {"type": "input_json_delta", "partial_json": partial}),
        ),
        ("content_block_stop", block_stop_event(index)),
    ]


def text_block_events(index: int, text: str) -> list[tuple[str, str]]:
    """Start, text delta and stop events of a complete text block."""
    return [
        ("content_block_start", block_start_event(index, {"type": "text", "text": ""})),
        ("content_block_delta", block_delta_event(index, {"type": "text_delta", "text": text})),
        ("content_block_stop", block_stop_event(index)),
    ]


def _is_wide(ch: str) -> bool:
    code = ord(ch)
    return (
        0x2E80 <= code <= 0x9FFF
        or 0xAC00 <= code <= 0xD7AF
        or 0xF900 <= code <= 0xFAFF
        or 0xFF00 <= code <= 0xFFEF
        or 0x20000 <= code <= 0x2FFFF
    )


def estimate_text_tokens(text: str) -> int:
    """Rough token count: one per CJK character, one per four other characters."""
    if not text:
        return 0
    wide = sum(1 for ch in text if _is_wide(ch))
    other = len(text) - wide
    return wide + math.ceil(other / 4)