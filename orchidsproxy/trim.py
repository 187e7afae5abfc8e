"""Splitting and shrinking of tool results in conversation history."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any

from orchidsproxy.messages import Message

logger = logging.getLogger(__name__)


def _clone_message(msg: Message) -> Message:
    blocks = msg.content.blocks
    if blocks is None:
        return replace(msg, content=replace(msg.content))
    return replace(msg, content=replace(msg.content, blocks=[replace(b) for b in blocks]))


def _clone_messages(messages: list[Message]) -> list[Message]:
    return [_clone_message(m) for m in messages]


def _tool_result_refs(messages: list[Message]) -> list[tuple[int, int]]:
    return [
        (i, j)
        for i, msg in enumerate(messages)
        if msg.content.blocks is not None
        for j, block in enumerate(msg.content.blocks)
        if block.type == "tool_result"
    ]


def _filter_tool_results(messages: list[Message], keep: set[tuple[int, int]]) -> list[Message]:
    kept: list[Message] = []
    for i, msg in enumerate(_clone_messages(messages)):
        blocks = msg.content.blocks
        if blocks is None:
            kept.append(msg)
            continue
        msg.content.blocks = [
            block
            for j, block in enumerate(blocks)
            if block.type != "tool_result" or (i, j) in keep
        ]
        if not msg.content.text and not msg.content.blocks:
            continue
        kept.append(msg)
    return kept


def split_tool_results(messages: list[Message], batch_size: int) -> tuple[list[list[Message]], int]:
    """Split history into batches that each carry at most batch_size tool results.

    Returns the batches and the total number of tool results.
    """
    if batch_size <= 0:
        return [_clone_messages(messages)], 0
    refs = _tool_result_refs(messages)
    total = len(refs)
    if total <= batch_size:
        return [_clone_messages(messages)], total
    batches = [
        _filter_tool_results(messages, set(refs[start:start + batch_size]))
        for start in range(0, total, batch_size)
    ]
    return batches, total


def truncate_utf8(data: bytes, max_len: int) -> int:
    """Largest index <= max_len that does not split a UTF-8 sequence in data."""
    if max_len >= len(data):
        return len(data)
    while max_len > 0 and (data[max_len] & 0xC0) == 0x80:
        max_len -= 1
    return max_len


def _compact_json(value: Any) -> str:
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True)
    for ch, esc in (("<", "\\u003c"), (">", "\\u003e"), ("&", "\\u0026"),
                    ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(ch, esc)
    return text


def _truncate_text(raw: bytes, max_len: int) -> str:
    cut = truncate_utf8(raw, max_len)
    return raw[:cut].decode("utf-8") + f"\n... [truncated {len(raw) - cut} bytes]"


def compress_tool_results(messages: list[Message], max_len: int) -> tuple[list[Message], int]:
    """Truncate user tool results longer than max_len bytes.

    Returns new messages and how many blocks were shortened; the input is left alone.
    """
    if max_len <= 0:
        return messages, 0
    compressed = _clone_messages(messages)
    count = 0
    for msg in compressed:
        if msg.role != "user" or msg.content.blocks is None:
            continue
        for block in msg.content.blocks:
            if block.type != "tool_result":
                continue
            content = block.content
            if isinstance(content, str):
                raw = content.encode("utf-8")
            elif isinstance(content, list):
                try:
                    raw = _compact_json(content).encode("utf-8")
                except (TypeError, ValueError):
                    continue
            else:
                continue
            if len(raw) > max_len:
                block.content = _truncate_text(raw, max_len)
                count += 1
    if count:
        logger.info("Context compressed: %d blocks", count)
    return compressed, count