"""Helpers for upstream tool calls and events seen while streaming a response."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from orchidsproxy.messages import MessageContent

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF

_STRUCTURED_TOOLS = frozenset({"edit", "write", "bash", "read", "glob", "grep"})
_EN_GREETINGS = frozenset({
    "hi! how can i help you today?",
    "hello! how can i help you today?",
    "hi! how can i help you today!",
    "hello! how can i help you today!",
})


def _fnv1a64(data: bytes) -> int:
    h = _FNV64_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV64_PRIME) & _MASK64
    return h


def _normalize_numbers(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_numbers(v) for v in value]
    return value


def _encode_json(value: Any) -> str:
    """Compact JSON with sorted keys and HTML-sensitive characters escaped."""
    text = json.dumps(
        _normalize_numbers(value), separators=(",", ":"), ensure_ascii=False, sort_keys=True
    )
    for ch, esc in (("<", "\\u003c"), (">", "\\u003e"), ("&", "\\u0026"),
                    ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(ch, esc)
    return text


def _parse_object(data: str) -> dict[str, Any]:
    """Parse a JSON object; null yields an empty object, anything else raises ValueError."""
    value = json.loads(data)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("JSON value is not an object")
    return value


def _nonblank_str(payload: Mapping[str, Any], key: str) -> bool:
    value = payload.get(key)
    return isinstance(value, str) and bool(value.strip())


def stringify_tool_input(value: Any) -> str:
    """Render a tool input as text: strings as they are, other values as JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return _encode_json(value)
    except (TypeError, ValueError):
        return str(value)


def _canonical_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return _encode_json(value)
    except (TypeError, ValueError):
        return str(value)


def sanitize_tool_input(name: str, data: str) -> str:
    """Drop or rename input fields that client-side tools would reject."""
    trimmed = data.strip()
    if not trimmed:
        return data
    try:
        payload = _parse_object(trimmed)
    except ValueError:
        return data

    changed = False

    def map_field(source: str, target: str) -> None:
        nonlocal changed
        if source not in payload:
            return
        value = payload.pop(source)
        payload.setdefault(target, value)
        changed = True

    name_key = name.strip().lower()
    if name_key == "write":
        if "overwrite" in payload:
            del payload["overwrite"]
            changed = True
        map_field("path", "file_path")
    elif name_key in ("edit", "read"):
        map_field("path", "file_path")
    elif name_key == "bash":
        map_field("cmd", "command")

    if not changed:
        return data
    try:
        return _encode_json(payload)
    except (TypeError, ValueError):
        return data


def _extract_path(payload: Mapping[str, Any]) -> str:
    for key in ("file_path", "path"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def side_effect_dedup_key(name_key: str, data: str) -> str:
    """Key identifying a mutating bash/write/edit call, or "" for other calls."""
    if name_key not in ("bash", "write", "edit"):
        return ""
    try:
        payload = _parse_object(data)
    except ValueError:
        return ""
    if name_key == "bash":
        command = payload.get("command")
        command = command if isinstance(command, str) else ""
        if not command.strip():
            cmd = payload.get("cmd")
            command = cmd if isinstance(cmd, str) else ""
        command = command.strip()
        return f"bash:{command}" if command else ""
    path = _extract_path(payload)
    if not path:
        return ""
    if name_key == "write":
        if "content" not in payload:
            return ""
        return f"write:{path}\x00{_canonical_value(payload['content'])}"
    if "old_string" not in payload or "new_string" not in payload:
        return ""
    return (
        f"edit:{path}\x00{_canonical_value(payload['old_string'])}"
        f"\x00{_canonical_value(payload['new_string'])}"
    )


def has_required_tool_input(name: str, data: str) -> bool:
    """Whether a call carries the fields its known tool requires."""
    name_key = name.strip().lower()
    if not name_key:
        return False
    if data == "":
        data = "{}"
    try:
        payload = _parse_object(data)
    except ValueError:
        return name_key not in _STRUCTURED_TOOLS

    has_path = _nonblank_str(payload, "file_path") or _nonblank_str(payload, "path")
    if name_key == "edit":
        return has_path and "old_string" in payload and "new_string" in payload
    if name_key == "write":
        return has_path and "content" in payload
    if name_key == "bash":
        return _nonblank_str(payload, "command") or _nonblank_str(payload, "cmd")
    if name_key == "read":
        return has_path
    return True


def fallback_tool_call_id(tool_name: str, data: str) -> str:
    """Stable id for a tool call that arrived without one."""
    name_key = tool_name.strip().lower()
    if not name_key:
        return ""
    normalized = data.strip() or "{}"
    digest = _fnv1a64(name_key.encode("utf-8") + b"\x00" + normalized.encode("utf-8"))
    return f"tool_anon_{digest:x}"


def mask_dedup_key(key: str) -> str:
    """Tool name plus a hash of the key, for logging without the key's content."""
    tool = key
    idx = key.find(":")
    if idx > 0:
        tool = key[:idx]
    return f"{tool}#{_fnv1a64(key.encode('utf-8')):x}"


def normalize_intro_key(delta: str) -> str:
    """Category of a stock greeting or self-introduction, or "" for other text."""
    text = delta.strip()
    if not text:
        return ""
    lower = text.lower()
    if lower in _EN_GREETINGS:
        return "intro:en:greet"
    if text.startswith(("你好", "您好")):
        return "intro:zh:greet"
    if lower.startswith("我是 warp"):
        return "intro:zh:warp"
    if lower.startswith("我是 claude"):
        return "intro:zh:claude"
    return ""


def extract_thinking_signature(event: Mapping[str, Any] | None) -> str:
    """The event's signature, falling back to event.data.signature."""
    if not event:
        return ""
    sig = event.get("signature")
    if isinstance(sig, str):
        return sig.strip()
    data = event.get("data")
    if isinstance(data, Mapping):
        sig = data.get("signature")
        if isinstance(sig, str):
            return sig.strip()
    return ""


def extract_event_message(event: Mapping[str, Any] | None, fallback: str) -> str:
    """The event's message (data.message first), or fallback when there is none."""
    if not event:
        return fallback
    data = event.get("data")
    if isinstance(data, Mapping):
        msg = data.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    msg = event.get("message")
    if isinstance(msg, str) and msg.strip():
        return msg.strip()
    return fallback


def message_plain_text(content: MessageContent) -> str:
    """String content as is, or the non-empty text blocks joined by newlines."""
    if content.is_string():
        return content.text
    return "\n".join(
        block.text for block in content.get_blocks() if block.type == "text" and block.text
    )