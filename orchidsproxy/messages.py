"""Request and message shapes of the Anthropic-style messages API."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

_BLOCK_FIELDS = frozenset(
    {"type", "text", "id", "name", "input", "tool_use_id", "content"}
)


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass
class ContentBlock:
    """One block of a message's content."""

    type: str = ""
    text: str = ""
    id: str = ""
    name: str = ""
    input: Any = None
    tool_use_id: str = ""
    content: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContentBlock:
        if not isinstance(data, Mapping):
            raise ValueError("content block must be an object")
        return cls(
            type=_as_str(data.get("type")),
            text=_as_str(data.get("text")),
            id=_as_str(data.get("id")),
            name=_as_str(data.get("name")),
            input=data.get("input"),
            tool_use_id=_as_str(data.get("tool_use_id")),
            content=data.get("content"),
            extra={k: v for k, v in data.items() if k not in _BLOCK_FIELDS},
        )


@dataclass
class MessageContent:
    """Message content: either plain text or a list of blocks."""

    text: str = ""
    blocks: list[ContentBlock] | None = None

    def is_string(self) -> bool:
        return self.blocks is None

    def get_blocks(self) -> list[ContentBlock]:
        return self.blocks if self.blocks is not None else []

    @classmethod
    def from_value(cls, value: Any) -> MessageContent:
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(text=value)
        if isinstance(value, list):
            return cls(blocks=[ContentBlock.from_dict(item) for item in value])
        raise ValueError("message content must be a string or an array")


@dataclass
class Message:
    """A single conversation turn."""

    role: str = ""
    content: MessageContent = field(default_factory=MessageContent)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        if not isinstance(data, Mapping):
            raise ValueError("message must be an object")
        return cls(
            role=_as_str(data.get("role")),
            content=MessageContent.from_value(data.get("content")),
        )


@dataclass
class SystemItem:
    """One entry of the system prompt."""

    type: str = ""
    text: str = ""
    cache_control: dict[str, Any] | None = None


def _system_item_from_dict(data: Mapping[str, Any]) -> SystemItem:
    cache_control = data.get("cache_control")
    return SystemItem(
        type=_as_str(data.get("type")),
        text=_as_str(data.get("text")),
        cache_control=dict(cache_control) if isinstance(cache_control, Mapping) else None,
    )


def parse_system_items(value: Any) -> list[SystemItem]:
    """Decode a system prompt given as a string, an array of items or one item."""
    if value is None:
        return []
    if isinstance(value, str):
        return [SystemItem(type="text", text=value)]
    if isinstance(value, list) and all(isinstance(item, Mapping) for item in value):
        return [_system_item_from_dict(item) for item in value]
    if isinstance(value, Mapping):
        return [_system_item_from_dict(value)]
    raise ValueError("system must be string or array")


@dataclass
class ClaudeRequest:
    """An incoming messages request."""

    model: str = ""
    messages: list[Message] = field(default_factory=list)
    system: list[SystemItem] = field(default_factory=list)
    tools: list[Any] | None = None
    stream: bool = False
    conversation_id: str = ""
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClaudeRequest:
        if not isinstance(data, Mapping):
            raise ValueError("request must be an object")
        raw_messages = data.get("messages") or []
        if not isinstance(raw_messages, list):
            raise ValueError("messages must be an array")
        tools = data.get("tools")
        if tools is not None and not isinstance(tools, list):
            raise ValueError("tools must be an array")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValueError("metadata must be an object")
        return cls(
            model=_as_str(data.get("model")),
            messages=[Message.from_dict(m) for m in raw_messages],
            system=parse_system_items(data.get("system")),
            tools=tools,
            stream=bool(data.get("stream", False)),
            conversation_id=_as_str(data.get("conversation_id")),
            metadata=dict(metadata) if metadata is not None else None,
        )