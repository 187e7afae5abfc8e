"""Request inspection helpers: workdir, session key, model mapping, topics."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable, Mapping
from typing import Any

from orchidsproxy.messages import ClaudeRequest, Message, SystemItem

_ENV_WORKDIR_RE = re.compile(r"(?:primary\s+)?working directory:\s*([^\n\r]+)", re.IGNORECASE)

_SESSION_METADATA_KEYS = (
    "conversation_id", "conversationId",
    "session_id", "sessionId",
    "thread_id", "threadId",
    "chat_id", "chatId",
)
_SESSION_HEADERS = ("X-Conversation-Id", "X-Session-Id", "X-Thread-Id", "X-Chat-Id")
_WORKDIR_METADATA_KEYS = (
    "workdir", "working_directory", "workingDirectory", "cwd",
    "workspace", "workspace_path", "workspacePath",
    "project_root", "projectRoot",
)
_WORKDIR_HEADERS = ("X-Workdir", "X-Working-Directory", "X-Cwd", "X-Workspace", "X-Project-Root")

_GREETINGS = frozenset({"hi", "hello", "hey", "你好", "您好", "嗨", "在吗"})


def extract_workdir_from_system(system: Iterable[SystemItem]) -> str:
    for item in system:
        if item.type == "text":
            match = _ENV_WORKDIR_RE.search(item.text)
            if match:
                return match.group(1).strip()
    return ""


def extract_workdir_from_request(headers: Mapping[str, str] | None, req: ClaudeRequest) -> tuple[str, str]:
    """Return the explicit workdir and where it came from."""
    if req.metadata:
        wd = metadata_string(req.metadata, *_WORKDIR_METADATA_KEYS)
        if wd:
            return wd.strip(), "metadata"
    wd = header_value(headers, *_WORKDIR_HEADERS)
    if wd:
        return wd.strip(), "header"
    wd = extract_workdir_from_system(req.system)
    if wd:
        return wd.strip(), "system"
    return "", ""


def channel_from_path(path: str) -> str:
    if path.startswith("/orchids/"):
        return "orchids"
    if path.startswith("/warp/"):
        return "warp"
    return ""


def _contains_any(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def map_model(request_model: str) -> str:
    """Map a requested model name onto one the upstream supports."""
    lower = request_model.lower()
    thinking = "thinking" in lower

    if _contains_any(lower, "opus-4-6", "opus-4.6", "4-6-opus"):
        return "claude-opus-4-6-thinking" if thinking else "claude-opus-4-6"
    if _contains_any(lower, "opus-4-5", "opus-4.5", "4-5-opus"):
        return "claude-opus-4-5-thinking" if thinking else "claude-opus-4-5"
    if "opus" in lower:
        return "claude-opus-4-6-thinking" if thinking else "claude-opus-4-6"
    if _contains_any(lower, "sonnet-3-7", "sonnet-3.7", "3-7-sonnet"):
        return "claude-3-7-sonnet-20250219"
    if _contains_any(lower, "sonnet-3-5", "sonnet-3.5", "3-5-sonnet"):
        return "claude-sonnet-4-5"
    if _contains_any(lower, "sonnet-4-5", "sonnet-4.5", "4-5-sonnet"):
        return "claude-sonnet-4-5-thinking" if thinking else "claude-sonnet-4-5"
    if "sonnet-4-20250514" in lower:
        return "claude-sonnet-4-20250514"
    if _contains_any(lower, "sonnet-4", "sonnet"):
        return "claude-sonnet-4-5-thinking" if thinking else "claude-sonnet-4-20250514"
    if _contains_any(lower, "haiku-4-5", "haiku-4.5", "4-5-haiku"):
        return "claude-haiku-4-5"
    if "haiku" in lower:
        return "claude-haiku-4-5"
    return "claude-sonnet-4-5"


def conversation_key_for_request(headers: Mapping[str, str] | None, req: ClaudeRequest) -> str:
    if req.conversation_id:
        return req.conversation_id
    if req.metadata:
        key = metadata_string(req.metadata, *_SESSION_METADATA_KEYS)
        if key:
            return key
    return header_value(headers, *_SESSION_HEADERS)


def metadata_string(metadata: Mapping[str, Any] | None, *keys: str) -> str:
    """First non-blank string value among the given metadata keys."""
    if not metadata:
        return ""
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _get_header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            if isinstance(value, (list, tuple)):
                return value[0] if value else ""
            return value
    return ""


def header_value(headers: Mapping[str, str] | None, *keys: str) -> str:
    """First non-blank header among the given names, matched case-insensitively."""
    if not headers:
        return ""
    for key in keys:
        value = _get_header(headers, key).strip()
        if value:
            return value
    return ""


def extract_user_text(messages: list[Message]) -> str:
    for msg in reversed(messages):
        if msg.role != "user":
            continue
        if msg.content.is_string():
            return msg.content.text.strip()
        parts = [b.text.strip() for b in msg.content.get_blocks() if b.type == "text" and b.text.strip()]
        return "\n".join(parts).strip()
    return ""


def is_suggestion_mode(messages: list[Message]) -> bool:
    for msg in reversed(messages):
        if msg.role != "user":
            continue
        if msg.content.is_string():
            return contains_suggestion_mode(msg.content.text)
        for block in msg.content.get_blocks():
            if block.type == "text":
                return contains_suggestion_mode(block.text)
        # The latest user turn has no text; older prompts are not consulted.
        return False
    return False


def contains_suggestion_mode(text: str) -> bool:
    return "suggestion mode" in strip_system_reminders(text).lower()


def is_topic_classifier_request(req: ClaudeRequest) -> bool:
    for item in req.system:
        if item.type.strip().lower() != "text":
            continue
        lower = strip_system_reminders(item.text).lower()
        if (
            "new conversation topic" in lower
            and "isnewtopic" in lower
            and "json object" in lower
            and "title" in lower
        ):
            return True
    return False


def classify_topic_request(req: ClaudeRequest) -> tuple[bool, str]:
    """Decide locally whether the latest user turn starts a new topic."""
    user_texts = extract_user_texts(req.messages)
    if not user_texts:
        return False, ""
    latest = user_texts[-1].strip()
    if not latest:
        return False, ""
    prev = user_texts[-2].strip() if len(user_texts) >= 2 else ""
    if not prev:
        return True, generate_topic_title(latest)
    if is_greeting_text(latest):
        return False, ""
    latest_norm = normalize_topic_text(latest)
    prev_norm = normalize_topic_text(prev)
    if not latest_norm or not prev_norm:
        return latest != prev, generate_topic_title(latest)
    if latest_norm == prev_norm or prev_norm in latest_norm or latest_norm in prev_norm:
        return False, ""
    return True, generate_topic_title(latest)


def extract_user_texts(messages: list[Message]) -> list[str]:
    texts: list[str] = []
    for msg in messages:
        if msg.role.strip().lower() != "user":
            continue
        if msg.content.is_string():
            text = strip_system_reminders(msg.content.text).strip()
            if text:
                texts.append(text)
            continue
        parts = [
            cleaned
            for block in msg.content.get_blocks()
            if block.type.strip().lower() == "text"
            and (cleaned := strip_system_reminders(block.text).strip())
        ]
        merged = "\n".join(parts).strip()
        if merged:
            texts.append(merged)
    return texts


def is_greeting_text(text: str) -> bool:
    return text.strip().lower() in _GREETINGS


def normalize_topic_text(text: str) -> str:
    """Lower-case the text and drop whitespace and punctuation."""
    text = text.strip().lower()
    return "".join(
        ch for ch in text if not ch.isspace() and not unicodedata.category(ch).startswith("P")
    )


def generate_topic_title(text: str) -> str:
    trimmed = text.strip()
    if not trimmed:
        return "New Topic"
    words = trimmed.split()
    if len(words) >= 2:
        return " ".join(words[:3])
    return trimmed[:10].strip()


def strip_system_reminders(text: str) -> str:
    """Remove <system-reminder> sections, closing each at the last end tag."""
    start_tag = "<system-reminder>"
    end_tag = "</system-reminder>"
    if start_tag not in text:
        return text
    out: list[str] = []
    i = 0
    while i < len(text):
        start = text.find(start_tag, i)
        if start == -1:
            out.append(text[i:])
            break
        out.append(text[i:start])
        body_start = start + len(start_tag)
        end = text.rfind(end_tag, body_start)
        if end == -1:
            out.append(text[start:])
            break
        i = end + len(end_tag)
    return "".join(out)