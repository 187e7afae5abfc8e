"""History reset applied when a conversation's working directory changes."""

from __future__ import annotations

from orchidsproxy.messages import Message, MessageContent

SUMMARY_HEADER = "[Previous conversation summary before working directory change]"
MAX_ENTRY_BYTES = 200
MAX_ENTRIES = 10


def _message_text(msg: Message) -> str:
    """Plain text of a message: its string content or its first text block."""
    if msg.content.text:
        return msg.content.text.strip()
    for block in msg.content.get_blocks():
        if block.type == "text" and block.text:
            return block.text.strip()
    return ""


def _shorten(text: str) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= MAX_ENTRY_BYTES:
        return text
    return raw[:MAX_ENTRY_BYTES].decode("utf-8", errors="replace") + "..."


def build_workdir_change_summary(messages: list[Message]) -> str:
    """Condense earlier turns into at most ten short "- role: text" lines."""
    parts = [
        f"- {msg.role}: {_shorten(text)}"
        for msg in messages
        if (text := _message_text(msg))
    ]
    return "\n".join(parts[-MAX_ENTRIES:])


def reset_messages_for_new_workdir(messages: list[Message]) -> list[Message]:
    """Keep the latest user turn, preceded by a summary of what came before it."""
    if not messages:
        return messages
    last_user = next(
        (i for i in range(len(messages) - 1, -1, -1) if messages[i].role.lower() == "user"),
        None,
    )
    if last_user is None:
        return []
    current = messages[last_user]
    if last_user == 0:
        return [current]
    summary = build_workdir_change_summary(messages[:last_user])
    if not summary:
        return [current]
    summary_msg = Message(
        role="user",
        content=MessageContent(text=f"{SUMMARY_HEADER}\n{summary}"),
    )
    return [summary_msg, current]