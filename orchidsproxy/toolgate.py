"""Insertion of a tool-gate notice into a built prompt."""

from __future__ import annotations

_USER_MARKERS = ("<user_request>", "<user_message>")


def find_user_marker(prompt_text: str) -> tuple[str, int]:
    """The first user marker found in the prompt and its position, or ("", -1)."""
    for marker in _USER_MARKERS:
        idx = prompt_text.find(marker)
        if idx != -1:
            return marker, idx
    return "", -1


def inject_tool_gate(prompt_text: str, message: str) -> str:
    """Place a <tool_gate> section before the user marker, or append it."""
    message = message.strip()
    if not message:
        return prompt_text
    section = f"<tool_gate>\n{message}\n</tool_gate>\n\n"
    _, idx = find_user_marker(prompt_text)
    if idx != -1:
        return prompt_text[:idx] + section + prompt_text[idx:]
    if not prompt_text.strip():
        return section
    return prompt_text + "\n\n" + section.rstrip("\n")