import json

import pytest

from orchidsproxy.messages import ContentBlock, MessageContent
from orchidsproxy.stream_tools import (
    extract_event_message,
    extract_thinking_signature,
    fallback_tool_call_id,
    has_required_tool_input,
    mask_dedup_key,
    message_plain_text,
    normalize_intro_key,
    sanitize_tool_input,
    side_effect_dedup_key,
    stringify_tool_input,
)


def test_sanitize_write_drops_overwrite_and_maps_path():
    out = sanitize_tool_input("Write", '{"path": "/a.txt", "content": "x", "overwrite": true}')
    assert json.loads(out) == {"file_path": "/a.txt", "content": "x"}


def test_sanitize_keeps_existing_target_field():
    out = sanitize_tool_input("read", '{"path": "/other", "file_path": "/keep"}')
    assert json.loads(out) == {"file_path": "/keep"}


def test_sanitize_bash_maps_cmd():
    out = sanitize_tool_input("bash", '{"cmd": "ls"}')
    assert json.loads(out) == {"command": "ls"}


@pytest.mark.parametrize("name,data", [
    ("bash", "not json"),
    ("bash", "[1, 2]"),
    ("other", '{"path": "/a"}'),
    ("read", '{"file_path": "/a"}'),
    ("bash", "   "),
])
def test_sanitize_leaves_input_untouched(name, data):
    assert sanitize_tool_input(name, data) == data


def test_dedup_key_for_bash():
    assert side_effect_dedup_key("bash", '{"command": "  ls -la "}') == "bash:ls -la"
    assert side_effect_dedup_key("bash", '{"command": " ", "cmd": "pwd"}') == "bash:pwd"


def test_dedup_key_for_write_and_edit():
    write = side_effect_dedup_key("write", '{"file_path": "/f", "content": "body"}')
    assert write == "write:/f\x00body"
    edit = side_effect_dedup_key("edit", '{"path": "/f", "old_string": "a", "new_string": "b"}')
    assert edit == "edit:/f\x00a\x00b"


def test_dedup_key_non_string_content_is_canonical():
    first = side_effect_dedup_key("write", '{"file_path": "/f", "content": {"b": 1, "a": 2}}')
    second = side_effect_dedup_key("write", '{"file_path": "/f", "content": {"a": 2, "b": 1}}')
    assert first == second
    assert first.startswith("write:/f\x00")


@pytest.mark.parametrize("name,data", [
    ("read", '{"file_path": "/f"}'),
    ("bash", "oops"),
    ("bash", "{}"),
    ("write", '{"file_path": "/f"}'),
    ("edit", '{"file_path": "/f", "old_string": "a"}'),
    ("write", '{"content": "x"}'),
])
def test_dedup_key_empty_when_not_applicable(name, data):
    assert side_effect_dedup_key(name, data) == ""


@pytest.mark.parametrize("name,data,expected", [
    ("edit", '{"file_path": "/f", "old_string": "", "new_string": "x"}', True),
    ("edit", '{"file_path": "/f", "old_string": "a"}', False),
    ("write", '{"path": "/f", "content": ""}', True),
    ("write", '{"path": " ", "content": "x"}', False),
    ("bash", '{"cmd": "ls"}', True),
    ("bash", '{"command": ""}', False),
    ("read", '{"file_path": "/f"}', True),
    ("read", "", False),
    ("grep", "broken", False),
    ("custom", "broken", True),
    ("custom", "", True),
    ("", "{}", False),
])
def test_has_required_tool_input(name, data, expected):
    assert has_required_tool_input(name, data) is expected


def test_fallback_tool_call_id_is_stable():
    first = fallback_tool_call_id(" Bash ", '{"command":"ls"}')
    assert first.startswith("tool_anon_")
    assert first == fallback_tool_call_id("bash", ' {"command":"ls"} ')
    assert fallback_tool_call_id("bash", "") == fallback_tool_call_id("bash", "{}")
    assert first != fallback_tool_call_id("bash", '{"command":"pwd"}')


def test_fallback_tool_call_id_needs_name():
    assert fallback_tool_call_id("  ", "{}") == ""


def test_mask_dedup_key_hides_content():
    masked = mask_dedup_key("bash:rm -rf build")
    assert masked.startswith("bash#")
    assert "rm" not in masked
    assert masked == mask_dedup_key("bash:rm -rf build")
    assert masked != mask_dedup_key("bash:ls")


def test_mask_dedup_key_without_prefix_keeps_whole_key():
    assert mask_dedup_key(":x").startswith(":x#")


@pytest.mark.parametrize("delta,expected", [
    ("  Hello! How can I help you today?  ", "intro:en:greet"),
    ("你好，我能帮你什么", "intro:zh:greet"),
    ("我是 Warp Agent Mode", "intro:zh:warp"),
    ("我是 Claude 4.5", "intro:zh:claude"),
    ("Here is the code", ""),
    ("   ", ""),
])
def test_normalize_intro_key(delta, expected):
    assert normalize_intro_key(delta) == expected


def test_extract_thinking_signature():
    assert extract_thinking_signature({"signature": " sig "}) == "sig"
    assert extract_thinking_signature({"data": {"signature": "inner"}}) == "inner"
    assert extract_thinking_signature({"signature": "top", "data": {"signature": "inner"}}) == "top"
    assert extract_thinking_signature(None) == ""
    assert extract_thinking_signature({"signature": 5}) == ""


def test_extract_event_message():
    assert extract_event_message({"data": {"message": " inner "}, "message": "outer"}, "fb") == "inner"
    assert extract_event_message({"data": {"message": "  "}, "message": "outer"}, "fb") == "outer"
    assert extract_event_message({}, "fb") == "fb"
    assert extract_event_message(None, "fb") == "fb"


def test_stringify_tool_input():
    assert stringify_tool_input(None) == ""
    assert stringify_tool_input("raw") == "raw"
    value = {"b": 1, "a": "<tag>"}
    out = stringify_tool_input(value)
    assert json.loads(out) == value
    assert "<" not in out
    assert out.index('"a"') < out.index('"b"')


def test_message_plain_text():
    assert message_plain_text(MessageContent(text="plain")) == "plain"
    blocks = MessageContent(blocks=[
        ContentBlock(type="text", text="one"),
        ContentBlock(type="tool_result", text="skip"),
        ContentBlock(type="text", text=""),
        ContentBlock(type="text", text="two"),
    ])
    assert message_plain_text(blocks) == "one\ntwo"
    assert message_plain_text(MessageContent(blocks=[])) == ""