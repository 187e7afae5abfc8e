import pytest

from orchidsproxy.messages import ClaudeRequest, ContentBlock, Message, MessageContent, SystemItem
from orchidsproxy.utils import (
    channel_from_path,
    classify_topic_request,
    contains_suggestion_mode,
    conversation_key_for_request,
    extract_user_text,
    extract_user_texts,
    extract_workdir_from_request,
    extract_workdir_from_system,
    generate_topic_title,
    header_value,
    is_greeting_text,
    is_suggestion_mode,
    is_topic_classifier_request,
    map_model,
    metadata_string,
    normalize_topic_text,
    strip_system_reminders,
)


def _msg(role, text):
    return Message(role=role, content=MessageContent(text=text))


@pytest.mark.parametrize(
    "req,header,want",
    [
        (ClaudeRequest(conversation_id="cid", metadata={"user_id": "u1"}), ("X-Conversation-Id", "header"), "cid"),
        (ClaudeRequest(metadata={"conversation_id": "meta"}), ("X-Conversation-Id", "header"), "meta"),
        (ClaudeRequest(metadata={"user_id": "u1"}), ("X-Conversation-Id", "header"), "header"),
        (ClaudeRequest(metadata={"user_id": "u1"}), None, ""),
        (ClaudeRequest(), None, ""),
    ],
)
def test_conversation_key_priority(req, header, want):
    headers = {"User-Agent": "test-agent"}
    if header:
        headers[header[0]] = header[1]
    assert conversation_key_for_request(headers, req) == want


@pytest.mark.parametrize(
    "req,headers,want,src",
    [
        (ClaudeRequest(metadata={"workdir": "/meta/path"}), {"X-Workdir": "/header/path"}, "/meta/path", "metadata"),
        (ClaudeRequest(), {"X-Workdir": "/header/path"}, "/header/path", "header"),
        (
            ClaudeRequest(system=[SystemItem(type="text", text="Primary working directory: /system/path")]),
            {},
            "/system/path",
            "system",
        ),
    ],
)
def test_extract_workdir_priority(req, headers, want, src):
    assert extract_workdir_from_request(headers, req) == (want, src)


def test_extract_workdir_none():
    assert extract_workdir_from_request({}, ClaudeRequest()) == ("", "")


def test_extract_workdir_from_system_case_insensitive():
    items = [SystemItem(type="image"), SystemItem(type="text", text="env\nWorking Directory:  /a/b  \nmore")]
    assert extract_workdir_from_system(items) == "/a/b"


def test_is_topic_classifier_request():
    req = ClaudeRequest(
        system=[
            SystemItem(
                type="text",
                text="Analyze if this message indicates a new conversation topic. Format your response as a JSON object with two fields: 'isNewTopic' and 'title'.",
            )
        ]
    )
    assert is_topic_classifier_request(req)
    assert not is_topic_classifier_request(ClaudeRequest(system=[SystemItem(type="text", text="You are Claude Code")]))


@pytest.mark.parametrize(
    "messages,want_new",
    [
        ([_msg("user", "帮我用python写一个计算器")], True),
        (
            [_msg("user", "帮我用python写一个计算器"), _msg("assistant", "好的"), _msg("user", "帮我用python写一个计算器")],
            False,
        ),
        ([_msg("user", "帮我用python写一个计算器"), _msg("assistant", "好的"), _msg("user", "hi")], False),
    ],
)
def test_classify_topic_request(messages, want_new):
    got_new, title = classify_topic_request(ClaudeRequest(messages=messages))
    assert got_new == want_new
    if got_new:
        assert title.strip() != ""
    else:
        assert title == ""


def test_classify_topic_new_subject():
    req = ClaudeRequest(messages=[_msg("user", "write a calculator"), _msg("user", "deploy the server now please")])
    assert classify_topic_request(req) == (True, "deploy the server")


def test_classify_topic_no_user():
    assert classify_topic_request(ClaudeRequest(messages=[_msg("assistant", "x")])) == (False, "")


@pytest.mark.parametrize(
    "model,want",
    [
        ("claude-opus-4-6", "claude-opus-4-6"),
        ("claude-opus-4.5-thinking", "claude-opus-4-5-thinking"),
        ("opus", "claude-opus-4-6"),
        ("claude-3-7-sonnet-latest", "claude-3-7-sonnet-20250219"),
        ("claude-3-5-sonnet", "claude-sonnet-4-5"),
        ("claude-sonnet-4-5-thinking", "claude-sonnet-4-5-thinking"),
        ("claude-sonnet-4-20250514", "claude-sonnet-4-20250514"),
        ("sonnet-thinking", "claude-sonnet-4-5-thinking"),
        ("claude-haiku-4-5-20251001", "claude-haiku-4-5"),
        ("haiku", "claude-haiku-4-5"),
        ("gpt-test", "claude-sonnet-4-5"),
    ],
)
def test_map_model(model, want):
    assert map_model(model) == want


@pytest.mark.parametrize(
    "path,want",
    [("/orchids/v1/messages", "orchids"), ("/warp/v1/messages", "warp"), ("/v1/messages", "")],
)
def test_channel_from_path(path, want):
    assert channel_from_path(path) == want


def test_metadata_string_skips_blank_and_non_string():
    md = {"a": "  ", "b": 5, "c": " value "}
    assert metadata_string(md, "a", "b", "c") == "value"
    assert metadata_string(None, "a") == ""


def test_header_value_case_insensitive():
    assert header_value({"x-session-id": " s1 "}, "X-Conversation-Id", "X-Session-Id") == "s1"
    assert header_value(None, "X-Session-Id") == ""


def test_extract_user_text_blocks():
    msg = Message(
        role="user",
        content=MessageContent(blocks=[ContentBlock(type="text", text=" a "), ContentBlock(type="image"), ContentBlock(type="text", text="b")]),
    )
    assert extract_user_text([_msg("user", "old"), msg, _msg("assistant", "x")]) == "a\nb"


def test_suggestion_mode_detection():
    assert is_suggestion_mode([_msg("user", "We are in SUGGESTION MODE now")])
    assert not is_suggestion_mode([_msg("user", "<system-reminder>suggestion mode</system-reminder>hello")])
    no_text = Message(role="user", content=MessageContent(blocks=[ContentBlock(type="tool_result")]))
    assert not is_suggestion_mode([_msg("user", "suggestion mode"), no_text])
    assert contains_suggestion_mode("suggestion mode")


def test_strip_system_reminders():
    text = "a<system-reminder>x</system-reminder>b<system-reminder>y</system-reminder>c"
    assert strip_system_reminders(text) == "ac"
    assert strip_system_reminders("a<system-reminder>open") == "a<system-reminder>open"
    assert strip_system_reminders("plain") == "plain"


def test_extract_user_texts_drops_reminders():
    msgs = [_msg("user", "<system-reminder>r</system-reminder>"), _msg("USER", " q ")]
    assert extract_user_texts(msgs) == ["q"]