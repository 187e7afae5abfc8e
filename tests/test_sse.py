import json

from orchidsproxy.sse import (
    SSEMessage,
    ToolCall,
    block_delta_event,
    block_start_event,
    block_stop_event,
    estimate_text_tokens,
    format_sse,
    text_block_events,
    tool_use_events,
)


def test_format_sse_wire_form():
    data = '{"type":"message_stop"}'
    assert format_sse("message_stop", data) == 'event: message_stop\ndata: {"type":"message_stop"}\n\n'


def test_block_stop_event_bytes():
    assert block_stop_event(3) == '{"index":3,"type":"content_block_stop"}'


def test_block_start_round_trip():
    decoded = json.loads(block_start_event(0, {"type": "text", "text": ""}))
    assert decoded == {
        "type": "content_block_start",
        "index": 0,
        "content_block": {"type": "text", "text": ""},
    }


def test_block_delta_escapes_html():
    raw = block_delta_event(1, {"type": "text_delta", "text": "<a>&"})
    assert "<" not in raw and "&" not in raw
    assert json.loads(raw)["delta"]["text"] == "<a>&"


def test_tool_use_events_sequence():
    events = tool_use_events(2, "tool_1", "sum", ' {"a":1} ')
    assert [e for e, _ in events] == ["content_block_start", "content_block_delta", "content_block_stop"]
    start = json.loads(events[0][1])
    assert start["content_block"] == {"type": "tool_use", "id": "tool_1", "name": "sum", "input": {}}
    delta = json.loads(events[1][1])
    assert delta["delta"] == {"type": "input_json_delta", "partial_json": '{"a":1}'}
    assert all(json.loads(d)["index"] == 2 for _, d in events)


def test_tool_use_events_empty_input():
    events = tool_use_events(0, "t", "read", "   ")
    assert json.loads(events[1][1])["delta"]["partial_json"] == "{}"


def test_text_block_events():
    events = text_block_events(5, "Hello")
    assert [e for e, _ in events] == ["content_block_start", "content_block_delta", "content_block_stop"]
    assert json.loads(events[1][1])["delta"] == {"type": "text_delta", "text": "Hello"}
    assert json.loads(events[2][1]) == {"type": "content_block_stop", "index": 5}


def test_estimate_tokens_empty():
    assert estimate_text_tokens("") == 0


def test_estimate_tokens_positive_and_monotonic():
    short = estimate_text_tokens("Hello")
    longer = estimate_text_tokens("Hello " * 50)
    assert short >= 1
    assert longer > short


def test_estimate_tokens_cjk_weighs_more():
    assert estimate_text_tokens("计算器计算器") > estimate_text_tokens("abcdef")


def test_dataclasses_defaults():
    msg = SSEMessage(type="model", event={"type": "finish"})
    call = ToolCall(id="tool_1", name="sum", input='{"a":1}')
    assert msg.event["type"] == "finish"
    assert SSEMessage().event is None
    assert call.name == "sum"
    assert ToolCall().input == ""