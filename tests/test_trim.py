from orchidsproxy.messages import ContentBlock, Message, MessageContent
from orchidsproxy.trim import compress_tool_results, split_tool_results, truncate_utf8


def _tool_result(tid, content):
    return ContentBlock(type="tool_result", tool_use_id=tid, content=content)


def _history():
    return [
        Message(role="user", content=MessageContent(text="start")),
        Message(
            role="assistant",
            content=MessageContent(blocks=[ContentBlock(type="tool_use", id="t1"), ContentBlock(type="tool_use", id="t2")]),
        ),
        Message(role="user", content=MessageContent(blocks=[_tool_result("t1", "a"), _tool_result("t2", "b")])),
        Message(role="user", content=MessageContent(blocks=[_tool_result("t3", "c")])),
    ]


def _result_ids(batch):
    return [
        b.tool_use_id
        for m in batch
        for b in m.content.get_blocks()
        if b.type == "tool_result"
    ]


def test_split_one_per_batch():
    history = _history()
    batches, total = split_tool_results(history, 1)
    assert total == 3
    assert len(batches) == 3
    assert [_result_ids(b) for b in batches] == [["t1"], ["t2"], ["t3"]]
    # The user message left with no blocks is dropped from the batch.
    assert all(m.content.text or m.content.blocks for b in batches for m in b)
    assert _result_ids(history) == ["t1", "t2", "t3"]


def test_split_no_batching_needed():
    history = _history()
    batches, total = split_tool_results(history, 5)
    assert total == 3
    assert len(batches) == 1
    assert batches[0] == history
    assert batches[0][2] is not history[2]


def test_split_non_positive_batch():
    batches, total = split_tool_results(_history(), 0)
    assert total == 0
    assert len(batches) == 1


def test_truncate_utf8_respects_boundaries():
    data = "héllo wörld".encode("utf-8")
    for limit in range(len(data) + 2):
        cut = truncate_utf8(data, limit)
        assert cut <= limit
        data[:cut].decode("utf-8")
    assert truncate_utf8(data, len(data) + 5) == len(data)


def test_compress_long_string_result():
    long_text = "x" * 50
    history = [Message(role="user", content=MessageContent(blocks=[_tool_result("t1", long_text)]))]
    out, count = compress_tool_results(history, 10)
    assert count == 1
    new = out[0].content.blocks[0].content
    assert new.startswith("x" * 10 + "\n... [truncated ")
    assert new.endswith(" bytes]")
    assert history[0].content.blocks[0].content == long_text


def test_compress_list_result_serialized():
    content = [{"type": "text", "text": "y" * 40}]
    history = [Message(role="user", content=MessageContent(blocks=[_tool_result("t1", content)]))]
    out, count = compress_tool_results(history, 20)
    assert count == 1
    assert out[0].content.blocks[0].content.startswith('[{"text":"')


def test_compress_leaves_short_and_assistant_alone():
    history = [
        Message(role="assistant", content=MessageContent(blocks=[_tool_result("t1", "z" * 100)])),
        Message(role="user", content=MessageContent(blocks=[_tool_result("t2", "short")])),
    ]
    out, count = compress_tool_results(history, 10)
    assert count == 0
    assert out == history


def test_compress_disabled():
    history = _history()
    out, count = compress_tool_results(history, 0)
    assert count == 0
    assert out is history