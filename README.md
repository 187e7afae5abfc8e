# orchidsproxy

The request-handling core of a proxy that speaks the Anthropic Messages API
and forwards conversations to upstream coding-agent accounts. It has no
runtime dependencies outside the standard library.

## What it provides

- `orchidsproxy.messages` parses incoming requests into `ClaudeRequest`,
  `Message`, `MessageContent`, `ContentBlock` and `SystemItem`.
  `parse_system_items` accepts `system` as a string, a list of items or a
  single item, and raises `ValueError` for anything else.
- `orchidsproxy.utils` finds the conversation key
  (`conversation_key_for_request`) and the working directory
  (`extract_workdir_from_request`: metadata first, then headers, then the
  system prompt), maps requested model names with `map_model`, and detects
  suggestion-mode (`is_suggestion_mode`) and topic-classifier requests
  (`is_topic_classifier_request`, `classify_topic_request`).
- `orchidsproxy.sessions` provides `SessionStore`, which remembers each
  session's workdir and upstream conversation id and drops entries unused for
  30 minutes. `resolve_workdir` returns the current workdir, the previous one
  and whether it changed. `classify_upstream_error` returns an
  `UpstreamErrorClass` (category, whether to retry, whether to switch
  account) and `compute_retry_delay` gives the back-off in seconds.
- `orchidsproxy.loadbalancer` provides `LoadBalancer`, which picks among
  enabled `Account`s the ones with the fewest active connections per unit of
  weight, choosing at random between ties. An account marked with a failure
  status is kept out until its cooldown ends: 24 hours for 403 and 404,
  5 minutes for 401 and any other status. `get_next_account` raises
  `NoAccountAvailable` when no account is left. Accounts are read from and
  written to an object the caller supplies that follows the `AccountStore`
  protocol.
- `orchidsproxy.trim` splits tool results into batches with
  `split_tool_results` and truncates tool results in user messages that are
  longer than a byte limit with `compress_tool_results`, cutting at a UTF-8
  boundary (`truncate_utf8`).
- `orchidsproxy.reset` keeps only the latest user turn when the working
  directory changes (`reset_messages_for_new_workdir`), preceded by a summary
  of up to ten earlier turns.
- `orchidsproxy.stream_tools` normalises tool input (`sanitize_tool_input`),
  checks that required fields are present (`has_required_tool_input`), and
  builds dedup keys for bash, write and edit calls
  (`side_effect_dedup_key`).
- `orchidsproxy.sse` formats server-sent events and the content-block events
  of the stream; `estimate_text_tokens` gives a rough token count.
  `orchidsproxy.toolgate` injects a `<tool_gate>` section into a prompt.
- `orchidsproxy.response_stream.ResponseStream` and
  `orchidsproxy.stream_handler.StreamHandler` turn upstream events
  (`SSEMessage`) into Anthropic content blocks. Output is written as a live
  SSE stream through a callable you pass in, or, when not streaming, collected
  and returned by `build_message` as a single message dict.

## Example

```python
from orchidsproxy.utils import map_model, channel_from_path
from orchidsproxy.sessions import classify_upstream_error, compute_retry_delay

map_model("claude-3-5-sonnet-latest")   # "claude-sonnet-4-5"
channel_from_path("/warp/v1/messages")  # "warp"

err = classify_upstream_error("upstream returned 429 too many requests")
err.category, err.retryable             # ("rate_limit", True)
compute_retry_delay(0.5, 1, err.category)  # 2.0 seconds
```

Streaming events from an upstream into a client:

```python
import io
from orchidsproxy.sse import SSEMessage
from orchidsproxy.stream_handler import StreamHandler

out = io.StringIO()
handler = StreamHandler(out.write, is_stream=True)
handler.handle_message(SSEMessage("model", {"type": "text-delta", "delta": "Hello"}))
handler.handle_message(SSEMessage("model", {"type": "finish", "finishReason": "stop"}))
print(out.getvalue())
```

## What it does not do

This package is a library. It has no HTTP server, no command-line program,
no clients for upstream services and no account or model storage: the caller
receives requests, sends them upstream, feeds the upstream events to a
`StreamHandler`, and supplies the `AccountStore` the load balancer uses.

## Running the tests

```
pip install -e .[test]
pytest
```