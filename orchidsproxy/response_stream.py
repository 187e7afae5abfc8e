"""State of one response being written to the client, streamed or buffered."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable
from typing import Any

from orchidsproxy.messages import Message
from orchidsproxy.sse import (
    ToolCall,
    block_delta_event,
    block_start_event,
    block_stop_event,
    estimate_text_tokens,
    format_sse,
    text_block_events,
    tool_use_events,
)
from orchidsproxy.stream_tools import (
    _encode_json,
    has_required_tool_input,
    mask_dedup_key,
    message_plain_text,
    side_effect_dedup_key,
    stringify_tool_input,
)

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "No response from upstream. The request may not be supported in this mode."
KEEP_ALIVE_FRAME = ": keep-alive\n\n"

EventWriter = Callable[[str, str], None]


class ResponseStream:
    """Builds Anthropic message events and the final message for one request.

    In streaming mode events are written through ``write`` as they happen;
    otherwise content is collected and returned by :meth:`build_message`.
    """

    def __init__(
        self,
        write: Callable[[str], Any],
        *,
        is_stream: bool = True,
        suppress_thinking: bool = False,
        flush: Callable[[], Any] | None = None,
        debug: bool = False,
        workdir: str = "",
        clock: Callable[[], float] = time.time,
        msg_id: str | None = None,
    ) -> None:
        self._write = write
        self._flush = flush
        self.is_stream = is_stream
        self.suppress_thinking = suppress_thinking
        self.debug = debug
        self.workdir = workdir
        self._clock = clock
        self._lock = threading.RLock()

        self.start_time = clock()
        self.msg_id = msg_id or f"msg_{int(self.start_time * 1000)}"
        self.block_index = -1
        self.has_return = False
        self.final_stop_reason = ""
        self.input_tokens = 0
        self.output_tokens = 0
        self._use_upstream_usage = False

        self._active_thinking_block = -1
        self._active_thinking_sse = -1
        self._active_text_block = -1
        self._active_text_sse = -1
        self._active_block_type = ""

        self._response_text: list[str] = []
        self._output_text: list[str] = []
        self._write_chunks: list[str] = []
        self._text_builders: dict[int, list[str]] = {}
        self._thinking_builders: dict[int, list[str]] = {}
        self._thinking_sigs: dict[int, str] = {}
        self.content_blocks: list[dict[str, Any]] = []
        self._pending_thinking_sig = ""
        self._has_text_output = False

        self._pending_tool_calls: list[ToolCall] = []
        self._tool_input_names: dict[str, str] = {}
        self._tool_input_buffers: dict[str, list[str]] = {}
        self._tool_input_had_delta: dict[str, bool] = {}
        self._tool_call_handled: dict[str, bool] = {}
        self._tool_call_emitted: set[str] = set()
        self._current_tool_input_id = ""
        self._tool_call_count = 0
        self._side_effect_dedup: set[str] = set()
        self._seed_dedup: set[str] = set()
        self._dedup_count = 0
        self._dedup_keys: Counter[str] = Counter()
        self._intro_dedup: set[str] = set()
        self._last_scan_time: float | None = None

        self.on_conversation_id: Callable[[str], None] | None = None

    # -- writing ---------------------------------------------------------

    def _emit_frame(self, event: str, frame: str) -> None:
        try:
            self._write(frame)
            if self._flush is not None:
                self._flush()
        except OSError as exc:
            self._mark_write_error(event, exc)

    def _mark_write_error(self, event: str, exc: Exception) -> None:
        if self.has_return:
            return
        self.has_return = True
        self.final_stop_reason = "write_error"
        logger.warning("SSE write failed, output stopped (event %s): %s", event, exc)

    def write_sse(self, event: str, data: str) -> None:
        """Write one event unless the response is buffered or already finished."""
        if not self.is_stream:
            return
        with self._lock:
            if self.has_return:
                return
            self._emit_frame(event, format_sse(event, data))
            if self.debug:
                logger.debug("SSE out: %s (%d bytes)", event, len(data))

    def _write_final_sse(self, event: str, data: str) -> None:
        if not self.is_stream:
            return
        with self._lock:
            self._emit_frame(event, format_sse(event, data))

    def write_keep_alive(self) -> None:
        if not self.is_stream:
            return
        with self._lock:
            if self.has_return:
                return
            self._emit_frame("keep-alive", KEEP_ALIVE_FRAME)

    # -- token accounting ------------------------------------------------

    def add_output_tokens(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            if not self._use_upstream_usage:
                self._output_text.append(text)

    def _finalize_output_tokens(self) -> None:
        with self._lock:
            if self._use_upstream_usage:
                return
            self.output_tokens = estimate_text_tokens("".join(self._output_text))

    def set_usage_tokens(self, input_tokens: int | None = None, output_tokens: int | None = None) -> None:
        """Record token counts; None or a negative value leaves a count unchanged.

        An output count from the upstream replaces the local estimate.
        """
        with self._lock:
            if input_tokens is not None and input_tokens >= 0:
                self.input_tokens = input_tokens
            if output_tokens is not None and output_tokens >= 0:
                self.output_tokens = output_tokens
                self._use_upstream_usage = True

    # -- round state -----------------------------------------------------

    def reset_round_state(self) -> None:
        """Forget what the previous attempt produced, keeping block numbering."""
        with self._lock:
            self._close_active_block_locked()
            self._active_thinking_block = -1
            self._active_thinking_sse = -1
            self._active_text_block = -1
            self._active_text_sse = -1
            self._active_block_type = ""
            self.has_return = False

            self._response_text.clear()
            self.content_blocks = []
            self._text_builders.clear()
            self._thinking_builders.clear()
            self._pending_tool_calls = []
            self._tool_input_names.clear()
            self._tool_input_buffers.clear()
            self._tool_input_had_delta.clear()
            self._tool_call_handled.clear()
            self._tool_call_emitted.clear()
            self._side_effect_dedup = set(self._seed_dedup)
            self._dedup_count = 0
            self._dedup_keys.clear()
            self._current_tool_input_id = ""
            self._tool_call_count = 0
            self.output_tokens = 0
            self._output_text.clear()
            self._write_chunks.clear()
            self._use_upstream_usage = False
            self.final_stop_reason = ""
            self._has_text_output = False

    def seed_side_effect_dedup(self, messages: Iterable[Message]) -> None:
        """Pre-load dedup keys from tool calls made since the last user text turn."""
        messages = list(messages)
        last_user_text = -1
        for i, msg in enumerate(messages):
            if msg.role.strip().lower() != "user":
                continue
            if message_plain_text(msg.content).strip():
                last_user_text = i
        if last_user_text < 0:
            return
        for msg in messages[last_user_text + 1:]:
            if msg.role.strip().lower() != "assistant":
                continue
            for block in msg.content.get_blocks():
                if block.type != "tool_use":
                    continue
                name_key = block.name.strip().lower()
                if not name_key:
                    continue
                data = stringify_tool_input(block.input).strip() or "{}"
                key = side_effect_dedup_key(name_key, data)
                if key:
                    with self._lock:
                        self._seed_dedup.add(key)
                        self._side_effect_dedup.add(key)

    # -- blocks ----------------------------------------------------------

    def _next_block_index(self) -> int:
        with self._lock:
            self.block_index += 1
            return self.block_index

    def ensure_block(self, block_type: str) -> int:
        """Open a thinking or text block if needed and return its stream index."""
        if block_type == "thinking" and self.suppress_thinking:
            return -1
        with self._lock:
            if self._active_block_type and self._active_block_type != block_type:
                self._close_active_block_locked()
            if self._active_block_type == block_type:
                if block_type == "thinking":
                    return self._active_thinking_sse
                if block_type == "text":
                    return self._active_text_sse

            self.block_index += 1
            sse_idx = self.block_index
            self._active_block_type = block_type
            start_data = ""
            if block_type == "thinking":
                signature = self._pending_thinking_sig
                self._pending_thinking_sig = ""
                self.content_blocks.append({"type": "thinking", "signature": signature})
                internal = len(self.content_blocks) - 1
                self._active_thinking_block = internal
                self._active_thinking_sse = sse_idx
                self._thinking_builders[internal] = []
                self._thinking_sigs[internal] = signature
                start_data = block_start_event(
                    sse_idx, {"type": "thinking", "thinking": "", "signature": signature}
                )
            elif block_type == "text":
                self.content_blocks.append({"type": "text"})
                internal = len(self.content_blocks) - 1
                self._active_text_block = internal
                self._active_text_sse = sse_idx
                self._text_builders[internal] = []
                start_data = block_start_event(sse_idx, {"type": "text", "text": ""})
            if start_data:
                self.write_sse("content_block_start", start_data)
            return sse_idx

    def _pop_active_block_stop_data(self) -> str | None:
        kind = self._active_block_type
        if not kind:
            return None
        if kind == "thinking":
            sse_idx = self._active_thinking_sse
            self._active_thinking_block = -1
            self._active_thinking_sse = -1
        elif kind == "text":
            sse_idx = self._active_text_sse
            self._active_text_block = -1
            self._active_text_sse = -1
        else:
            self._active_block_type = ""
            return None
        self._active_block_type = ""
        return block_stop_event(sse_idx)

    def _close_active_block_locked(self) -> None:
        data = self._pop_active_block_stop_data()
        if data is not None:
            self.write_sse("content_block_stop", data)

    def close_active_block(self) -> None:
        with self._lock:
            self._close_active_block_locked()

    def _append_to_builder(self, builders: dict[int, list[str]], internal: int, delta: str) -> None:
        with self._lock:
            if 0 <= internal < len(self.content_blocks):
                builders.setdefault(internal, []).append(delta)

    # -- text and thinking -------------------------------------------------

    def _mark_text_output(self) -> None:
        with self._lock:
            self._has_text_output = True

    def emit_text_block(self, text: str) -> None:
        """Write a complete standalone text block (streaming only)."""
        self._emit_text_block(text, self.write_sse)

    def _emit_text_block(self, text: str, write: EventWriter) -> None:
        if not self.is_stream or not text:
            return
        self._mark_text_output()
        idx = self._next_block_index()
        for event, data in text_block_events(idx, text):
            write(event, data)

    def emit_text_delta(self, delta: str) -> None:
        if not delta:
            return
        self._mark_text_output()
        with self._lock:
            sse_idx = self._active_text_sse
            internal = self._active_text_block
        if sse_idx < 0:
            sse_idx = self.ensure_block("text")
            with self._lock:
                internal = self._active_text_block
        self.add_output_tokens(delta)
        self._append_to_builder(self._text_builders, internal, delta)
        self.write_sse(
            "content_block_delta", block_delta_event(sse_idx, {"type": "text_delta", "text": delta})
        )

    def emit_thinking_delta(self, delta: str) -> None:
        if not delta or self.suppress_thinking:
            return
        with self._lock:
            sse_idx = self._active_thinking_sse
            internal = self._active_thinking_block
        if sse_idx < 0:
            sse_idx = self.ensure_block("thinking")
            with self._lock:
                internal = self._active_thinking_block
        self.add_output_tokens(delta)
        self._append_to_builder(self._thinking_builders, internal, delta)
        self.write_sse(
            "content_block_delta",
            block_delta_event(sse_idx, {"type": "thinking_delta", "thinking": delta}),
        )

    def _emit_write_chunk_fallback(self, write: EventWriter) -> None:
        with self._lock:
            if self._has_text_output or not self._write_chunks:
                return
            text = "".join(self._write_chunks)
            self._has_text_output = True
        if self.is_stream:
            self._emit_text_block(text, write)
            return
        with self._lock:
            self.content_blocks.append({"type": "text", "text": text})

    # -- tool calls --------------------------------------------------------

    def _has_tool_calls(self) -> bool:
        with self._lock:
            return bool(
                self._tool_call_count > 0 or self._pending_tool_calls or self._tool_call_emitted
            )

    def should_accept_tool_call(self, call: ToolCall) -> bool:
        """Reject nameless, incomplete and repeated side-effect tool calls."""
        name_key = call.name.strip().lower()
        if not name_key:
            return False
        if not has_required_tool_input(call.name, call.input):
            if self.debug:
                logger.debug("invalid tool call suppressed: %s %s", call.name, call.input)
            return False
        key = side_effect_dedup_key(name_key, call.input)
        if key:
            masked = mask_dedup_key(key)
            with self._lock:
                if key in self._side_effect_dedup:
                    self._dedup_count += 1
                    self._dedup_keys[masked] += 1
                    if self.debug:
                        logger.debug(
                            "duplicate mutating tool call suppressed: %s %s (total %d)",
                            call.name, masked, self._dedup_count,
                        )
                    return False
                self._side_effect_dedup.add(key)
                self._seed_dedup.add(key)
        return True

    def _handle_tool_call_after_checks(self, call: ToolCall) -> None:
        with self._lock:
            self._pending_tool_calls.append(call)
            self._tool_call_count += 1

    def _emit_tool_use_from_input(self, tool_id: str, tool_name: str, input_str: str) -> None:
        if not tool_id or not tool_name:
            return
        with self._lock:
            if tool_id in self._tool_call_emitted:
                return
            self._tool_call_emitted.add(tool_id)
            self._tool_call_count += 1
        self.add_output_tokens(tool_name)
        idx = self._next_block_index()
        for event, data in tool_use_events(idx, tool_id, tool_name, input_str):
            self.write_sse(event, data)

    def _emit_tool_call_stream(self, call: ToolCall, write: EventWriter) -> None:
        if not call.id:
            return
        idx = self._next_block_index()
        self.add_output_tokens(call.name)
        self.add_output_tokens(call.input)
        for event, data in tool_use_events(idx, call.id, call.name, call.input):
            write(event, data)

    def _emit_tool_call_non_stream(self, call: ToolCall) -> None:
        self.add_output_tokens(call.name)
        self.add_output_tokens(call.input)
        try:
            value: Any = json.loads(call.input.strip() or "{}")
        except ValueError:
            value = {}
        with self._lock:
            self.content_blocks.append(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": value}
            )

    def _flush_pending_tool_calls(self, write: EventWriter) -> None:
        with self._lock:
            calls = self._pending_tool_calls
            self._pending_tool_calls = []
        for call in calls:
            if self.is_stream:
                self._emit_tool_call_stream(call, write)
            else:
                self._emit_tool_call_non_stream(call)

    # -- finishing ---------------------------------------------------------

    def finish_response(self, stop_reason: str) -> None:
        """Close the response once; later calls have no effect."""
        if stop_reason == "tool_use" and not self._has_tool_calls():
            stop_reason = "end_turn"
        with self._lock:
            if self.has_return:
                return
            self.has_return = True
            self.final_stop_reason = stop_reason

        if self.is_stream:
            with self._lock:
                stop_data = self._pop_active_block_stop_data()
            if stop_data:
                self._write_final_sse("content_block_stop", stop_data)
            if stop_reason != "tool_use":
                self._emit_write_chunk_fallback(self._write_final_sse)
            self._flush_pending_tool_calls(self._write_final_sse)
            self._finalize_output_tokens()
            self._write_final_sse(
                "message_delta",
                _encode_json(
                    {
                        "type": "message_delta",
                        "delta": {"stop_reason": stop_reason},
                        "usage": {"output_tokens": self.output_tokens},
                    }
                ),
            )
            self._write_final_sse("message_stop", _encode_json({"type": "message_stop"}))
        else:
            if stop_reason != "tool_use":
                self._emit_write_chunk_fallback(self._write_final_sse)
            self._flush_pending_tool_calls(self._write_final_sse)
            self._finalize_output_tokens()

        with self._lock:
            suppressed = self._dedup_count
            keys = dict(self._dedup_keys)
        if suppressed:
            logger.info("tool call dedup summary: %d suppressed %s", suppressed, keys)
        logger.debug(
            "Request completed: input_tokens=%d output_tokens=%d duration=%.3fs",
            self.input_tokens, self.output_tokens, self._clock() - self.start_time,
        )

    def force_finish_if_missing(self) -> None:
        """Finish a response the upstream ended without a finish event."""
        with self._lock:
            if self.has_return:
                return
            has_tools = bool(
                self._tool_call_count > 0 or self._pending_tool_calls or self._tool_call_emitted
            )
            has_output = bool(
                "".join(self._output_text) or "".join(self._response_text) or self.content_blocks
            )
        if not has_tools and not has_output:
            logger.warning("Upstream returned no content, injecting empty-response notice")
            self.ensure_block("text")
            with self._lock:
                internal = self._active_text_block
                sse_idx = self._active_text_sse
            if self.is_stream:
                self.write_sse(
                    "content_block_delta",
                    block_delta_event(sse_idx, {"type": "text_delta", "text": EMPTY_RESPONSE_TEXT}),
                )
            else:
                with self._lock:
                    self._response_text.append(EMPTY_RESPONSE_TEXT)
                    if internal in self._text_builders:
                        self._text_builders[internal].append(EMPTY_RESPONSE_TEXT)
        stop_reason = "tool_use" if has_tools else "end_turn"
        logger.warning("Upstream sent no end marker, finishing with %s", stop_reason)
        self.finish_response(stop_reason)

    # -- injected errors ---------------------------------------------------

    def inject_error_text(self, error_msg: str) -> None:
        """Add an error message to the client-visible text."""
        if self.debug:
            logger.info("Injecting error text (stream=%s): %s", self.is_stream, error_msg)
        self._mark_text_output()
        idx = self.ensure_block("text")
        with self._lock:
            internal = self._active_text_block
        if self.is_stream:
            self.write_sse(
                "content_block_delta",
                block_delta_event(idx, {"type": "text_delta", "text": error_msg}),
            )
        else:
            with self._lock:
                if internal in self._text_builders:
                    self._text_builders[internal].append(error_msg)

    def inject_auth_error(self, err_str: str) -> None:
        if "401" in err_str:
            msg = "Authentication Error: Session expired (401). Please update your account credentials."
        elif "403" in err_str:
            msg = (
                "Access Forbidden (403): Your account might be flagged or blocked. "
                "Try re-enabling it in the Admin UI."
            )
        else:
            msg = f"Request Failed: {err_str}. Please check your account status."
        self.inject_error_text(msg)

    def inject_retry_exhausted_error(self, last_err: str) -> None:
        self.inject_error_text(f"Request failed: retries exhausted. Last error: {last_err}")

    def inject_no_available_account_error(self, last_err: str, select_err: object | None) -> None:
        msg = (
            "Request failed: retries exhausted and no available accounts. "
            "Please check account statuses in Admin UI or add valid accounts."
        )
        if select_err is not None:
            msg = f"{msg} (selector: {select_err}, last error: {last_err})"
        self.inject_error_text(msg)

    # -- result ------------------------------------------------------------

    def build_message(self, model: str) -> dict[str, Any]:
        """The complete non-streamed message collected so far."""
        with self._lock:
            blocks = [dict(b) for b in self.content_blocks]
            for i, block in enumerate(blocks):
                kind = block.get("type")
                if kind == "text":
                    if i in self._text_builders:
                        block["text"] = "".join(self._text_builders[i])
                    else:
                        block.setdefault("text", "")
                elif kind == "thinking":
                    if i in self._thinking_builders:
                        block["thinking"] = "".join(self._thinking_builders[i])
                    else:
                        block.setdefault("thinking", "")
            response_text = "".join(self._response_text)
            if not blocks and response_text:
                blocks.append({"type": "text", "text": response_text})
            return {
                "id": self.msg_id,
                "type": "message",
                "role": "assistant",
                "content": blocks,
                "model": model,
                "stop_reason": self.final_stop_reason or "end_turn",
                "stop_sequence": None,
                "usage": {
                    "input_tokens": self.input_tokens,
                    "output_tokens": self.output_tokens,
                },
            }