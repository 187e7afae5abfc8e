"""Translation of upstream events into the client's message stream."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from orchidsproxy.response_stream import ResponseStream
from orchidsproxy.sse import SSEMessage, ToolCall, block_delta_event
from orchidsproxy.stream_tools import (
    _encode_json,
    extract_event_message,
    extract_thinking_signature,
    fallback_tool_call_id,
    normalize_intro_key,
    sanitize_tool_input,
)

logger = logging.getLogger(__name__)

CREDITS_EXHAUSTED_TEXT = "You have run out of credits. Please upgrade your plan to continue."
FS_OPERATION_THROTTLE = 1.0

_THINKING_STATUS_EVENTS = ("coding_agent.start", "coding_agent.initializing")


def _str_field(mapping: Any, key: str) -> str:
    if not isinstance(mapping, Mapping):
        return ""
    value = mapping.get(key)
    return value if isinstance(value, str) else ""


def _data_of(event: Mapping[str, Any]) -> Mapping[str, Any]:
    data = event.get("data")
    return data if isinstance(data, Mapping) else {}


def _usage_int(usage: Any, key: str) -> int | None:
    if not isinstance(usage, Mapping):
        return None
    raw = usage.get(key)
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    return None


class StreamHandler(ResponseStream):
    """A response stream fed by events from the upstream."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        handlers: dict[str, Callable[[SSEMessage, Mapping[str, Any]], None]] = {
            "model.conversation_id": self._on_conversation_id,
            "model.reasoning-start": self._on_reasoning_start,
            "model.reasoning-delta": self._on_reasoning_delta,
            "coding_agent.reasoning.chunk": self._on_reasoning_delta,
            "model.reasoning-end": self._on_block_end,
            "model.text-start": self._on_text_start,
            "model.text-delta": self._on_text_delta,
            "coding_agent.output_text.delta": self._on_text_delta,
            "model.text-end": self._on_block_end,
            "coding_agent.start": self._on_status,
            "coding_agent.initializing": self._on_status,
            "init": self._on_status,
            "coding_agent.credits_exhausted": self._on_credits_exhausted,
            "coding_agent.Write.started": self._on_write_started,
            "coding_agent.Edit.edit.started": self._on_write_started,
            "coding_agent.Write.content.chunk": self._on_write_chunk,
            "coding_agent.Edit.edit.chunk": self._on_write_chunk,
            "coding_agent.Write.content.completed": self._on_write_completed,
            "coding_agent.Edit.edit.completed": self._on_write_completed,
            "coding_agent.edit_file.completed": self._on_write_completed,
            "fs_operation": self._on_fs_operation,
            "model.tool-input-start": self._on_tool_input_start,
            "model.tool-input-delta": self._on_tool_input_delta,
            "model.tool-input-end": self._on_tool_input_end,
            "model.tool-call": self._on_tool_call,
            "model.tokens-used": self._on_tokens_used,
            "model.finish": self._on_finish,
        }
        self._handlers = handlers

    def handle_message(self, message: SSEMessage) -> None:
        """Apply one upstream event to the response."""
        if self.debug and message.type != "content_block_delta":
            logger.debug("Incoming SSE: %s", message.type)
        with self._lock:
            if self.has_return:
                return

        event: Mapping[str, Any] = message.event or {}
        event_key = message.type
        if message.type == "model" and message.event is not None:
            evt_type = message.event.get("type")
            if isinstance(evt_type, str):
                event_key = "model." + evt_type

        if "error" in event_key and "data" in event:
            logger.warning("SSE error payload (%s): %s", event_key, event["data"])

        if self.suppress_thinking and (
            event_key.startswith("model.reasoning-")
            or event_key.startswith("coding_agent.reasoning")
            or event_key in _THINKING_STATUS_EVENTS
        ):
            return

        handler = self._handlers.get(event_key)
        if handler is not None:
            handler(message, event)

    # -- helpers -----------------------------------------------------------

    def _write_raw(self, message: SSEMessage) -> None:
        self.write_sse(message.type, _encode_json(message.event))

    def _should_skip_intro(self, delta: str) -> bool:
        key = normalize_intro_key(delta)
        if not key:
            return False
        with self._lock:
            if key in self._intro_dedup:
                return True
            self._intro_dedup.add(key)
            return False

    def _apply_usage(self, usage: Any) -> None:
        input_tokens = _usage_int(usage, "inputTokens")
        if input_tokens is None:
            input_tokens = _usage_int(usage, "input_tokens")
        output_tokens = _usage_int(usage, "outputTokens")
        if output_tokens is None:
            output_tokens = _usage_int(usage, "output_tokens")
        if input_tokens is not None or output_tokens is not None:
            self.set_usage_tokens(input_tokens, output_tokens)

    def _set_thinking_signature(self, internal: int, sig: str) -> None:
        with self._lock:
            if 0 <= internal < len(self.content_blocks) and self._thinking_sigs.get(internal) == "":
                self._thinking_sigs[internal] = sig
                self.content_blocks[internal]["signature"] = sig

    def _drop_tool_input(self, tool_id: str) -> None:
        self._tool_input_buffers.pop(tool_id, None)
        self._tool_input_had_delta.pop(tool_id, None)
        self._tool_input_names.pop(tool_id, None)

    # -- event handlers ----------------------------------------------------

    def _on_conversation_id(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        conv_id = _str_field(event, "id")
        if conv_id and self.on_conversation_id is not None:
            self.on_conversation_id(conv_id)

    def _on_reasoning_start(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        self._pending_thinking_sig = ""
        sig = extract_thinking_signature(event)
        if sig:
            self._pending_thinking_sig = sig
            self.ensure_block("thinking")

    def _on_reasoning_delta(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        if not self._pending_thinking_sig:
            sig = extract_thinking_signature(event)
            if sig:
                self._pending_thinking_sig = sig
        else:
            sig = self._pending_thinking_sig

        if message.type == "model":
            delta = _str_field(event, "delta")
        else:
            delta = _str_field(_data_of(event), "text")

        if not delta:
            if sig:
                self.ensure_block("thinking")
                self._set_thinking_signature(self._active_thinking_block, sig)
            return

        with self._lock:
            sse_idx = self._active_thinking_sse
            internal = self._active_thinking_block
        if sig:
            self._set_thinking_signature(internal, sig)
        if sse_idx < 0:
            sse_idx = self.ensure_block("thinking")
            with self._lock:
                internal = self._active_thinking_block
        if self.is_stream:
            self.add_output_tokens(delta)
        self._append_to_builder(self._thinking_builders, internal, delta)
        self.write_sse(
            "content_block_delta",
            block_delta_event(sse_idx, {"type": "thinking_delta", "thinking": delta}),
        )

    def _on_block_end(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        self.close_active_block()

    def _on_text_start(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        self.ensure_block("text")

    def _on_text_delta(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        delta = _str_field(event, "delta")
        if not delta or self._should_skip_intro(delta):
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
        if not self.is_stream:
            with self._lock:
                self._response_text.append(delta)
        self._append_to_builder(self._text_builders, internal, delta)
        self.write_sse(
            "content_block_delta",
            block_delta_event(sse_idx, {"type": "text_delta", "text": delta}),
        )

    def _on_status(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        with self._lock:
            has_thinking = self._active_thinking_sse >= 0
        if has_thinking or self._pending_thinking_sig:
            self.ensure_block("thinking")
        if self.is_stream:
            self._write_raw(message)

    def _on_credits_exhausted(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        error_msg = extract_event_message(event, CREDITS_EXHAUSTED_TEXT)
        self.close_active_block()
        self.inject_error_text(error_msg)
        self.finish_response("end_turn")

    def _on_write_started(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        if not self.is_stream or self.suppress_thinking:
            return
        path = _str_field(_data_of(event), "file_path")
        op = "Editing" if "Edit" in message.type else "Writing"
        self.ensure_block("thinking")
        self.emit_thinking_delta(f"\n[{op} {path}...]\n")
        self._write_raw(message)

    def _on_write_chunk(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        if not self.is_stream:
            return
        text = _str_field(_data_of(event), "text")
        if text:
            with self._lock:
                self._write_chunks.append(text)
            if self.suppress_thinking:
                self.emit_text_delta(text)
            else:
                self.emit_thinking_delta(text)
        if not self.suppress_thinking:
            self._write_raw(message)

    def _on_write_completed(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        if self.is_stream and not self.suppress_thinking:
            self.emit_thinking_delta("\n[Done]\n")
            self._write_raw(message)

    def _on_fs_operation(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        now = self._clock()
        with self._lock:
            if self._last_scan_time is not None and now - self._last_scan_time < FS_OPERATION_THROTTLE:
                return
            self._last_scan_time = now
        if self.debug:
            logger.debug("Upstream active: %s", event.get("operation"))
        if self.is_stream:
            self._write_raw(message)
        else:
            self.write_keep_alive()

    def _on_tool_input_start(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        self.close_active_block()
        tool_id = _str_field(event, "id")
        tool_name = _str_field(event, "toolName")
        if not tool_id or not tool_name:
            return
        self._current_tool_input_id = tool_id
        self._tool_input_names[tool_id] = tool_name
        self._tool_input_buffers[tool_id] = []
        self._tool_input_had_delta[tool_id] = False

    def _on_tool_input_delta(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        tool_id = _str_field(event, "id")
        delta = _str_field(event, "delta")
        if not tool_id:
            return
        buffer = self._tool_input_buffers.get(tool_id)
        if buffer is not None:
            buffer.append(delta)
        if delta:
            self._tool_input_had_delta[tool_id] = True

    def _on_tool_input_end(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        tool_id = _str_field(event, "id")
        if not tool_id:
            return
        if self._current_tool_input_id == tool_id:
            self._current_tool_input_id = ""
        name = self._tool_input_names.get(tool_id, "")
        if not name:
            self._drop_tool_input(tool_id)
            return
        input_str = "".join(self._tool_input_buffers.get(tool_id, [])).strip()
        input_str = sanitize_tool_input(name, input_str)
        self._drop_tool_input(tool_id)
        if self._tool_call_handled.get(tool_id):
            return
        call = ToolCall(id=tool_id, name=name, input=input_str)
        if not self.should_accept_tool_call(call):
            return
        self._tool_call_handled[tool_id] = True
        if self.is_stream:
            if input_str:
                self.add_output_tokens(input_str)
            self._emit_tool_use_from_input(tool_id, name, input_str)
            return
        self._handle_tool_call_after_checks(call)

    def _on_tool_call(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        tool_id = _str_field(event, "toolCallId")
        tool_name = _str_field(event, "toolName")
        input_str = sanitize_tool_input(tool_name, _str_field(event, "input"))
        if not tool_id:
            tool_id = fallback_tool_call_id(tool_name, input_str)
            if not tool_id:
                return
        if self._tool_call_handled.get(tool_id):
            return
        call = ToolCall(id=tool_id, name=tool_name, input=input_str)
        if not self.should_accept_tool_call(call):
            return
        if self._current_tool_input_id == tool_id:
            self._current_tool_input_id = ""
        self._drop_tool_input(tool_id)
        self._tool_call_handled[tool_id] = True
        if self.is_stream:
            self._emit_tool_use_from_input(tool_id, tool_name, input_str)
            return
        self._handle_tool_call_after_checks(call)

    def _on_tokens_used(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        self._apply_usage(event)

    def _on_finish(self, message: SSEMessage, event: Mapping[str, Any]) -> None:
        stop_reason = "end_turn"
        usage = event.get("usage")
        if isinstance(usage, Mapping):
            self._apply_usage(usage)
        finish_reason = event.get("finishReason")
        if finish_reason in ("tool-calls", "tool_use"):
            stop_reason = "tool_use"
        elif finish_reason in ("stop", "end_turn"):
            stop_reason = "end_turn"

        with self._lock:
            tool_use_emitted = bool(self._tool_call_emitted)
            had_tool_calls = bool(
                self._tool_call_count > 0 or self._pending_tool_calls or tool_use_emitted
            )
        if tool_use_emitted:
            stop_reason = "tool_use"
        if stop_reason == "tool_use" and not had_tool_calls:
            stop_reason = "end_turn"

        self.close_active_block()
        self.finish_response(stop_reason)