"""Per-conversation session state and upstream error classification."""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from orchidsproxy.messages import ClaudeRequest
from orchidsproxy.utils import extract_workdir_from_request, header_value, metadata_string

logger = logging.getLogger(__name__)

SESSION_MAX_SIZE = 1024
SESSION_CLEANUP_INTERVAL = 5 * 60.0
SESSION_MAX_AGE = 30 * 60.0

_SESSION_HEADERS = ("X-Conversation-Id", "X-Session-Id", "X-Thread-Id", "X-Chat-Id")
_SESSION_METADATA_KEYS = (
    "conversation_id", "conversationId",
    "session_id", "sessionId",
    "thread_id", "threadId",
    "chat_id", "chatId",
)


@dataclass(frozen=True)
class UpstreamErrorClass:
    """How an upstream failure should be handled."""

    category: str
    retryable: bool
    switch_account: bool


def _has_http_status(lower: str, code: str) -> bool:
    """True when the status code appears as a standalone number in the text."""
    return re.search(rf"(?<!\d){code}(?!\d)", lower) is not None


def _contains_any(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def classify_upstream_error(err_str: str) -> UpstreamErrorClass:
    """Classify an upstream error message into a retry category."""
    lower = err_str.lower()
    if "canceled" in lower:
        return UpstreamErrorClass("canceled", False, False)
    if _has_http_status(lower, "401") or _contains_any(lower, "signed out", "signed_out"):
        return UpstreamErrorClass("auth", True, True)
    if _has_http_status(lower, "403"):
        return UpstreamErrorClass("auth_blocked", True, True)
    if _has_http_status(lower, "404"):
        return UpstreamErrorClass("auth_blocked", False, False)
    if "input is too long" in lower or _has_http_status(lower, "400"):
        return UpstreamErrorClass("client", False, False)
    if _has_http_status(lower, "429") or _contains_any(
        lower,
        "too many requests",
        "rate limit",
        "no remaining quota",
        "out of credits",
        "credits exhausted",
        "run out of credits",
    ):
        return UpstreamErrorClass("rate_limit", True, True)
    if _contains_any(lower, "timeout", "deadline exceeded", "context deadline"):
        return UpstreamErrorClass("timeout", True, True)
    if (
        _contains_any(
            lower,
            "connection reset",
            "connection refused",
            "unexpected eof",
            "use of closed",
            "broken pipe",
        )
        or lower.endswith(": eof")
        or lower == "eof"
    ):
        return UpstreamErrorClass("network", True, True)
    if any(_has_http_status(lower, code) for code in ("500", "502", "503", "504")):
        return UpstreamErrorClass("server", True, True)
    return UpstreamErrorClass("unknown", True, True)


def compute_retry_delay(base: float, attempt: int, category: str) -> float:
    """Exponential back-off in seconds, capped at 30s, at least 2s for rate limits."""
    if base <= 0:
        return 0.0
    attempt = min(max(attempt, 1), 4)
    delay = base * (1 << (attempt - 1))
    if category == "rate_limit" and delay < 2.0:
        delay = 2.0
    return min(delay, 30.0)


def _normalize_path(path: str) -> str:
    raw = path.strip()
    return os.path.normpath(raw) if raw else ""


class SessionStore:
    """Remembers each conversation's workdir and upstream conversation id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._workdirs: dict[str, str] = {}
        self._conv_ids: dict[str, str] = {}
        self._last_access: dict[str, float] = {}
        self._cleanup_run: float | None = None

    def resolve_workdir(
        self,
        headers: Mapping[str, str] | None,
        req: ClaudeRequest,
        conversation_key: str,
    ) -> tuple[str, str, bool]:
        """Return the current workdir, the previous one and whether it changed."""
        prev = ""
        if conversation_key:
            with self._lock:
                prev = self._workdirs.get(conversation_key, "")

        workdir, source = extract_workdir_from_request(headers, req)

        has_explicit_session = bool(
            req.conversation_id
            or header_value(headers, *_SESSION_HEADERS)
            or (req.metadata and metadata_string(req.metadata, *_SESSION_METADATA_KEYS))
        )
        if not workdir and has_explicit_session and prev:
            workdir, source = prev, "session"
            logger.info("Recovered workdir %s from session %s", workdir, conversation_key)

        if workdir and conversation_key:
            with self._lock:
                self._workdirs[conversation_key] = workdir
                self._last_access[conversation_key] = self._clock()
                self._cleanup_locked(self._clock())

        if workdir:
            logger.info("Using dynamic workdir %s (source: %s)", workdir, source)

        norm_prev = _normalize_path(prev)
        norm_next = _normalize_path(workdir)
        changed = bool(norm_prev) and bool(norm_next) and norm_prev != norm_next
        return workdir, prev, changed

    def conversation_id(self, key: str) -> str:
        """The upstream conversation id stored for key, or an empty string."""
        if not key:
            return ""
        with self._lock:
            value = self._conv_ids.get(key, "")
            now = self._clock()
            self._last_access[key] = now
            self._cleanup_locked(now)
        return value

    def set_conversation_id(self, key: str, conversation_id: str) -> None:
        if not key:
            return
        with self._lock:
            now = self._clock()
            self._conv_ids[key] = conversation_id
            self._last_access[key] = now
            self._cleanup_locked(now)

    def forget_conversation(self, key: str) -> None:
        """Drop the upstream conversation so the next request starts afresh."""
        if not key:
            return
        with self._lock:
            self._conv_ids.pop(key, None)
            self._last_access.pop(key, None)

    def cleanup(self, now: float | None = None) -> None:
        """Remove stale sessions if the cleanup interval or size limit is reached."""
        with self._lock:
            self._cleanup_locked(self._clock() if now is None else now)

    def _cleanup_locked(self, now: float) -> None:
        if (
            len(self._workdirs) < SESSION_MAX_SIZE
            and self._cleanup_run is not None
            and now - self._cleanup_run < SESSION_CLEANUP_INTERVAL
        ):
            return
        stale = [k for k, last in self._last_access.items() if now - last > SESSION_MAX_AGE]
        for key in stale:
            self._workdirs.pop(key, None)
            self._conv_ids.pop(key, None)
            self._last_access.pop(key, None)
        self._cleanup_run = now