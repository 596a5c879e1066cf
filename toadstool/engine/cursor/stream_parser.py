"""cursor-agent NDJSON stream parser.

Turns raw stdout bytes into validated :data:`StreamEvent` objects:

- partial line buffering (lines and UTF-8 code points may be split
  across chunks)
- recovery from malformed JSON and schema-invalid lines (counted,
  reported through optional callbacks, never fatal)
- per-session accumulation of assistant text with a byte ceiling
- a high-watermark backpressure signal on the pending-event queue

One parser instance serves one prompt invocation.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pydantic

from ..config import DEFAULT_BACKPRESSURE_HIGH_WATERMARK, DEFAULT_MAX_OUTPUT_BYTES
from .stream_types import AssistantMessageEvent, StreamEvent, parse_stream_event

logger = logging.getLogger(__name__)

MalformedLineCallback = Callable[[str, Exception], None]
InvalidEventCallback = Callable[[Any, Exception], None]
# (session_id, original_bytes, limit_bytes)
TextTruncatedCallback = Callable[[str, int, int], None]


@dataclass
class ParseResult:
    """Counters for one push_chunk()/end() call."""
    parsed_count: int = 0
    malformed_line_count: int = 0
    invalid_event_count: int = 0
    should_pause: bool = False


@dataclass
class AccumulatedText:
    """Assistant text accumulated for one vendor session."""
    text: str = ""
    truncated: bool = False


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Longest prefix of *text* whose UTF-8 encoding fits in *max_bytes*."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    # A cut inside a multi-byte sequence leaves an incomplete tail that
    # "ignore" drops, so no code point is ever split.
    return encoded[:max(max_bytes, 0)].decode("utf-8", errors="ignore")


def merge_text(existing: str, incoming: str, *, is_delta: bool = True) -> str:
    """Merge a new assistant text fragment into the accumulated text.

    Handles both vendor emission styles: incremental deltas and
    "full text so far" snapshots (including the final complete message).
    """
    if not existing:
        return incoming
    if incoming.startswith(existing):
        return incoming
    if not is_delta and existing.endswith(incoming):
        return existing
    return existing + incoming


class CursorStreamParser:
    """Incremental NDJSON parser for cursor-agent stream-json output."""

    def __init__(
        self,
        *,
        max_accumulated_text_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        backpressure_high_watermark: int = DEFAULT_BACKPRESSURE_HIGH_WATERMARK,
        on_malformed_line: MalformedLineCallback | None = None,
        on_invalid_event: InvalidEventCallback | None = None,
        on_text_truncated: TextTruncatedCallback | None = None,
    ) -> None:
        if backpressure_high_watermark < 1:
            raise ValueError("backpressure_high_watermark must be >= 1")
        self._max_text_bytes = max_accumulated_text_bytes
        self._high_watermark = backpressure_high_watermark
        self._on_malformed_line = on_malformed_line
        self._on_invalid_event = on_invalid_event
        self._on_text_truncated = on_text_truncated
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending: deque[StreamEvent] = deque()
        self._accumulated: dict[str, AccumulatedText] = {}
        self.total_parsed = 0
        self.total_malformed = 0
        self.total_invalid = 0

    # ── Public API ──

    def push_chunk(self, data: bytes | str) -> ParseResult:
        """Feed a stdout chunk; complete lines are parsed immediately."""
        if isinstance(data, (bytes, bytearray, memoryview)):
            text = self._decoder.decode(bytes(data))
        else:
            text = data
        self._buffer += text

        lines = self._buffer.split("\n")
        # The last element may be an incomplete line
        self._buffer = lines.pop()

        result = ParseResult()
        for line in lines:
            self._parse_line(line, result)
        result.should_pause = self.is_backpressured()
        return result

    def end(self) -> ParseResult:
        """Flush the decoder and any unterminated trailing line."""
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        result = ParseResult()
        if remaining.strip():
            self._parse_line(remaining, result)
        result.should_pause = self.is_backpressured()
        return result

    def drain_events(self) -> list[StreamEvent]:
        """Return all pending events in parse order and clear the queue."""
        events = list(self._pending)
        self._pending.clear()
        return events

    def get_pending_event_count(self) -> int:
        return len(self._pending)

    def is_backpressured(self) -> bool:
        return len(self._pending) >= self._high_watermark

    def get_accumulated_text(self, session_id: str) -> AccumulatedText:
        entry = self._accumulated.get(session_id)
        if entry is None:
            return AccumulatedText()
        return AccumulatedText(text=entry.text, truncated=entry.truncated)

    # ── Internal ──

    def _parse_line(self, raw_line: str, result: ParseResult) -> None:
        line = raw_line.strip()
        if not line:
            return

        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            result.malformed_line_count += 1
            self.total_malformed += 1
            logger.warning("Skipping malformed NDJSON line: %s", line[:200])
            self._notify(self._on_malformed_line, line, exc)
            return

        try:
            event = parse_stream_event(payload)
        except pydantic.ValidationError as exc:
            result.invalid_event_count += 1
            self.total_invalid += 1
            event_type = payload.get("type") if isinstance(payload, dict) else None
            logger.warning(
                "Skipping invalid stream event type=%s (%d validation errors)",
                event_type, exc.error_count(),
            )
            self._notify(self._on_invalid_event, payload, exc)
            return

        self._pending.append(event)
        result.parsed_count += 1
        self.total_parsed += 1

        if isinstance(event, AssistantMessageEvent):
            self._accumulate(event)

    def _accumulate(self, event: AssistantMessageEvent) -> None:
        incoming = event.message.text
        if not incoming:
            return
        entry = self._accumulated.setdefault(event.session_id, AccumulatedText())
        if entry.truncated:
            # The fitting prefix of a longer text cannot change
            return
        merged = merge_text(
            entry.text, incoming, is_delta=event.timestamp_ms is not None,
        )
        merged_bytes = len(merged.encode("utf-8"))
        if merged_bytes <= self._max_text_bytes:
            entry.text = merged
            return

        entry.text = truncate_utf8(merged, self._max_text_bytes)
        entry.truncated = True
        logger.warning(
            "Accumulated text for session %s truncated at %d bytes (was %d)",
            event.session_id, self._max_text_bytes, merged_bytes,
        )
        if self._on_text_truncated is not None:
            try:
                self._on_text_truncated(
                    event.session_id, merged_bytes, self._max_text_bytes,
                )
            except Exception:
                logger.exception("on_text_truncated callback failed")

    @staticmethod
    def _notify(callback: Callable[[Any, Exception], None] | None, subject: Any, exc: Exception) -> None:
        if callback is None:
            return
        try:
            callback(subject, exc)
        except Exception:
            logger.exception("Stream parser callback failed")
