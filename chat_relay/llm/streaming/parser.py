"""
SSE data-line parser with malformed-frame recovery.

Upstream providers routinely split one JSON payload across two network
chunks. A data line that fails to decode is therefore reported as a
``ParseError`` event and the stream carries on; the caller treats it as
"no event for this line". Each occurrence is counted, logged and passed to an
optional hook so that genuine protocol drift does not go unnoticed.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import structlog

from ..exceptions import ErrorKind
from .models import (
    ContentDelta,
    Done,
    Event,
    LineKind,
    ParseError,
    ProtocolLine,
    StreamFailed,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStarted,
)
from .reader import DATA_MARKER, FrameReader

logger = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
HEARTBEAT_PAYLOADS = frozenset({"", "ping", "heartbeat"})

ParseErrorHook = Callable[[ParseError], None]


class EventParser:
    """Maps data lines onto typed events."""

    def __init__(self, on_parse_error: ParseErrorHook | None = None):
        self.on_parse_error = on_parse_error
        self.stats = {
            'data_lines': 0,
            'events': 0,
            'parse_errors': 0,
            'ignored_lines': 0,
        }

    def parse(self, line: ProtocolLine) -> Event | None:
        """
        Parse one protocol line.

        Returns ``None`` for lines that carry no event (non-data lines,
        heartbeats, chunks without delta content).
        """
        if line.kind != LineKind.DATA:
            self.stats['ignored_lines'] += 1
            return None

        self.stats['data_lines'] += 1
        payload = line.text[len(DATA_MARKER):].strip()

        if payload == DONE_SENTINEL:
            self.stats['events'] += 1
            return Done()

        if payload in HEARTBEAT_PAYLOADS:
            return None

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            return self._parse_error(payload, str(e))

        if not isinstance(data, dict):
            return self._parse_error(payload, f"unexpected {type(data).__name__} payload")

        event = self._event_from_payload(data)
        if event is not None:
            self.stats['events'] += 1
        return event

    def _event_from_payload(self, data: dict[str, Any]) -> Event | None:
        if data.get("thinking") is True:
            return self._thinking_event(data)

        if isinstance(error := data.get("error"), dict):
            try:
                kind = ErrorKind(error.get("kind"))
            except ValueError:
                kind = ErrorKind.UNKNOWN_FAILURE
            return StreamFailed(kind=kind, message=str(error.get("message", "")))

        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            return None

        choice = choices[0]
        if not isinstance(choice, dict):
            return None
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if content and isinstance(content, str):
            return ContentDelta(text=content)
        return None

    def _thinking_event(self, data: dict[str, Any]) -> Event | None:
        event_type = data.get("type")
        if event_type == "started":
            return ThinkingStarted()
        if event_type == "delta":
            return ThinkingDelta(
                text=data.get("delta", ""),
                accumulated=data.get("accumulated", ""),
            )
        if event_type == "complete":
            return ThinkingComplete(accumulated=data.get("accumulated", ""))
        return None

    def _parse_error(self, raw: str, error: str) -> ParseError:
        self.stats['parse_errors'] += 1
        event = ParseError(raw=raw, error=error)
        logger.warning(
            "stream.malformed_frame",
            error_kind=ErrorKind.MALFORMED_UPSTREAM_FRAME.value,
            error=error,
            raw=raw[:200],
        )
        if self.on_parse_error is not None:
            self.on_parse_error(event)
        return event

    def get_stats(self) -> dict[str, int]:
        """Get parsing statistics for monitoring."""
        return self.stats.copy()

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        self.stats = {
            'data_lines': 0,
            'events': 0,
            'parse_errors': 0,
            'ignored_lines': 0,
        }


def events_from_chunk(
    reader: FrameReader, parser: EventParser, chunk: str
) -> list[Event]:
    """Feed one network chunk through reader and parser, dropping parse errors."""
    events: list[Event] = []
    for line in reader.feed(chunk):
        event = parser.parse(line)
        if event is None or isinstance(event, ParseError):
            continue
        events.append(event)
    return events
