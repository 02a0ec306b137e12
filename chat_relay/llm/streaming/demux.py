"""
Tag-scanning demultiplexer for inline reasoning blocks.

Providers that expose their reasoning inline wrap it in a start/end marker
pair inside the ordinary content stream. The demultiplexer splits that single
text stream into a content channel and a thinking channel while deltas are
still arriving, with a two-state machine:

OUTSIDE          scan for the start marker; text before it is content
INSIDE_THINKING  scan for the end marker; text before it is reasoning

Markers may be split across deltas at any byte. The trailing fragment of a
delta that could be the beginning of the marker being searched for is held
back and joined with the next delta, so the emitted transitions and
accumulated totals do not depend on how the text was chunked.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from .models import (
    ContentDelta,
    DemuxMode,
    DemuxState,
    Done,
    Event,
    StreamFailed,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStarted,
)

logger = structlog.get_logger(__name__)

DEFAULT_START_MARKER = "<thinking>"
DEFAULT_END_MARKER = "</thinking>"


def partial_marker_length(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""
    for length in range(min(len(text), len(marker) - 1), 0, -1):
        if marker.startswith(text[-length:]):
            return length
    return 0


class ThinkingDemultiplexer:
    """Splits content deltas into content and thinking events for one session."""

    def __init__(
        self,
        start_marker: str = DEFAULT_START_MARKER,
        end_marker: str = DEFAULT_END_MARKER,
    ):
        if not start_marker or not end_marker:
            raise ValueError("thinking markers must be non-empty strings")
        self.start_marker = start_marker
        self.end_marker = end_marker
        self.state = DemuxState()
        self.blocks_completed = 0
        self.blocks_truncated = 0

    @property
    def inside_thinking(self) -> bool:
        return self.state.mode == DemuxMode.INSIDE_THINKING

    def process(self, delta: ContentDelta | str) -> list[Event]:
        """Consume one content delta and return the events it produced."""
        incoming = delta.text if isinstance(delta, ContentDelta) else delta
        text = self.state.pending + incoming
        self.state.pending = ""
        events: list[Event] = []

        while text:
            if self.state.mode == DemuxMode.OUTSIDE:
                text = self._scan_outside(text, events)
            else:
                text = self._scan_inside(text, events)

        return events

    def _scan_outside(self, text: str, events: list[Event]) -> str:
        start = text.find(self.start_marker)
        if start == -1:
            held = partial_marker_length(text, self.start_marker)
            content = text[:len(text) - held]
            if content:
                events.append(ContentDelta(text=content))
            self.state.pending = text[len(content):]
            return ""

        if start > 0:
            events.append(ContentDelta(text=text[:start]))
        events.append(ThinkingStarted())
        self.state.mode = DemuxMode.INSIDE_THINKING
        return text[start + len(self.start_marker):]

    def _scan_inside(self, text: str, events: list[Event]) -> str:
        end = text.find(self.end_marker)
        if end == -1:
            held = partial_marker_length(text, self.end_marker)
            reasoning = text[:len(text) - held]
            self._append_thinking(reasoning, events)
            self.state.pending = text[len(reasoning):]
            return ""

        self._append_thinking(text[:end], events)
        self._complete_block(events)
        return text[end + len(self.end_marker):]

    def _append_thinking(self, text: str, events: list[Event]) -> None:
        if not text:
            return
        self.state.thinking_accumulator += text
        events.append(
            ThinkingDelta(text=text, accumulated=self.state.thinking_accumulator)
        )

    def _complete_block(self, events: list[Event]) -> None:
        events.append(ThinkingComplete(accumulated=self.state.thinking_accumulator))
        self.state.thinking_accumulator = ""
        self.state.mode = DemuxMode.OUTSIDE
        self.blocks_completed += 1

    def finish(self) -> list[Event]:
        """
        Flush state at end of the upstream stream.

        Held-back text goes to the channel it was read in. A block that never
        saw its end marker is closed with a best-effort ``ThinkingComplete``
        so reasoning already shown to the user is not lost.
        """
        events: list[Event] = []
        pending = self.state.pending
        self.state.pending = ""

        if self.state.mode == DemuxMode.OUTSIDE:
            if pending:
                events.append(ContentDelta(text=pending))
            return events

        self._append_thinking(pending, events)
        logger.warning(
            "stream.thinking_block_truncated",
            accumulated_length=len(self.state.thinking_accumulator),
        )
        self.blocks_truncated += 1
        self._complete_block(events)
        return events

    def reset(self) -> None:
        self.state = DemuxState()


# --------------------------------------------------------------------------- #
# Outbound re-encoding                                                        #
# --------------------------------------------------------------------------- #


def event_payload(event: Event) -> dict[str, Any] | None:
    """JSON payload for an outbound event, ``None`` for the done sentinel."""
    if isinstance(event, ContentDelta):
        # Same shape as a pass-through provider chunk
        return {"choices": [{"index": 0, "delta": {"content": event.text}}]}
    if isinstance(event, ThinkingStarted):
        return {"thinking": True, "type": "started"}
    if isinstance(event, ThinkingDelta):
        return {
            "thinking": True,
            "type": "delta",
            "delta": event.text,
            "accumulated": event.accumulated,
        }
    if isinstance(event, ThinkingComplete):
        return {"thinking": True, "type": "complete", "accumulated": event.accumulated}
    if isinstance(event, StreamFailed):
        return {"error": {"kind": event.kind.value, "message": event.message}}
    if isinstance(event, Done):
        return None
    raise TypeError(f"Cannot encode {type(event).__name__} onto the outbound stream")


def encode_event(event: Event) -> str:
    """Serialize one event as an SSE data line."""
    payload = event_payload(event)
    if payload is None:
        return "data: [DONE]\n\n"
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
