"""
Streaming pipeline shared by the relay and the consumer.

- Line framing and SSE event parsing
- Inline reasoning demultiplexing
- First-token and overall deadlines
- Coalesced UI updates
"""

from __future__ import annotations

from .coalescer import UpdateCoalescer
from .deadlines import DeadlineHandle, DeadlineManager
from .demux import ThinkingDemultiplexer, encode_event
from .models import (
    ContentDelta,
    Done,
    Event,
    ParseError,
    SessionState,
    StreamFailed,
    StreamResult,
    StreamSession,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStarted,
)
from .parser import EventParser
from .reader import FrameReader

__all__ = [
    "ContentDelta",
    "DeadlineHandle",
    "DeadlineManager",
    "Done",
    "Event",
    "EventParser",
    "FrameReader",
    "ParseError",
    "SessionState",
    "StreamFailed",
    "StreamResult",
    "StreamSession",
    "ThinkingComplete",
    "ThinkingDelta",
    "ThinkingDemultiplexer",
    "ThinkingStarted",
    "UpdateCoalescer",
    "encode_event",
]
