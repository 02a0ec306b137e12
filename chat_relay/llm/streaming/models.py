"""
Streaming-specific dataclasses for the relay and consumer pipelines.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from ..exceptions import ErrorKind, LLMError


class LineKind(Enum):
    """Classification of one protocol line."""
    BLANK = "blank"
    COMMENT = "comment"
    DATA = "data"
    UNRECOGNIZED = "unrecognized"


class DemuxMode(Enum):
    """Demultiplexer scanning state."""
    OUTSIDE = "outside"
    INSIDE_THINKING = "inside_thinking"


class SessionState(Enum):
    """Lifecycle of one relay or consumer session."""
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED
        )


@dataclass(frozen=True)
class ProtocolLine:
    """One newline-delimited line extracted from the frame buffer."""
    kind: LineKind
    text: str


# --------------------------------------------------------------------------- #
# Events                                                                      #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ThinkingStarted:
    pass


@dataclass(frozen=True)
class ThinkingDelta:
    text: str
    accumulated: str


@dataclass(frozen=True)
class ThinkingComplete:
    accumulated: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class ParseError:
    """A data line that could not be decoded; the stream continues."""
    raw: str
    error: str = ""


@dataclass(frozen=True)
class StreamFailed:
    """The relay aborted the session mid-stream."""
    kind: ErrorKind
    message: str


Event = (
    ContentDelta
    | ThinkingStarted
    | ThinkingDelta
    | ThinkingComplete
    | Done
    | ParseError
    | StreamFailed
)

ThinkingEvent = ThinkingStarted | ThinkingDelta | ThinkingComplete


# --------------------------------------------------------------------------- #
# Per-session state                                                           #
# --------------------------------------------------------------------------- #


@dataclass
class DemuxState:
    """Mutable demultiplexer state, one per session."""
    mode: DemuxMode = DemuxMode.OUTSIDE
    thinking_accumulator: str = ""
    # Trailing text that may be the beginning of a split marker
    pending: str = ""


@dataclass
class DeadlineState:
    """Absolute deadlines on the loop clock."""
    first_token_deadline: float
    overall_deadline: float
    first_token_seen: bool = False


@dataclass
class CoalescerBuffer:
    pending_text: str = ""
    full_content: str = ""
    last_flush_time: float = 0.0


@dataclass
class StreamSession:
    """One relay connection or one client connection."""
    model: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.monotonic)
    state: SessionState = SessionState.CONNECTING
    cancelled: bool = False
    cancel_reason: LLMError | None = None

    @property
    def elapsed(self) -> float:
        """Seconds since the session was created."""
        return time.monotonic() - self.created_at

    def transition(self, state: SessionState) -> None:
        if self.state.is_terminal:
            return
        self.state = state

    def mark_cancelled(self, reason: LLMError) -> bool:
        """Record the first cancellation reason. Returns False if already cancelled."""
        if self.cancelled or self.state.is_terminal:
            return False
        self.cancelled = True
        self.cancel_reason = reason
        return True


@dataclass
class StreamMetrics:
    """Timing for one session, in milliseconds."""
    request_start: float = field(default_factory=time.monotonic)
    ttft_ms: float | None = None
    total_ms: float | None = None

    def mark_first_token(self) -> None:
        if self.ttft_ms is None:
            self.ttft_ms = round((time.monotonic() - self.request_start) * 1000, 2)

    def mark_finished(self) -> None:
        self.total_ms = round((time.monotonic() - self.request_start) * 1000, 2)


@dataclass(frozen=True)
class StreamResult:
    """Outcome of a consumer session."""
    session_id: str
    model: str
    state: SessionState
    content: str
    thinking: str
    metrics: StreamMetrics
    error: LLMError | None = None
    fallback_model: str | None = None

    @property
    def incomplete(self) -> bool:
        """Partial output kept after an abort."""
        return self.error is not None

    @property
    def stopped_by_user(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.USER_CANCELLED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error
