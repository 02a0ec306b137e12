"""
First-token and overall deadlines for a streaming session.

Two timers are armed per session on the running event loop:

- the first-token timer fires only when no content has arrived yet and is
  disarmed by the first content byte
- the overall timer bounds the whole session and is never reset by progress

Either expiry reports a typed timeout error through the session's
``on_expire`` callback, which is responsible for aborting the connection.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from ..exceptions import FirstTokenTimeoutError, GatewayTimeoutError, StreamTimeoutError
from .models import DeadlineState

logger = structlog.get_logger(__name__)

ExpiryCallback = Callable[[StreamTimeoutError], None]


class DeadlineHandle:
    """Timers and state for one session's deadlines."""

    def __init__(
        self,
        state: DeadlineState,
        first_token_ms: float,
        overall_ms: float,
        on_expire: ExpiryCallback,
        loop: asyncio.AbstractEventLoop,
        model: str,
        provider: str,
    ):
        self.state = state
        self.first_token_ms = first_token_ms
        self.overall_ms = overall_ms
        self.on_expire = on_expire
        self.loop = loop
        self.model = model
        self.provider = provider
        self.error: StreamTimeoutError | None = None
        self.active = True
        self.first_token_timer: asyncio.TimerHandle | None = None
        self.overall_timer: asyncio.TimerHandle | None = None

    @property
    def expired(self) -> bool:
        return self.error is not None

    def remaining(self) -> float:
        """Seconds until the nearest deadline that can still fire."""
        now = self.loop.time()
        deadline = self.state.overall_deadline
        if not self.state.first_token_seen:
            deadline = min(deadline, self.state.first_token_deadline)
        return max(0.0, deadline - now)

    def disarm(self) -> None:
        for timer in (self.first_token_timer, self.overall_timer):
            if timer is not None:
                timer.cancel()
        self.first_token_timer = None
        self.overall_timer = None
        self.active = False


class DeadlineManager:
    """Arms, disarms and fires session deadlines."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    def start(
        self,
        first_token_ms: float,
        overall_ms: float,
        on_expire: ExpiryCallback,
        *,
        model: str = "unknown",
        provider: str = "unknown",
    ) -> DeadlineHandle:
        """Arm both timers. Must be called with an event loop available."""
        if first_token_ms <= 0 or overall_ms <= 0:
            raise ValueError("deadline values must be positive milliseconds")

        loop = self._loop or asyncio.get_running_loop()
        now = loop.time()
        state = DeadlineState(
            first_token_deadline=now + first_token_ms / 1000,
            overall_deadline=now + overall_ms / 1000,
        )
        handle = DeadlineHandle(
            state, first_token_ms, overall_ms, on_expire, loop, model, provider
        )
        handle.first_token_timer = loop.call_later(
            first_token_ms / 1000, self._fire_first_token, handle
        )
        handle.overall_timer = loop.call_later(
            overall_ms / 1000, self._fire_overall, handle
        )
        return handle

    def on_byte_received(self, handle: DeadlineHandle) -> bool:
        """
        Record the first content byte.

        Returns False when the session has already expired or been cancelled,
        in which case the caller must stop processing.
        """
        if not handle.active:
            return False
        if not handle.state.first_token_seen:
            handle.state.first_token_seen = True
            if handle.first_token_timer is not None:
                handle.first_token_timer.cancel()
                handle.first_token_timer = None
        return True

    def cancel(self, handle: DeadlineHandle) -> None:
        """Disarm both timers on completion or explicit cancellation."""
        handle.disarm()

    def cancel_threadsafe(self, handle: DeadlineHandle) -> None:
        """Disarm from a thread other than the event loop's."""
        handle.loop.call_soon_threadsafe(self.cancel, handle)

    def _fire_first_token(self, handle: DeadlineHandle) -> None:
        handle.first_token_timer = None
        if not handle.active or handle.state.first_token_seen:
            return
        self._expire(
            handle,
            FirstTokenTimeoutError(
                f"No first token within {handle.first_token_ms:g}ms",
                timeout_ms=handle.first_token_ms,
                provider=handle.provider,
                model=handle.model,
            ),
        )

    def _fire_overall(self, handle: DeadlineHandle) -> None:
        handle.overall_timer = None
        if not handle.active:
            return
        self._expire(
            handle,
            GatewayTimeoutError(
                f"Overall deadline of {handle.overall_ms:g}ms elapsed",
                timeout_ms=handle.overall_ms,
                provider=handle.provider,
                model=handle.model,
            ),
        )

    def _expire(self, handle: DeadlineHandle, error: StreamTimeoutError) -> None:
        handle.error = error
        handle.disarm()
        logger.warning(
            "stream.deadline_expired",
            deadline=error.deadline,
            timeout_ms=error.timeout_ms,
            model=handle.model,
            first_token_seen=handle.state.first_token_seen,
        )
        handle.on_expire(error)
