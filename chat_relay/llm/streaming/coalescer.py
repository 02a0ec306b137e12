"""
Bounded-frequency emission of streamed text.

Tokens can arrive far faster than a consumer can usefully redraw. Every delta
is appended to the logical content immediately, but the emit callback only
runs on a fixed interval, with a guaranteed final flush at stream end.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

from .models import CoalescerBuffer

EmitCallback = Callable[[str, str], None]

DEFAULT_INTERVAL_MS = 50


class UpdateCoalescer:
    """Batches deltas into ``emit(delta_since_last_flush, full_content)`` calls."""

    def __init__(self, emit: EmitCallback, interval_ms: float = DEFAULT_INTERVAL_MS):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.emit = emit
        self.interval_ms = interval_ms
        self.buffer = CoalescerBuffer(last_flush_time=time.monotonic())
        self.emissions = 0
        self._task: asyncio.Task | None = None

    @property
    def full_content(self) -> str:
        return self.buffer.full_content

    @property
    def pending_text(self) -> str:
        return self.buffer.pending_text

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic flush on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        interval = self.interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.flush()

    def on_delta(self, text: str) -> None:
        if not text:
            return
        self.buffer.pending_text += text
        self.buffer.full_content += text

    def flush(self) -> bool:
        """Emit pending text if there is any. Returns True when emitted."""
        if not self.buffer.pending_text:
            return False
        delta = self.buffer.pending_text
        self.buffer.pending_text = ""
        self.buffer.last_flush_time = time.monotonic()
        self.emissions += 1
        self.emit(delta, self.buffer.full_content)
        return True

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def final_flush(self) -> bool:
        """Stop the periodic flush and emit whatever is still pending."""
        self.stop()
        return self.flush()

    async def aclose(self) -> None:
        """Stop and wait for the periodic task to finish."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def reset(self) -> None:
        """Clear buffered text for a new block; keeps the periodic task."""
        self.buffer = CoalescerBuffer(last_flush_time=time.monotonic())
