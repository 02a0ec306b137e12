"""
Client-side consumer of the relay's SSE stream.

One ``stream()`` call is one session: it enforces the model's first-token and
overall deadlines, decodes the content and thinking channels, and delivers
them through coalesced callbacks. Every way a session can end (completion,
deadline, user stop, upstream error) runs the final flush and returns a
``StreamResult`` carrying whatever was received.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx
import structlog

from ...logging_utils import operation_context
from ..exceptions import (
    LLMError,
    UpstreamUnavailableError,
    UserCancelledError,
    classify_exception,
    classify_status,
    error_from_payload,
)
from .coalescer import UpdateCoalescer
from .deadlines import DeadlineHandle, DeadlineManager
from .models import (
    ContentDelta,
    Done,
    SessionState,
    StreamFailed,
    StreamMetrics,
    StreamResult,
    StreamSession,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingEvent,
    ThinkingStarted,
)
from .parser import EventParser
from .reader import FrameReader

if TYPE_CHECKING:                                        # pragma: no cover
    from ...config import Configuration
    from ...relay_service import ChatRequest

logger = structlog.get_logger(__name__)

RELAY_PROVIDER = "relay"


@dataclass
class StreamCallbacks:
    """UI hooks. Text callbacks receive ``(delta, full_text)``."""
    on_content: Callable[[str, str], None] | None = None
    on_thinking_start: Callable[[], None] | None = None
    on_thinking: Callable[[str, str], None] | None = None
    on_thinking_complete: Callable[[str], None] | None = None
    on_error: Callable[[LLMError], None] | None = None
    on_complete: Callable[[StreamResult], None] | None = None


@dataclass
class _ActiveStream:
    session: StreamSession
    callbacks: StreamCallbacks
    metrics: StreamMetrics
    content: UpdateCoalescer
    thinking: UpdateCoalescer
    thinking_blocks: list[str] = field(default_factory=list)
    deadline: DeadlineHandle | None = None
    task: asyncio.Task | None = None
    loop: asyncio.AbstractEventLoop | None = None

    def abort(self, reason: LLMError) -> bool:
        if not self.session.mark_cancelled(reason):
            return False
        if self.task is not None:
            self.task.cancel()
        return True

    @property
    def thinking_text(self) -> str:
        parts = list(self.thinking_blocks)
        # Reasoning of a block cut off before its end marker
        if self.thinking.full_content:
            parts.append(self.thinking.full_content)
        return "\n\n".join(parts)


class StreamConsumer:
    """Reads relay sessions and drives UI callbacks."""

    def __init__(
        self,
        configuration: Configuration,
        client: httpx.AsyncClient | None = None,
        *,
        api_token: str | None = None,
        deadlines: DeadlineManager | None = None,
    ):
        self.configuration = configuration
        client_config = configuration.get_client_config()
        self.stream_path: str = client_config["stream_path"]
        self.interval_ms: float = client_config["update_interval_ms"]

        headers = {"Accept": "text/event-stream"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=client_config["base_url"],
            headers=headers,
            # Deadlines bound the read, not httpx
            timeout=httpx.Timeout(None, connect=client_config.get("connect_timeout", 10.0)),
        )
        self.deadlines = deadlines or DeadlineManager()
        self._active: _ActiveStream | None = None

    @property
    def streaming(self) -> bool:
        return self._active is not None

    def cancel(self) -> bool:
        """Stop the current response. Returns False when nothing is streaming."""
        active = self._active
        if active is None:
            return False
        stopped = active.abort(
            UserCancelledError(
                "Stopped by user", provider=RELAY_PROVIDER, model=active.session.model
            )
        )
        if stopped and active.deadline is not None:
            self.deadlines.cancel(active.deadline)
        return stopped

    def cancel_threadsafe(self) -> bool:
        """Request a stop from a thread other than the event loop's (a UI thread)."""
        active = self._active
        if active is None or active.loop is None:
            return False
        active.loop.call_soon_threadsafe(self.cancel)
        return True

    async def stream(
        self,
        request: ChatRequest,
        callbacks: StreamCallbacks | None = None,
        *,
        retry_with_fallback: bool = False,
    ) -> StreamResult:
        """
        Run one session and return its result; errors are attached, not raised.

        With ``retry_with_fallback`` a session that failed before delivering
        any content is retried once on the configured fallback model.
        """
        callbacks = callbacks or StreamCallbacks()
        result = await self._stream_once(request, callbacks)

        if (
            retry_with_fallback
            and result.fallback_model
            and not result.content
            and not result.stopped_by_user
        ):
            logger.info(
                "consumer.retrying_with_fallback",
                model=request.model,
                fallback_model=result.fallback_model,
                error_kind=result.error.kind.value if result.error else None,
            )
            retry = request.model_copy(update={"model": result.fallback_model})
            result = await self._stream_once(retry, callbacks)

        return result

    async def _stream_once(
        self, request: ChatRequest, callbacks: StreamCallbacks
    ) -> StreamResult:
        if self._active is not None:
            raise RuntimeError("A stream is already active on this consumer")

        session = StreamSession(model=request.model)
        deadlines = self.configuration.get_deadlines(request.model)
        active = _ActiveStream(
            session=session,
            callbacks=callbacks,
            metrics=StreamMetrics(),
            content=UpdateCoalescer(
                _forward(callbacks.on_content), self.interval_ms
            ),
            thinking=UpdateCoalescer(
                _forward(callbacks.on_thinking), self.interval_ms
            ),
        )
        active.loop = asyncio.get_running_loop()
        self._active = active

        async with operation_context(
            "consumer.stream",
            context={"session_id": session.id, "model": request.model},
        ) as log:
            error: LLMError | None = None
            active.task = asyncio.create_task(
                self._read(active, request), name=f"consumer-{session.id}"
            )
            active.deadline = self.deadlines.start(
                deadlines.first_token_deadline_ms,
                deadlines.overall_deadline_ms,
                active.abort,
                model=request.model,
                provider=RELAY_PROVIDER,
            )
            active.content.start()
            active.thinking.start()

            try:
                await active.task
            except asyncio.CancelledError:
                if asyncio.current_task().cancelling() or session.cancel_reason is None:
                    raise
                error = session.cancel_reason
            except LLMError as e:
                error = e
            except httpx.HTTPError as e:
                error = classify_exception(e, provider=RELAY_PROVIDER, model=request.model)
            finally:
                self.deadlines.cancel(active.deadline)
                active.content.final_flush()
                active.thinking.final_flush()
                await active.content.aclose()
                await active.thinking.aclose()
                self._active = None

            if error is None and not active.content.full_content.strip():
                error = UpstreamUnavailableError(
                    "No response received",
                    provider=RELAY_PROVIDER,
                    model=request.model,
                )

            result = self._result(active, error)
            log.info(
                "consumer.finished",
                state=result.state.value,
                error_kind=error.kind.value if error else None,
                ttft_ms=result.metrics.ttft_ms,
                total_ms=result.metrics.total_ms,
            )

        if error is not None and callbacks.on_error is not None:
            callbacks.on_error(error)
        if callbacks.on_complete is not None:
            callbacks.on_complete(result)
        return result

    def _result(self, active: _ActiveStream, error: LLMError | None) -> StreamResult:
        session = active.session
        if error is None:
            session.transition(SessionState.COMPLETED)
        elif session.cancelled:
            session.transition(SessionState.CANCELLED)
        else:
            session.transition(SessionState.FAILED)
        active.metrics.mark_finished()

        fallback_model = None
        if error is not None and error.suggest_fallback:
            fallback_model = self.configuration.get_fallback_model(session.model)

        return StreamResult(
            session_id=session.id,
            model=session.model,
            state=session.state,
            content=active.content.full_content,
            thinking=active.thinking_text,
            metrics=active.metrics,
            error=error,
            fallback_model=fallback_model,
        )

    async def _read(self, active: _ActiveStream, request: ChatRequest) -> None:
        reader = FrameReader()
        parser = EventParser()
        session = active.session

        async with self.client.stream(
            "POST", self.stream_path, json=request.model_dump()
        ) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise _status_error(response, body, request.model)

            session.transition(SessionState.STREAMING)
            async for chunk in response.aiter_text():
                for line in reader.feed(chunk):
                    event = parser.parse(line)
                    if event is None:
                        continue
                    if isinstance(event, Done):
                        reader.close()
                        return
                    if isinstance(event, StreamFailed):
                        raise error_from_payload(
                            {"kind": event.kind.value, "message": event.message},
                            provider=RELAY_PROVIDER,
                            model=request.model,
                        )
                    if isinstance(
                        event,
                        ContentDelta | ThinkingStarted | ThinkingDelta | ThinkingComplete,
                    ):
                        if not self.deadlines.on_byte_received(active.deadline):
                            return
                        active.metrics.mark_first_token()
                        self._dispatch(active, event)

        reader.close()

    def _dispatch(
        self, active: _ActiveStream, event: ContentDelta | ThinkingEvent
    ) -> None:
        callbacks = active.callbacks
        if isinstance(event, ContentDelta):
            active.content.on_delta(event.text)
        elif isinstance(event, ThinkingStarted):
            active.content.flush()
            active.thinking.reset()
            if callbacks.on_thinking_start is not None:
                callbacks.on_thinking_start()
        elif isinstance(event, ThinkingDelta):
            active.thinking.on_delta(event.text)
        elif isinstance(event, ThinkingComplete):
            active.content.flush()
            active.thinking.flush()
            active.thinking_blocks.append(event.accumulated)
            active.thinking.reset()
            if callbacks.on_thinking_complete is not None:
                callbacks.on_thinking_complete(event.accumulated)

    async def close(self) -> None:
        self.cancel()
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> StreamConsumer:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _forward(callback: Callable[[str, str], None] | None) -> Callable[[str, str], None]:
    def emit(delta: str, full: str) -> None:
        if callback is not None:
            callback(delta, full)
    return emit


def _status_error(response: httpx.Response, body: str, model: str) -> LLMError:
    """Prefer the relay's JSON error body; fall back to the status code."""
    try:
        data = json.loads(body) if body else None
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        error = error_from_payload(data["error"], provider=RELAY_PROVIDER, model=model)
        error.status_code = response.status_code
        return error
    return classify_status(
        response.status_code,
        body,
        provider=RELAY_PROVIDER,
        model=model,
        headers=response.headers,
    )
