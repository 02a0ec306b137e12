"""
Relay service for streaming chat completions.

This module handles one relay session per inbound request:
- Model profile resolution, context trimming and system prompts
- Opening the upstream stream and classifying failed responses
- Relaying single-document JSON replies from non-streaming models
- Demultiplexing inline reasoning into a separate thinking channel
- First-token and overall deadlines on the upstream connection
- Credit debits and transcript persistence once a session ends

The upstream body is read by a pump task that writes encoded SSE lines onto a
bounded queue; ``relay()`` yields from that queue. A deadline cancels the
pump, which closes the upstream response and emits an error line followed by
``[DONE]``. A client disconnect cancels the pump without emitting anything.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chat_relay.collaborators import (
    ANONYMOUS,
    AllowAllIdentity,
    AuthenticationError,
    CreditLedger,
    Identity,
    IdentityVerifier,
    NullTranscriptStore,
    TranscriptStore,
    UnmeteredLedger,
)
from chat_relay.config import Configuration
from chat_relay.llm.client import UpstreamClient, is_event_stream, parse_completion
from chat_relay.llm.exceptions import (
    ERROR_TYPES,
    GatewayTimeoutError,
    LLMError,
    QuotaExhaustedError,
    UpstreamUnavailableError,
    UserCancelledError,
    classify_exception,
)
from chat_relay.llm.models import ModelProfile
from chat_relay.llm.streaming.deadlines import DeadlineHandle, DeadlineManager
from chat_relay.llm.streaming.demux import ThinkingDemultiplexer, encode_event
from chat_relay.llm.streaming.models import (
    ContentDelta,
    Done,
    Event,
    ParseError,
    SessionState,
    StreamFailed,
    StreamMetrics,
    StreamSession,
    ThinkingDelta,
)
from chat_relay.llm.streaming.parser import EventParser
from chat_relay.llm.streaming.reader import FrameReader
from chat_relay.logging_utils import ContextualLogger, log_operation

# Smallest timer the relay will arm for a deadline that is about to elapse
MIN_REMAINING_MS = 1.0


class ChatTurn(BaseModel):
    """One message of the conversation sent by the client."""
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Inbound relay request."""
    messages: list[ChatTurn] = Field(min_length=1)
    model: str = "default"
    # None defers to relay.stream.extract_thinking_default
    extract_thinking: bool | None = None
    conversation_id: str | None = None


@dataclass
class RelaySession:
    """Everything the relay tracks for one inbound request."""
    session: StreamSession
    request: ChatRequest
    profile: ModelProfile
    identity: Identity = ANONYMOUS
    metrics: StreamMetrics = field(default_factory=StreamMetrics)
    response: httpx.Response | None = None
    demux: ThinkingDemultiplexer | None = None
    deadline: DeadlineHandle | None = None
    pump_task: asyncio.Task | None = None
    error: LLMError | None = None
    content: str = ""
    thinking: str = ""
    settled: bool = False

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def state(self) -> SessionState:
        return self.session.state

    def record(self, event: Event) -> None:
        if isinstance(event, ContentDelta):
            self.content += event.text
        elif isinstance(event, ThinkingDelta):
            self.thinking += event.text

    async def close_upstream(self) -> None:
        response, self.response = self.response, None
        if response is not None:
            await response.aclose()


class RelayService:
    """
    Streams one upstream completion per request back to the client as SSE,
    with inline reasoning split into its own channel.
    """

    class RelayServiceConfig(BaseModel):
        model_config = ConfigDict(arbitrary_types_allowed=True)

        upstream: Any  # UpstreamClient
        configuration: Configuration
        identity: Any = None  # IdentityVerifier
        ledger: Any = None  # CreditLedger
        transcripts: Any = None  # TranscriptStore
        deadlines: Any = None  # DeadlineManager

    def __init__(self, service_config: RelayService.RelayServiceConfig):
        self.upstream: UpstreamClient = service_config.upstream
        self.configuration = service_config.configuration
        self.identity: IdentityVerifier = service_config.identity or AllowAllIdentity()
        self.ledger: CreditLedger = service_config.ledger or UnmeteredLedger()
        self.transcripts: TranscriptStore = (
            service_config.transcripts or NullTranscriptStore()
        )
        self.deadlines: DeadlineManager = service_config.deadlines or DeadlineManager()

        stream_config = self.configuration.get_relay_stream_config()
        self.queue_size: int = stream_config["queue_size"]
        self.extract_thinking_default: bool = stream_config.get(
            "extract_thinking_default", True
        )
        self.start_marker, self.end_marker = self.configuration.get_thinking_markers()

        self._logger = ContextualLogger({"component": "relay"})

    async def authenticate(self, token: str | None) -> Identity:
        """Resolve the caller or raise ``AuthenticationError``."""
        identity = await self.identity.verify(token)
        if identity is None:
            raise AuthenticationError("Invalid or missing credentials")
        return identity

    def create_session(
        self, request: ChatRequest, identity: Identity = ANONYMOUS
    ) -> RelaySession:
        """Resolve the model profile and start a session in CONNECTING."""
        return RelaySession(
            session=StreamSession(model=request.model),
            request=request,
            profile=self.configuration.get_model_profile(request.model),
            identity=identity,
        )

    async def open(
        self, request: ChatRequest, identity: Identity = ANONYMOUS
    ) -> RelaySession:
        """Create a session and connect it upstream."""
        rs = self.create_session(request, identity)
        await self.connect(rs)
        return rs

    @log_operation("relay.connect")
    async def connect(self, rs: RelaySession) -> None:
        """
        Open the upstream stream for a CONNECTING session.

        The wait for response headers is bounded by the model's first-token
        deadline. On any failure the session ends FAILED without entering
        STREAMING and the classified error is raised.

        Raises:
            LLMError: rate limit, quota, timeout, unavailability or transport
        """
        request, profile = rs.request, rs.profile

        if not await self.ledger.has_credit(rs.identity, request.model):
            self._fail(
                rs,
                QuotaExhaustedError(
                    "No credits remaining",
                    provider=self.upstream.provider,
                    model=request.model,
                    status_code=402,
                ),
            )
            raise rs.error

        payload = self.upstream.build_payload(
            profile, [turn.model_dump() for turn in request.messages]
        )
        header_timeout_ms = profile.deadlines.first_token_deadline_ms
        try:
            async with asyncio.timeout(header_timeout_ms / 1000):
                rs.response = await self.upstream.open_stream(payload)
        except LLMError as e:
            self._fail(rs, e)
            raise
        except TimeoutError as e:
            self._fail(
                rs,
                GatewayTimeoutError(
                    f"No response headers within {header_timeout_ms:g}ms",
                    deadline="headers",
                    timeout_ms=header_timeout_ms,
                    provider=self.upstream.provider,
                    model=profile.upstream_model,
                ),
            )
            raise rs.error from e

        rs.session.transition(SessionState.STREAMING)
        extract_thinking = (
            self.extract_thinking_default
            if request.extract_thinking is None
            else request.extract_thinking
        )
        if extract_thinking:
            rs.demux = ThinkingDemultiplexer(self.start_marker, self.end_marker)
        self._logger.info(
            "relay.streaming",
            session_id=rs.id,
            model=request.model,
            upstream_model=profile.upstream_model,
            extract_thinking=extract_thinking,
        )

    def _fail(self, rs: RelaySession, error: LLMError) -> None:
        rs.error = error
        rs.session.transition(SessionState.FAILED)
        rs.metrics.mark_finished()
        self._logger.warning(
            "relay.open_failed",
            session_id=rs.id,
            model=rs.request.model,
            error_kind=error.kind.value,
            status_code=error.status_code,
        )

    async def relay(self, rs: RelaySession) -> AsyncIterator[str]:
        """
        Yield outbound SSE lines for an open session.

        Always ends with ``data: [DONE]`` unless the client goes away first.
        """
        if rs.state != SessionState.STREAMING or rs.response is None:
            raise RuntimeError(f"Session {rs.id} is not streaming ({rs.state.value})")

        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self.queue_size)
        pump = asyncio.create_task(self._pump(rs, queue), name=f"relay-pump-{rs.id}")
        rs.pump_task = pump

        def on_expire(error: LLMError) -> None:
            if rs.session.mark_cancelled(error):
                pump.cancel()

        first_token_ms, overall_ms = self._remaining_deadlines(rs)
        rs.deadline = self.deadlines.start(
            first_token_ms,
            overall_ms,
            on_expire,
            model=rs.profile.upstream_model,
            provider=self.upstream.provider,
        )

        try:
            while (line := await queue.get()) is not None:
                yield line
        finally:
            if not pump.done():
                pump.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pump
                if rs.session.mark_cancelled(UserCancelledError("Client disconnected")):
                    rs.error = rs.session.cancel_reason
                    rs.session.transition(SessionState.CANCELLED)
                    self._logger.info("relay.client_disconnected", session_id=rs.id)
            await self.settle(rs)

    def _remaining_deadlines(self, rs: RelaySession) -> tuple[float, float]:
        """Deadlines are absolute from request start, so subtract the header wait."""
        elapsed_ms = (time.monotonic() - rs.metrics.request_start) * 1000
        deadlines = rs.profile.deadlines
        return (
            max(deadlines.first_token_deadline_ms - elapsed_ms, MIN_REMAINING_MS),
            max(deadlines.overall_deadline_ms - elapsed_ms, MIN_REMAINING_MS),
        )

    async def _pump(self, rs: RelaySession, queue: asyncio.Queue[str | None]) -> None:
        error: LLMError | None = None
        try:
            error = await self._read_upstream(rs, queue)
        except asyncio.CancelledError:
            if rs.session.cancel_reason is None:
                raise
            error = rs.session.cancel_reason
        except Exception as e:
            error = classify_exception(
                e, provider=self.upstream.provider, model=rs.profile.upstream_model
            )
        finally:
            if rs.deadline is not None:
                self.deadlines.cancel(rs.deadline)
            await rs.close_upstream()

        terminal: list[Event] = rs.demux.finish() if rs.demux else []
        released = "".join(e.text for e in terminal if isinstance(e, ContentDelta))
        if error is None and not (rs.content + released).strip():
            error = UpstreamUnavailableError(
                "No response received",
                provider=self.upstream.provider,
                model=rs.profile.upstream_model,
            )
        if error is None:
            rs.session.transition(SessionState.COMPLETED)
        else:
            rs.error = error
            rs.session.transition(
                SessionState.CANCELLED if rs.session.cancelled else SessionState.FAILED
            )
            terminal.append(StreamFailed(kind=error.kind, message=error.user_message))
            self._logger.warning(
                "relay.stream_aborted",
                session_id=rs.id,
                error_kind=error.kind.value,
                error_message=str(error),
                content_length=len(rs.content),
            )
        terminal.append(Done())

        for event in terminal:
            rs.record(event)
            await queue.put(encode_event(event))
        await queue.put(None)

    async def _read_upstream(
        self, rs: RelaySession, queue: asyncio.Queue[str | None]
    ) -> LLMError | None:
        """Run the upstream body through reader, parser and demultiplexer."""
        if not is_event_stream(rs.response):
            return await self._read_completion(rs, queue)

        reader = FrameReader()
        parser = EventParser()

        async for chunk in rs.response.aiter_text():
            for line in reader.feed(chunk):
                event = parser.parse(line)
                if event is None or isinstance(event, ParseError):
                    continue
                if isinstance(event, Done):
                    reader.close()
                    return None
                if isinstance(event, StreamFailed):
                    return ERROR_TYPES[event.kind](
                        event.message or "Upstream reported an error",
                        provider=self.upstream.provider,
                        model=rs.profile.upstream_model,
                    )
                if not isinstance(event, ContentDelta):
                    continue

                if not self.deadlines.on_byte_received(rs.deadline):
                    return rs.deadline.error
                rs.metrics.mark_first_token()

                outbound = rs.demux.process(event) if rs.demux else [event]
                for out in outbound:
                    await queue.put(encode_event(out))
                    rs.record(out)

        reader.close()
        self._logger.debug(
            "relay.upstream_closed_without_done",
            session_id=rs.id,
            stats=parser.get_stats(),
        )
        return None

    async def _read_completion(
        self, rs: RelaySession, queue: asyncio.Queue[str | None]
    ) -> LLMError | None:
        """Relay a single JSON completion as one content delta."""
        body = await rs.response.aread()
        text, error = parse_completion(
            body, provider=self.upstream.provider, model=rs.profile.upstream_model
        )
        if error is not None:
            return error
        if not self.deadlines.on_byte_received(rs.deadline):
            return rs.deadline.error
        if not text:
            return None

        rs.metrics.mark_first_token()
        event = ContentDelta(text=text)
        for out in rs.demux.process(event) if rs.demux else [event]:
            await queue.put(encode_event(out))
            rs.record(out)
        return None

    async def settle(self, rs: RelaySession) -> None:
        """Debit credits and persist the transcript once. Safe to call twice."""
        if rs.settled:
            return
        rs.settled = True
        await rs.close_upstream()
        if not rs.state.is_terminal:
            rs.session.transition(SessionState.CANCELLED)
        rs.metrics.mark_finished()

        usage = {
            "content_chars": len(rs.content),
            "thinking_chars": len(rs.thinking),
            "ttft_ms": rs.metrics.ttft_ms,
            "total_ms": rs.metrics.total_ms,
            "state": rs.state.value,
        }
        self._logger.info(
            "relay.session_finished", session_id=rs.id, model=rs.request.model, **usage
        )

        try:
            await self.ledger.debit(rs.identity, rs.request.model, usage)
            if rs.state == SessionState.COMPLETED and rs.request.conversation_id:
                await self.transcripts.save(
                    rs.identity,
                    rs.request.conversation_id,
                    [turn.model_dump() for turn in rs.request.messages],
                    rs.content,
                    rs.thinking,
                )
        except Exception as e:
            self._logger.error(
                "relay.settle_failed",
                session_id=rs.id,
                error_type=type(e).__name__,
                error_message=str(e),
            )
