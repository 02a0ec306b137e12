"""
Error taxonomy for streaming LLM sessions.

Every failure a relay or consumer session can end with is an ``LLMError``
subclass carrying:
- the ``ErrorKind`` used for routing and user messaging
- provider / model context
- the upstream HTTP status, when there was one
- whether a fallback model should be suggested
"""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorKind(Enum):
    """Why a streaming session ended abnormally."""
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    GATEWAY_TIMEOUT = "gateway_timeout"
    FIRST_TOKEN_TIMEOUT = "first_token_timeout"
    USER_CANCELLED = "user_cancelled"
    MALFORMED_UPSTREAM_FRAME = "malformed_upstream_frame"
    UNKNOWN_FAILURE = "unknown_failure"


# Kinds where retrying on a lighter model is a sensible suggestion
FALLBACK_KINDS = frozenset({
    ErrorKind.GATEWAY_TIMEOUT,
    ErrorKind.FIRST_TOKEN_TIMEOUT,
    ErrorKind.UPSTREAM_UNAVAILABLE,
})

USER_MESSAGES = {
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait and try again.",
    ErrorKind.QUOTA_EXHAUSTED: "Credits exhausted. Please add credits to continue.",
    ErrorKind.UPSTREAM_UNAVAILABLE: (
        "Service temporarily unavailable. Please try a different model."
    ),
    ErrorKind.GATEWAY_TIMEOUT: "Response timed out. The model may be overloaded.",
    ErrorKind.FIRST_TOKEN_TIMEOUT: "The model is not responding. Try a faster model.",
    ErrorKind.USER_CANCELLED: "Response stopped.",
    ErrorKind.MALFORMED_UPSTREAM_FRAME: "Received a malformed response frame.",
    ErrorKind.UNKNOWN_FAILURE: "Request failed. Please try again.",
}

HTTP_PAYMENT_REQUIRED = 402
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_ERROR = 500
HTTP_GATEWAY_TIMEOUT = 504


class LLMError(Exception):
    """Base LLM error with rich context."""

    kind: ErrorKind = ErrorKind.UNKNOWN_FAILURE

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        model: str = "unknown",
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def suggest_fallback(self) -> bool:
        """Whether the caller should offer a fallback model."""
        return self.kind in FALLBACK_KINDS

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    def to_dict(self) -> dict:
        """Serializable form used for error payloads and outbound error lines."""
        return {
            "kind": self.kind.value,
            "message": str(self),
            "user_message": self.user_message,
            "suggest_fallback": self.suggest_fallback,
            "status_code": self.status_code,
        }


class RateLimitError(LLMError):
    """Rate limit error with retry information."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class QuotaExhaustedError(LLMError):
    """Upstream refused the request for lack of credits (402)."""

    kind = ErrorKind.QUOTA_EXHAUSTED


class UpstreamUnavailableError(LLMError):
    """Upstream answered 5xx or produced no usable content."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class StreamTimeoutError(LLMError):
    """A session deadline elapsed."""

    def __init__(self, message: str, deadline: str, timeout_ms: float, **kwargs):
        super().__init__(message, **kwargs)
        self.deadline = deadline
        self.timeout_ms = timeout_ms


class GatewayTimeoutError(StreamTimeoutError):
    """Upstream 504 or expiry of the overall deadline."""

    kind = ErrorKind.GATEWAY_TIMEOUT

    def __init__(
        self,
        message: str,
        deadline: str = "overall",
        timeout_ms: float = 0.0,
        **kwargs,
    ):
        super().__init__(message, deadline, timeout_ms, **kwargs)


class FirstTokenTimeoutError(StreamTimeoutError):
    """No content byte arrived before the first-token deadline."""

    kind = ErrorKind.FIRST_TOKEN_TIMEOUT

    def __init__(
        self,
        message: str,
        deadline: str = "first_token",
        timeout_ms: float = 0.0,
        **kwargs,
    ):
        super().__init__(message, deadline, timeout_ms, **kwargs)


class UserCancelledError(LLMError):
    """The user stopped the response."""

    kind = ErrorKind.USER_CANCELLED


class MalformedFrameError(LLMError):
    """A data line could not be decoded. Recovered locally, never surfaced."""

    kind = ErrorKind.MALFORMED_UPSTREAM_FRAME

    def __init__(self, message: str, raw: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.raw = raw


class StreamingError(LLMError):
    """Connection reset, DNS failure and anything else not classified."""

    kind = ErrorKind.UNKNOWN_FAILURE


ERROR_TYPES: dict[ErrorKind, type[LLMError]] = {
    ErrorKind.RATE_LIMITED: RateLimitError,
    ErrorKind.QUOTA_EXHAUSTED: QuotaExhaustedError,
    ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
    ErrorKind.GATEWAY_TIMEOUT: GatewayTimeoutError,
    ErrorKind.FIRST_TOKEN_TIMEOUT: FirstTokenTimeoutError,
    ErrorKind.USER_CANCELLED: UserCancelledError,
    ErrorKind.MALFORMED_UPSTREAM_FRAME: MalformedFrameError,
    ErrorKind.UNKNOWN_FAILURE: StreamingError,
}


def _retry_after(headers: httpx.Headers | dict | None) -> float | None:
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_status(
    status_code: int,
    body: str = "",
    *,
    provider: str = "unknown",
    model: str = "unknown",
    headers: httpx.Headers | dict | None = None,
) -> LLMError:
    """
    Build the error for a non-success upstream status.

    429 -> RateLimitError, 402 -> QuotaExhaustedError, 504 -> GatewayTimeoutError,
    any other 5xx -> UpstreamUnavailableError, everything else -> StreamingError.
    """
    message = f"Upstream returned {status_code}"
    if body:
        message = f"{message}: {body[:200]}"
    context = {
        "provider": provider,
        "model": model,
        "status_code": status_code,
        "response_data": {"body": body[:1000]} if body else None,
    }

    if status_code == HTTP_TOO_MANY_REQUESTS:
        return RateLimitError(message, retry_after=_retry_after(headers), **context)
    if status_code == HTTP_PAYMENT_REQUIRED:
        return QuotaExhaustedError(message, **context)
    if status_code == HTTP_GATEWAY_TIMEOUT:
        return GatewayTimeoutError(message, deadline="upstream", **context)
    if status_code >= HTTP_INTERNAL_ERROR:
        return UpstreamUnavailableError(message, **context)
    return StreamingError(message, **context)


def classify_exception(
    error: BaseException,
    *,
    provider: str = "unknown",
    model: str = "unknown",
) -> LLMError:
    """Map a transport-level exception onto the taxonomy."""
    if isinstance(error, LLMError):
        return error
    context = {"provider": provider, "model": model}
    if isinstance(error, httpx.TimeoutException | TimeoutError):
        return GatewayTimeoutError(f"Upstream timed out: {error!s}", **context)
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(
            error.response.status_code,
            provider=provider,
            model=model,
            headers=error.response.headers,
        )
    return StreamingError(
        f"{type(error).__name__}: {error!s}" if str(error) else type(error).__name__,
        **context,
    )


def error_from_payload(
    payload: dict,
    *,
    provider: str = "relay",
    model: str = "unknown",
) -> LLMError:
    """Rebuild a typed error from an ``{"error": {...}}`` payload."""
    kind_value = payload.get("kind")
    try:
        kind = ErrorKind(kind_value)
    except ValueError:
        kind = ErrorKind.UNKNOWN_FAILURE
    message = str(payload.get("message") or USER_MESSAGES[kind])
    error_type = ERROR_TYPES[kind]
    return error_type(
        message,
        provider=provider,
        model=model,
        status_code=payload.get("status_code"),
        response_data=payload,
    )
