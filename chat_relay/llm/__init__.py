"""
Upstream LLM integration for the relay.

This package provides:
- Typed error taxonomy and status classification
- Per-model profiles and upstream connection settings
- An httpx client for streaming chat completions
"""

from __future__ import annotations

from .client import UpstreamClient, build_messages
from .exceptions import (
    ErrorKind,
    FirstTokenTimeoutError,
    GatewayTimeoutError,
    LLMError,
    MalformedFrameError,
    QuotaExhaustedError,
    RateLimitError,
    StreamingError,
    UpstreamUnavailableError,
    UserCancelledError,
)
from .models import (
    MessageRole,
    ModelDeadlines,
    ModelProfile,
    ProviderType,
    UpstreamConfig,
)

__all__ = [
    # Errors
    "ErrorKind",
    "FirstTokenTimeoutError",
    "GatewayTimeoutError",
    "LLMError",
    "MalformedFrameError",
    # Models
    "MessageRole",
    "ModelDeadlines",
    "ModelProfile",
    "ProviderType",
    "QuotaExhaustedError",
    "RateLimitError",
    "StreamingError",
    # Client
    "UpstreamClient",
    "UpstreamConfig",
    "UpstreamUnavailableError",
    "UserCancelledError",
    "build_messages",
]
