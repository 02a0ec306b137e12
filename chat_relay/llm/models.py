"""
Core LLM dataclasses for the relay.

This module provides:
- Provider detection and upstream connection settings
- Per-model profiles (upstream model name, deadlines, context trimming)
- Chat message roles
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ProviderType(Enum):
    """Supported OpenAI-compatible upstreams."""
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GROQ = "groq"
    PERPLEXITY = "perplexity"
    GATEWAY = "gateway"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


def detect_provider(base_url: str) -> ProviderType:
    """Detect provider type from base URL."""
    base_url_lower = base_url.lower()

    if "openai.com" in base_url_lower:
        return ProviderType.OPENAI
    if "openrouter.ai" in base_url_lower:
        return ProviderType.OPENROUTER
    if "groq.com" in base_url_lower:
        return ProviderType.GROQ
    if "perplexity.ai" in base_url_lower:
        return ProviderType.PERPLEXITY

    return ProviderType.GATEWAY


@dataclass(frozen=True)
class ModelDeadlines:
    """Per-model first-token and overall deadlines."""
    first_token_deadline_ms: float
    overall_deadline_ms: float


@dataclass(frozen=True)
class ModelProfile:
    """How a client-facing model id is served."""
    model_id: str
    upstream_model: str
    deadlines: ModelDeadlines
    max_context_messages: int | None = None
    system_prompt: str | None = None


@dataclass(frozen=True)
class UpstreamConfig:
    """Upstream provider connection settings."""
    base_url: str
    api_key: str
    provider: ProviderType = ProviderType.GATEWAY
    completions_path: str = "/chat/completions"

    # Connection settings
    max_connections: int = 100
    max_keepalive: int = 20
    keepalive_expiry: float = 5.0
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    write_timeout: float = 10.0
    pool_timeout: float = 10.0

    # Optional attribution headers (OpenRouter)
    app_name: str | None = None
    app_url: str | None = None
