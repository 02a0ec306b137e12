"""
HTTP client for OpenAI-compatible streaming chat completions.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from .exceptions import LLMError, classify_exception, classify_status, error_from_payload
from .models import MessageRole, ModelProfile, UpstreamConfig

logger = structlog.get_logger(__name__)

HTTP_OK_RANGE = range(200, 300)
EVENT_STREAM = "text/event-stream"


def is_event_stream(response: httpx.Response) -> bool:
    return EVENT_STREAM in response.headers.get("content-type", "")


def parse_completion(
    body: bytes, *, provider: str, model: str
) -> tuple[str, LLMError | None]:
    """
    Decode a non-streaming completion body.

    Some models (deep research) answer with a single JSON document even when
    asked to stream. Returns ``(text, error)``; an undecodable body or one
    without a message yields empty text.
    """
    try:
        data = json.loads(body) if body else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("upstream.undecodable_reply", model=model, body_length=len(body))
        return "", None
    if not isinstance(data, dict):
        return "", None

    error = data.get("error")
    if error:
        payload = error if isinstance(error, dict) else {"message": str(error)}
        return "", error_from_payload(payload, provider=provider, model=model)

    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return "", None
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else "", None


def build_messages(
    profile: ModelProfile, messages: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Trim history to the profile's window and prepend its system prompt."""
    if profile.max_context_messages and len(messages) > profile.max_context_messages:
        messages = messages[-profile.max_context_messages:]

    if profile.system_prompt:
        return [
            {"role": MessageRole.SYSTEM.value, "content": profile.system_prompt},
            *messages,
        ]
    return list(messages)


class UpstreamClient:
    """Opens streaming requests against the configured provider."""

    def __init__(
        self,
        config: UpstreamConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        headers = {"Authorization": f"Bearer {config.api_key}"}
        if config.app_url:
            headers["HTTP-Referer"] = config.app_url
        if config.app_name:
            headers["X-Title"] = config.app_name

        self.client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=config.connect_timeout,
                read=config.read_timeout,
                write=config.write_timeout,
                pool=config.pool_timeout,
            ),
            limits=httpx.Limits(
                max_connections=config.max_connections,
                max_keepalive_connections=config.max_keepalive,
                keepalive_expiry=config.keepalive_expiry,
            ),
            transport=transport,
        )

    @property
    def provider(self) -> str:
        return self.config.provider.value

    def build_payload(
        self, profile: ModelProfile, messages: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return {
            "model": profile.upstream_model,
            "messages": build_messages(profile, messages),
            "stream": True,
        }

    async def open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        """
        Send the request and return once response headers have arrived.

        The caller owns the returned response and must ``aclose()`` it.

        Raises:
            LLMError: classified from the status code or transport failure
        """
        model = payload.get("model", "unknown")
        request = self.client.build_request(
            "POST", self.config.completions_path, json=payload
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("upstream.request_failed", model=model, error=str(e))
            raise classify_exception(e, provider=self.provider, model=model) from e

        if response.status_code not in HTTP_OK_RANGE:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            error = classify_status(
                response.status_code,
                body,
                provider=self.provider,
                model=model,
                headers=response.headers,
            )
            logger.warning(
                "upstream.bad_status",
                model=model,
                status_code=response.status_code,
                error_kind=error.kind.value,
            )
            raise error

        if not is_event_stream(response):
            logger.info(
                "upstream.non_streaming_reply",
                model=model,
                content_type=response.headers.get("content-type", ""),
            )

        return response

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> UpstreamClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
