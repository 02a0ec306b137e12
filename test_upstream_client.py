#!/usr/bin/env python3
"""
Tests for the upstream HTTP client.
"""

import httpx
import pytest

from chat_relay.llm.client import (
    UpstreamClient,
    build_messages,
    is_event_stream,
    parse_completion,
)
from chat_relay.llm.exceptions import (
    ErrorKind,
    GatewayTimeoutError,
    QuotaExhaustedError,
)
from chat_relay.llm.models import (
    ModelDeadlines,
    ModelProfile,
    ProviderType,
    UpstreamConfig,
    detect_provider,
)


PROFILE = ModelProfile(
    model_id="brief",
    upstream_model="google/gemini-2.5-flash",
    deadlines=ModelDeadlines(first_token_deadline_ms=1000, overall_deadline_ms=5000),
    max_context_messages=1,
    system_prompt="Be brief.",
)


def make_client(handler, **config) -> UpstreamClient:
    return UpstreamClient(
        UpstreamConfig(base_url="https://openrouter.ai/api/v1", api_key="sk-test", **config),
        transport=httpx.MockTransport(handler),
    )


class TestBuildMessages:
    def test_trims_and_prepends_system_prompt(self):
        messages = [
            {"role": "user", "content": "old"},
            {"role": "user", "content": "new"},
        ]
        assert build_messages(PROFILE, messages) == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "new"},
        ]

    def test_untouched_without_limits(self):
        profile = ModelProfile(
            model_id="m",
            upstream_model="m",
            deadlines=PROFILE.deadlines,
        )
        messages = [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}]
        assert build_messages(profile, messages) == messages


class TestDetectProvider:
    def test_known_hosts(self):
        assert detect_provider("https://api.openai.com/v1") == ProviderType.OPENAI
        assert detect_provider("https://openrouter.ai/api/v1") == ProviderType.OPENROUTER
        assert detect_provider("https://api.perplexity.ai") == ProviderType.PERPLEXITY

    def test_unknown_host_is_gateway(self):
        assert detect_provider("https://ai.gateway.example.com/v1") == ProviderType.GATEWAY


class TestUpstreamClient:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=b"data: [DONE]\n\n"
            )

        client = make_client(handler, app_name="Chat Relay", app_url="https://chat.example")
        payload = client.build_payload(PROFILE, [{"role": "user", "content": "hi"}])
        response = await client.open_stream(payload)
        await response.aclose()
        await client.close()

        request = seen[0]
        assert request.url == "https://openrouter.ai/api/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.headers["http-referer"] == "https://chat.example"
        assert request.headers["x-title"] == "Chat Relay"
        assert payload["stream"] is True
        assert payload["model"] == "google/gemini-2.5-flash"

    @pytest.mark.asyncio
    async def test_non_success_status_raises(self):
        async with make_client(lambda request: httpx.Response(402, text="pay up")) as client:
            with pytest.raises(QuotaExhaustedError) as exc_info:
                await client.open_stream({"model": "m", "messages": []})

        assert exc_info.value.model == "m"
        assert exc_info.value.status_code == 402
        assert "pay up" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_timeout_classified(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(GatewayTimeoutError):
                await client.open_stream({"model": "m", "messages": []})


class TestNonStreamingReply:
    def test_is_event_stream(self):
        sse = httpx.Response(200, headers={"content-type": "text/event-stream; charset=utf-8"})
        assert is_event_stream(sse)
        assert not is_event_stream(httpx.Response(200, json={}))

    def test_message_content(self):
        body = b'{"choices": [{"message": {"role": "assistant", "content": "Answer"}}]}'
        assert parse_completion(body, provider="p", model="m") == ("Answer", None)

    def test_error_document(self):
        text, error = parse_completion(
            b'{"error": {"message": "overloaded"}}', provider="p", model="m"
        )
        assert text == ""
        assert error.kind == ErrorKind.UNKNOWN_FAILURE
        assert error.model == "m"

    def test_unusable_bodies(self):
        for body in (b"", b"not json", b"[1, 2]", b'{"choices": []}', b'{"choices": [{}]}'):
            assert parse_completion(body, provider="p", model="m") == ("", None)
