#!/usr/bin/env python3
"""
Tests for explicit configuration validation.
"""

import copy

import pytest

from chat_relay.config import Configuration
from chat_relay.llm.models import ProviderType


BASE_CONFIG = {
    "relay": {
        "upstream": {
            "provider": "openrouter",
            "base_url": "https://openrouter.ai/api/v1",
            "api_key_env": "TEST_RELAY_KEY",
            "max_connections": 10,
            "max_keepalive": 5,
            "keepalive_expiry": 5.0,
            "connect_timeout": 5.0,
            "read_timeout": 30.0,
            "write_timeout": 5.0,
            "pool_timeout": 5.0,
        },
        "stream": {"queue_size": 8},
        "thinking": {"start_marker": "<thinking>", "end_marker": "</thinking>"},
        "server": {"host": "127.0.0.1", "port": 9000},
    },
    "client": {
        "base_url": "http://relay",
        "stream_path": "/v1/chat/stream",
        "update_interval_ms": 50,
    },
    "models": {
        "default": {"first_token_deadline_ms": 30000, "overall_deadline_ms": 120000},
        "fast": {
            "upstream_model": "google/gemini-2.5-flash",
            "first_token_deadline_ms": 5000,
            "overall_deadline_ms": 20000,
            "max_context_messages": 4,
            "system_prompt": "Be brief.",
        },
    },
    "fallback_models": {"slow": "fast"},
}


def make_config(**overrides):
    config = copy.deepcopy(BASE_CONFIG)
    config.update(overrides)
    return Configuration.from_dict(config)


class TestPackagedConfig:
    def test_packaged_yaml_loads(self):
        config = Configuration()
        assert config.get_deadlines("gemini-flash").first_token_deadline_ms == 25000
        assert config.get_fallback_model("gpt5") == "gpt5-mini"
        assert config.get_thinking_markers() == ("<thinking>", "</thinking>")


class TestModelProfiles:
    """Test per-model deadline resolution."""

    def test_listed_model(self):
        profile = make_config().get_model_profile("fast")
        assert profile.upstream_model == "google/gemini-2.5-flash"
        assert profile.deadlines.first_token_deadline_ms == 5000
        assert profile.deadlines.overall_deadline_ms == 20000
        assert profile.max_context_messages == 4
        assert profile.system_prompt == "Be brief."

    def test_unlisted_model_uses_default(self):
        profile = make_config().get_model_profile("vendor/unknown")
        assert profile.model_id == "vendor/unknown"
        assert profile.upstream_model == "vendor/unknown"
        assert profile.deadlines.first_token_deadline_ms == 30000

    def test_missing_default_rejected(self):
        config = make_config(models={"fast": BASE_CONFIG["models"]["fast"]})
        with pytest.raises(ValueError, match="models.default"):
            config.get_deadlines("fast")

    def test_non_positive_deadline_rejected(self):
        models = copy.deepcopy(BASE_CONFIG["models"])
        models["fast"]["overall_deadline_ms"] = 0
        with pytest.raises(ValueError, match="must be positive"):
            make_config(models=models).get_model_profile("fast")

    def test_fallback_lookup(self):
        config = make_config()
        assert config.get_fallback_model("slow") == "fast"
        assert config.get_fallback_model("fast") is None


class TestUpstreamConfig:
    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("TEST_RELAY_KEY", "sk-test")
        upstream = make_config().get_upstream_config()
        assert upstream.api_key == "sk-test"
        assert upstream.provider == ProviderType.OPENROUTER
        assert upstream.max_connections == 10

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("TEST_RELAY_KEY", raising=False)
        with pytest.raises(ValueError, match="TEST_RELAY_KEY"):
            make_config().get_upstream_config()

    def test_explicit_api_key(self):
        upstream = make_config().get_upstream_config(api_key="override")
        assert upstream.api_key == "override"

    def test_provider_detected_from_base_url(self):
        relay = copy.deepcopy(BASE_CONFIG["relay"])
        del relay["upstream"]["provider"]
        relay["upstream"]["base_url"] = "https://api.groq.com/openai/v1"
        upstream = make_config(relay=relay).get_upstream_config(api_key="k")
        assert upstream.provider == ProviderType.GROQ

    def test_missing_required_key(self):
        relay = copy.deepcopy(BASE_CONFIG["relay"])
        del relay["upstream"]["read_timeout"]
        with pytest.raises(ValueError, match="relay.upstream.read_timeout"):
            make_config(relay=relay).get_upstream_config(api_key="k")

    def test_unknown_provider(self):
        relay = copy.deepcopy(BASE_CONFIG["relay"])
        relay["upstream"]["provider"] = "nope"
        with pytest.raises(ValueError, match="Unknown provider"):
            make_config(relay=relay).get_upstream_config(api_key="k")


class TestSections:
    def test_queue_size_validated(self):
        relay = copy.deepcopy(BASE_CONFIG["relay"])
        relay["stream"]["queue_size"] = 0
        with pytest.raises(ValueError, match="queue_size"):
            make_config(relay=relay).get_relay_stream_config()

    def test_client_interval_validated(self):
        client = dict(BASE_CONFIG["client"], update_interval_ms=0)
        with pytest.raises(ValueError, match="update_interval_ms"):
            make_config(client=client).get_client_config()

    def test_empty_marker_rejected(self):
        relay = copy.deepcopy(BASE_CONFIG["relay"])
        relay["thinking"]["end_marker"] = ""
        with pytest.raises(ValueError, match="non-empty"):
            make_config(relay=relay).get_thinking_markers()

    def test_server_config(self):
        assert make_config().get_server_config()["port"] == 9000
