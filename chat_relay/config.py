"""Configuration management for the chat relay."""

import os
from typing import Any

import yaml
from dotenv import load_dotenv

from chat_relay.llm.models import (
    ModelDeadlines,
    ModelProfile,
    ProviderType,
    UpstreamConfig,
    detect_provider,
)

DEFAULT_MODEL_KEY = "default"


class Configuration:
    """Manages configuration and environment variables for the relay."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self._config_path = config_path or os.path.join(
            os.path.dirname(__file__), "config.yaml"
        )
        self._config = self._load_yaml_config(self._config_path)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "Configuration":
        """Build a configuration from an in-memory dict (tests, embedding)."""
        instance = cls.__new__(cls)
        instance._config_path = None
        instance._config = config
        return instance

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def _relay_section(self, name: str) -> dict[str, Any]:
        section = self._config.get("relay", {}).get(name)
        if not isinstance(section, dict):
            raise ValueError(
                f"relay.{name} must be explicitly configured in config.yaml"
            )
        return section

    @property
    def upstream_api_key(self) -> str:
        """Get the API key for the upstream provider.

        Raises:
            ValueError: If the API key is not found in environment variables.
        """
        upstream = self._relay_section("upstream")
        env_key = upstream.get("api_key_env")
        if not env_key:
            raise ValueError(
                "relay.upstream.api_key_env must be explicitly configured "
                "in config.yaml"
            )

        api_key = os.getenv(env_key)
        if not api_key:
            raise ValueError(
                f"API key '{env_key}' not found in environment variables"
            )
        return api_key

    def get_upstream_config(self, api_key: str | None = None) -> UpstreamConfig:
        """Get upstream connection settings.

        Args:
            api_key: Overrides the key read from the environment.

        Raises:
            ValueError: If required parameters are missing or invalid.
        """
        upstream = self._relay_section("upstream")

        required_keys = [
            "base_url", "max_connections", "max_keepalive", "keepalive_expiry",
            "connect_timeout", "read_timeout", "write_timeout", "pool_timeout",
        ]
        for key in required_keys:
            if key not in upstream:
                raise ValueError(
                    f"relay.upstream.{key} must be explicitly configured "
                    "in config.yaml"
                )

        try:
            provider = (
                ProviderType(upstream["provider"])
                if upstream.get("provider")
                else detect_provider(upstream["base_url"])
            )
        except ValueError as e:
            raise ValueError(
                f"Unknown provider '{upstream.get('provider')}' in relay.upstream"
            ) from e

        if upstream["max_connections"] < 1:
            raise ValueError("relay.upstream.max_connections must be at least 1")

        return UpstreamConfig(
            base_url=upstream["base_url"],
            api_key=api_key if api_key is not None else self.upstream_api_key,
            provider=provider,
            completions_path=upstream.get("completions_path", "/chat/completions"),
            max_connections=upstream["max_connections"],
            max_keepalive=upstream["max_keepalive"],
            keepalive_expiry=upstream["keepalive_expiry"],
            connect_timeout=upstream["connect_timeout"],
            read_timeout=upstream["read_timeout"],
            write_timeout=upstream["write_timeout"],
            pool_timeout=upstream["pool_timeout"],
            app_name=upstream.get("app_name"),
            app_url=upstream.get("app_url"),
        )

    def get_models_config(self) -> dict[str, Any]:
        models = self._config.get("models")
        if not isinstance(models, dict) or DEFAULT_MODEL_KEY not in models:
            raise ValueError(
                "models.default must be explicitly configured in config.yaml"
            )
        return models

    def get_model_profile(self, model_id: str) -> ModelProfile:
        """Get the profile for a client-facing model id.

        Unlisted models fall back to the `default` entry.

        Raises:
            ValueError: If the selected entry is incomplete or invalid.
        """
        models = self.get_models_config()
        key = model_id if model_id in models else DEFAULT_MODEL_KEY
        entry = models[key] or {}

        for required in ("first_token_deadline_ms", "overall_deadline_ms"):
            if required not in entry:
                raise ValueError(
                    f"models.{key}.{required} must be explicitly configured "
                    "in config.yaml"
                )

        first_token_ms = entry["first_token_deadline_ms"]
        overall_ms = entry["overall_deadline_ms"]
        if first_token_ms <= 0 or overall_ms <= 0:
            raise ValueError(f"models.{key} deadlines must be positive")

        max_context = entry.get("max_context_messages")
        if max_context is not None and max_context < 1:
            raise ValueError(f"models.{key}.max_context_messages must be >= 1")

        return ModelProfile(
            model_id=model_id,
            upstream_model=entry.get("upstream_model") or model_id,
            deadlines=ModelDeadlines(
                first_token_deadline_ms=first_token_ms,
                overall_deadline_ms=overall_ms,
            ),
            max_context_messages=max_context,
            system_prompt=entry.get("system_prompt"),
        )

    def get_deadlines(self, model_id: str) -> ModelDeadlines:
        """Get first-token and overall deadlines for a model."""
        return self.get_model_profile(model_id).deadlines

    def get_fallback_model(self, model_id: str) -> str | None:
        """Get the model to suggest when `model_id` times out or fails."""
        return self._config.get("fallback_models", {}).get(model_id)

    def get_thinking_markers(self) -> tuple[str, str]:
        """Get the (start, end) markers delimiting inline reasoning."""
        thinking = self._relay_section("thinking")
        start = thinking.get("start_marker")
        end = thinking.get("end_marker")
        if not start or not end:
            raise ValueError(
                "relay.thinking.start_marker and end_marker must be non-empty"
            )
        return start, end

    def get_relay_stream_config(self) -> dict[str, Any]:
        """Get relay streaming configuration.

        Raises:
            ValueError: If queue_size is missing or invalid.
        """
        stream = self._relay_section("stream")
        if "queue_size" not in stream:
            raise ValueError(
                "relay.stream.queue_size must be explicitly configured in config.yaml"
            )
        if stream["queue_size"] < 1:
            raise ValueError("relay.stream.queue_size must be at least 1")
        return stream

    def get_server_config(self) -> dict[str, Any]:
        """Get HTTP server configuration."""
        server = self._relay_section("server")
        for key in ("host", "port"):
            if key not in server:
                raise ValueError(
                    f"relay.server.{key} must be explicitly configured in config.yaml"
                )
        return server

    def get_client_config(self) -> dict[str, Any]:
        """Get stream consumer configuration.

        Raises:
            ValueError: If required client parameters are missing or invalid.
        """
        client = self._config.get("client", {})
        for key in ("base_url", "stream_path", "update_interval_ms"):
            if key not in client:
                raise ValueError(
                    f"client.{key} must be explicitly configured in config.yaml"
                )
        if client["update_interval_ms"] <= 0:
            raise ValueError("client.update_interval_ms must be positive")
        return client

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration."""
        return self._config.get("logging", {})
