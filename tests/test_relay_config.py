"""Tests for relay configuration loading."""

import pytest

import relay_config
from relay_config import ConfigError, RelayConfig


class TestFromEnv:
    def test_defaults(self):
        config = RelayConfig.from_env({})

        assert config.relay_url == "ws://localhost:9000"
        assert config.http_port == 3333
        assert config.command_timeout == 10.0
        assert config.operation_timeout == 30.0
        assert config.auto_reconnect is True
        assert config.max_reconnect_attempts == 5
        assert config.api_key is None

    def test_reads_and_coerces_values(self):
        config = RelayConfig.from_env({
            "RELAY_PORT": "9100",
            "COMMAND_TIMEOUT": "2.5",
            "AUTO_RECONNECT": "no",
            "BRIDGE_URL": "ws://bridge:3055",
            "LITELLM_MODEL": "gpt-4.1-nano",
        })

        assert config.relay_port == 9100
        assert config.command_timeout == 2.5
        assert config.auto_reconnect is False
        assert config.bridge_url == "ws://bridge:3055"
        assert config.model == "gpt-4.1-nano"

    def test_api_key_fallbacks(self):
        assert RelayConfig.from_env({"CLAUDE_API_KEY": "c"}).api_key == "c"
        assert RelayConfig.from_env({"ANTHROPIC_API_KEY": "a", "CLAUDE_API_KEY": "c"}).api_key == "a"
        assert RelayConfig.from_env({"LITELLM_API_KEY": "l", "ANTHROPIC_API_KEY": "a"}).api_key == "l"

    def test_invalid_number(self):
        with pytest.raises(ConfigError):
            RelayConfig.from_env({"HTTP_PORT": "eighty"})

    def test_invalid_boolean(self):
        with pytest.raises(ConfigError):
            RelayConfig.from_env({"AUTO_RECONNECT": "maybe"})

    def test_log_level_is_normalized(self):
        assert RelayConfig.from_env({"LOG_LEVEL": "debug"}).log_level == "DEBUG"

    @pytest.mark.parametrize("level", ["loud", "trace", "verbose"])
    def test_unknown_log_level(self, level):
        with pytest.raises(ConfigError, match="log_level"):
            RelayConfig.from_env({"LOG_LEVEL": level})

    def test_default_model_lives_with_the_config(self):
        assert not {"ai_service", "agents", "Agent"} & set(vars(relay_config))
        assert RelayConfig().model == relay_config.DEFAULT_MODEL


class TestWithArgs:
    def test_overrides_and_positional(self):
        config, positional = RelayConfig().with_args(["serve", "--relay-port=9200", "--reconnect-interval=0.5"])

        assert positional == ["serve"]
        assert config.relay_port == 9200
        assert config.reconnect_interval == 0.5

    def test_unknown_option(self):
        with pytest.raises(ConfigError):
            RelayConfig().with_args(["--channel=figma"])

    def test_option_without_value(self):
        with pytest.raises(ConfigError):
            RelayConfig().with_args(["--relay-port"])

    def test_log_level_override_is_validated(self):
        config, _ = RelayConfig().with_args(["--log-level=warning"])

        assert config.log_level == "WARNING"
        with pytest.raises(ConfigError):
            RelayConfig().with_args(["--log-level=chatty"])
