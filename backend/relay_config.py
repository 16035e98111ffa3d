"""Relay configuration from environment variables (.env) and --key=value CLI overrides."""

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

DEFAULT_MODEL = "anthropic/claude-3-5-haiku-20241022"


class ConfigError(ValueError):
    """A configuration value could not be interpreted."""


@dataclass(frozen=True)
class RelayConfig:
    relay_host: str = "localhost"
    relay_port: int = 9000
    http_host: str = "localhost"
    http_port: int = 3333
    bridge_url: Optional[str] = None
    command_timeout: float = 10.0
    operation_timeout: float = 30.0
    open_timeout: float = 10.0
    auto_reconnect: bool = True
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 5
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    log_level: str = "INFO"

    @property
    def relay_url(self) -> str:
        return f"ws://{self.relay_host}:{self.relay_port}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Build a config from the environment. Loads .env when reading os.environ."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        values = {}
        env_names = {
            "relay_host": "RELAY_HOST",
            "relay_port": "RELAY_PORT",
            "http_host": "HTTP_HOST",
            "http_port": "HTTP_PORT",
            "bridge_url": "BRIDGE_URL",
            "command_timeout": "COMMAND_TIMEOUT",
            "operation_timeout": "OPERATION_TIMEOUT",
            "open_timeout": "OPEN_TIMEOUT",
            "auto_reconnect": "AUTO_RECONNECT",
            "reconnect_interval": "RECONNECT_INTERVAL",
            "max_reconnect_attempts": "MAX_RECONNECT_ATTEMPTS",
            "model": "LITELLM_MODEL",
            "log_level": "LOG_LEVEL",
        }
        for name, env_name in env_names.items():
            raw = environ.get(env_name)
            if raw:
                values[name] = _coerce(name, raw)

        api_key = environ.get("LITELLM_API_KEY") or environ.get("ANTHROPIC_API_KEY") or environ.get("CLAUDE_API_KEY")
        if api_key:
            values["api_key"] = api_key

        return cls(**values)

    def with_args(self, args: List[str]) -> Tuple["RelayConfig", List[str]]:
        """Apply --key=value overrides; return the new config and the remaining positional args."""
        overrides = {}
        positional = []
        for arg in args:
            if not arg.startswith("--"):
                positional.append(arg)
                continue
            key, sep, raw = arg[2:].partition("=")
            name = key.replace("-", "_")
            if not sep or name not in _FIELD_TYPES:
                raise ConfigError(f"Unknown option: {arg}")
            overrides[name] = _coerce(name, raw)
        return replace(self, **overrides), positional


_FIELD_TYPES = {f.name: f.type for f in fields(RelayConfig)}


def _coerce(name: str, raw: str) -> Any:
    target = _FIELD_TYPES[name]
    if name == "log_level":
        level = raw.strip().upper()
        if level not in _LOG_LEVELS:
            raise ConfigError(f"Invalid value for log_level: {raw!r} (expected one of {', '.join(_LOG_LEVELS)})")
        return level
    try:
        if target in (int, "int"):
            return int(raw)
        if target in (float, "float"):
            return float(raw)
        if target in (bool, "bool"):
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(f"not a boolean: {raw!r}")
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {e}") from e
    return raw
