#!/usr/bin/env python3
"""
Gateway Configuration Module
Loads settings from an optional TOML file, then applies environment overrides
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "settings.toml"


class ConfigError(Exception):
    """Raised when a setting is missing or cannot be parsed"""


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError("Invalid boolean value")


def _parse_optional_float(value: str) -> Optional[float]:
    if value.strip().lower() in ("", "none", "null"):
        return None
    return float(value)


# env var -> (field name, parser)
ENV_OVERRIDES = {
    "GATEWAY_HOST": ("host", str),
    "GATEWAY_PORT": ("port", int),
    "GATEWAY_USERS_DIR": ("users_dir", str),
    "OAUTH_CALLBACK_PORT": ("callback_port", int),
    "OAUTH_CALLBACK_TIMEOUT": ("callback_timeout", _parse_optional_float),
    "EMBED_TIMEOUT": ("embed_timeout", float),
    "MCP_TIMEOUT": ("mcp_timeout", float),
    "HTTP_TOOL_TIMEOUT": ("http_tool_timeout", float),
    "SHUTDOWN_GRACE": ("shutdown_grace", float),
    "LLM_MODEL": ("model", str),
    "LLM_EMBEDDING_MODEL": ("embedding_model", str),
    "LLM_API_BASE": ("api_base", str),
    "LLM_API_KEY": ("api_key", str),
    "LLM_MAX_TOOL_ROUNDS": ("max_tool_rounds", int),
    "LLM_TOOLS_ENABLED": ("tools_enabled", _parse_bool),
    "LOG_LEVEL": ("log_level", str),
}


@dataclass
class GatewayConfig:
    """Runtime settings for the gateway process"""
    host: str = "127.0.0.1"
    port: int = 3100
    users_dir: str = "data/users"
    callback_port: int = 8090
    callback_timeout: Optional[float] = None  # wait forever for the OAuth redirect
    embed_timeout: float = 60.0
    mcp_timeout: float = 30.0
    http_tool_timeout: float = 30.0
    shutdown_grace: float = 5.0  # in-flight /infer streams get this long to send their error frame
    model: str = "gpt-4o-mini"
    embedding_model: Optional[str] = None
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    max_tool_rounds: int = 8
    tools_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GatewayConfig':
        """Create config from a settings dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown gateway settings: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, settings_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> 'GatewayConfig':
        """Load settings file (if any) and apply environment overrides.

        The settings file path comes from the argument, then LLM_GATEWAY_SETTINGS,
        then ./settings.toml when it exists.
        """
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        path_str = settings_path or env.get("LLM_GATEWAY_SETTINGS")
        path = Path(path_str) if path_str else Path(DEFAULT_SETTINGS_FILE)
        if path.exists():
            try:
                settings = toml.load(path)
            except (toml.TomlDecodeError, OSError) as e:
                raise ConfigError(f"Failed to read settings file {path}: {e}") from e
            data.update(settings.get("gateway", {}))
            logger.debug(f"Loaded gateway settings from {path}")
        elif path_str:
            raise ConfigError(f"Settings file not found: {path}")

        config = cls.from_dict(data)
        config.apply_env(env)
        config.validate()
        return config

    def apply_env(self, env: Dict[str, str]) -> None:
        for env_name, (field_name, parser) in ENV_OVERRIDES.items():
            raw = env.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                setattr(self, field_name, parser(raw))
            except ValueError as e:
                raise ConfigError(f"Failed to parse {env_name}: {e}") from e

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if not 0 < self.callback_port < 65536:
            raise ConfigError(f"callback_port out of range: {self.callback_port}")
        if self.embed_timeout <= 0:
            raise ConfigError("embed_timeout must be positive")
        if self.http_tool_timeout <= 0:
            raise ConfigError("http_tool_timeout must be positive")
        if self.shutdown_grace < 0:
            raise ConfigError("shutdown_grace must not be negative")
        if self.max_tool_rounds < 1:
            raise ConfigError("max_tool_rounds must be at least 1")
        if self.log_level.upper() not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ConfigError(f"Invalid log level: {self.log_level}")
