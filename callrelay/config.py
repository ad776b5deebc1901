"""Configuration system for callrelay.

Supports loading from YAML files, dicts, or programmatic construction
via Pydantic models. The config carries the listening endpoints, the
Realtime API credential and session settings, the call-setup prompts and
logging options. It is built once per process and handed to the bridge.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from callrelay.errors import ConfigError

DEFAULT_INSTRUCTIONS = (
    "You are a helpful and bubbly AI assistant who loves to chat about anything "
    "the user is interested about and is prepared to offer them facts. You have "
    "a penchant for dad jokes, owl jokes, and rickrolling - subtly. Always stay "
    "positive, but work in a joke when appropriate."
)

DEFAULT_GREETING = (
    'Greet the user with "Hello there! I am an AI voice assistant powered by '
    "Twilio and the OpenAI Realtime API. You can ask me for facts, jokes, or "
    'anything you can imagine. How can I help you?"'
)

# Realtime event kinds whose full payload is logged at INFO.
DEFAULT_LOG_EVENT_TYPES = [
    "error",
    "response.content.done",
    "rate_limits.updated",
    "response.done",
    "input_audio_buffer.committed",
    "input_audio_buffer.speech_stopped",
    "input_audio_buffer.speech_started",
    "session.created",
]

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ServerConfig(BaseModel):
    """Configuration for the inbound (telephony) side."""

    listen_host: str = "0.0.0.0"
    listen_port: int = 5050
    stream_path: str = "/media-stream"
    incoming_call_path: str = "/incoming-call"
    # Host used in the <Stream> URL; defaults to the webhook's Host header
    public_host: str = ""


class RealtimeConfig(BaseModel):
    """Configuration for the OpenAI Realtime API side."""

    api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    url: str = "wss://api.openai.com/v1/realtime"
    model: str = "gpt-4o-realtime-preview-2024-10-01"
    voice: str = "alloy"
    instructions: str = DEFAULT_INSTRUCTIONS
    temperature: float = 0.8
    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    audio_format: str = "g711_ulaw"
    turn_detection: str = "server_vad"
    # Upper bound on waiting for session.created before sending session.update
    session_ready_timeout: float = 3.0

    @property
    def endpoint(self) -> str:
        """Full WebSocket URL including the model query parameter."""
        return f"{self.url}?model={self.model}"

    def headers(self) -> dict[str, str]:
        """HTTP headers presented on the WebSocket upgrade."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }


class GreetingConfig(BaseModel):
    """Optional greeting that makes the assistant speak first."""

    enabled: bool = False
    text: str = DEFAULT_GREETING


class CallSetupConfig(BaseModel):
    """TwiML returned by the incoming-call webhook."""

    prompts: list[str] = Field(default_factory=lambda: [
        "Please wait while we connect your call to the A. I. voice assistant, "
        "powered by Twilio and the Open-A.I. Realtime API",
        "O.K. you can start talking!",
    ])
    pause_seconds: int = 1


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_event_types: list[str] = Field(default_factory=lambda: list(DEFAULT_LOG_EVENT_TYPES))
    show_timing_math: bool = False


class RelayConfig(BaseModel):
    """Top-level callrelay configuration.

    Examples:
        # Programmatic
        config = RelayConfig(realtime=RealtimeConfig(api_key="sk-...", voice="verse"))

        # From YAML
        config = RelayConfig.from_yaml("relay.yaml")

        # Shorthand
        config = RelayConfig.from_dict({"listen_port": 5050, "api_key": "sk-..."})
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    greeting: GreetingConfig = Field(default_factory=GreetingConfig)
    call_setup: CallSetupConfig = Field(default_factory=CallSetupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def require_api_key(self) -> str:
        """Return the Realtime API key, raising ConfigError if it is unset."""
        if not self.realtime.api_key:
            raise ConfigError(
                "Missing OpenAI API key. Set realtime.api_key or OPENAI_API_KEY."
            )
        return self.realtime.api_key

    @classmethod
    def from_yaml(cls, path: str | Path) -> RelayConfig:
        """Load configuration from a YAML file.

        ``${VAR}`` references in string values are expanded from the
        environment.
        """
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls._from_raw(_expand_env(data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelayConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"server": {"listen_port": 5050}, "realtime": {"voice": "alloy"}}

        Shorthand format:
            {"listen_port": 5050, "voice": "alloy", "api_key": "sk-..."}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> RelayConfig:
        """Normalize and construct config from a raw dict."""
        flat_mappings = {
            "listen_host": ("server", "listen_host"),
            "listen_port": ("server", "listen_port"),
            "port": ("server", "listen_port"),
            "stream_path": ("server", "stream_path"),
            "public_host": ("server", "public_host"),
            "api_key": ("realtime", "api_key"),
            "model": ("realtime", "model"),
            "voice": ("realtime", "voice"),
            "instructions": ("realtime", "instructions"),
            "temperature": ("realtime", "temperature"),
            "log_level": ("logging", "level"),
        }

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data:
                section_data = dict(data.get(section) or {})
                section_data[nested_key] = data.pop(flat_key)
                data[section] = section_data

        return cls(**data)


def _expand_env(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in strings.

    Unset variables expand to the empty string.
    """
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(source: str | Path | dict[str, Any] | RelayConfig | None = None) -> RelayConfig:
    """Load a RelayConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing RelayConfig,
            or None for defaults (credential taken from the environment).

    Returns:
        A RelayConfig instance.
    """
    if source is None:
        return RelayConfig()
    if isinstance(source, RelayConfig):
        return source
    if isinstance(source, dict):
        return RelayConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return RelayConfig.from_yaml(path)
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `callrelay init`
DEFAULT_CONFIG_YAML = """\
# callrelay configuration

server:
  listen_host: 0.0.0.0
  listen_port: 5050
  stream_path: /media-stream
  incoming_call_path: /incoming-call
  # public_host: example.ngrok.app

realtime:
  api_key: ${OPENAI_API_KEY}
  model: gpt-4o-realtime-preview-2024-10-01
  voice: alloy           # alloy | echo | shimmer | ...
  temperature: 0.8
  audio_format: g711_ulaw
  turn_detection: server_vad
  session_ready_timeout: 3.0

greeting:
  enabled: false

call_setup:
  pause_seconds: 1

logging:
  level: INFO
  show_timing_math: false
"""
