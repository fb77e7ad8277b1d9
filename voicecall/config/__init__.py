"""
Configuration package for the voicecall bridge.

This package contains:
- loaders: YAML file loading and path resolution
- security: credential injection from the environment
- defaults: default value application and env overrides

The pydantic models and load_config() live here so callers import
everything from ``voicecall.config``.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from voicecall.config.defaults import (
    apply_bridge_defaults,
    apply_call_defaults,
    apply_conversation_defaults,
    apply_event_stream_defaults,
    apply_health_defaults,
)
from voicecall.config.loaders import DEFAULT_CONFIG_PATH, load_yaml_with_env_expansion, resolve_config_path
from voicecall.config.security import inject_bridge_credentials


_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


class BridgeConfig(BaseModel):
    api_url: str = Field(default="http://localhost:3456")
    api_key: Optional[str] = None
    request_timeout_sec: float = Field(default=10.0)
    # Server-side speak blocks until playback completes
    speak_timeout_sec: float = Field(default=120.0)


class EventStreamConfig(BaseModel):
    auto_reconnect: bool = Field(default=True)
    reconnect_delay_ms: int = Field(default=3000)


class ConversationConfig(BaseModel):
    utterance_silence_ms: int = Field(default=1500)
    voice: Optional[str] = None
    language: Optional[str] = None


class CallDefaultsConfig(BaseModel):
    from_number: Optional[str] = None
    default_endpoint: str = Field(default="PJSIP/101")
    # Dial pattern for external numbers, e.g. "PJSIP/{number}@trunk"
    outbound_trunk: Optional[str] = None

    @field_validator("from_number")
    @classmethod
    def _check_e164(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _E164.match(value):
            raise ValueError("from_number must be E.164 format")
        return value


class HealthConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=15000)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    events: EventStreamConfig = Field(default_factory=EventStreamConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    calls: CallDefaultsConfig = Field(default_factory=CallDefaultsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)


def load_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Raises:
        FileNotFoundError: If the configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If values fail validation
    """
    config_data = load_yaml_with_env_expansion(resolve_config_path(path))

    inject_bridge_credentials(config_data)

    apply_bridge_defaults(config_data)
    apply_event_stream_defaults(config_data)
    apply_conversation_defaults(config_data)
    apply_call_defaults(config_data)
    apply_health_defaults(config_data)

    return AppConfig(**config_data)


def validate_production_config(config: AppConfig) -> tuple[list[str], list[str]]:
    """Check a loaded config for deployment problems.

    Returns:
        (errors, warnings): errors block startup, warnings are logged
    """
    errors = []
    warnings = []

    api_url = config.bridge.api_url
    if not api_url.startswith(("http://", "https://")):
        errors.append(f"bridge.api_url must be an http(s) URL: {api_url}")

    if config.events.reconnect_delay_ms <= 0:
        errors.append("events.reconnect_delay_ms must be positive")
    elif config.events.reconnect_delay_ms < 500:
        warnings.append(
            f"Reconnect delay very small: {config.events.reconnect_delay_ms}ms (risk of reconnect storms)"
        )

    if config.conversation.utterance_silence_ms <= 0:
        errors.append("conversation.utterance_silence_ms must be positive")

    if not config.calls.from_number:
        warnings.append("calls.from_number not set; originate requires an explicit caller id")

    if config.bridge.api_key and api_url.startswith("http://") and "localhost" not in api_url and "127.0.0.1" not in api_url:
        warnings.append("Bearer token sent over plain http to a non-local bridge")

    if config.health.enabled and not 0 < config.health.port < 65536:
        errors.append(f"health.port out of range: {config.health.port}")
    elif config.health.enabled and config.health.host not in ("127.0.0.1", "localhost", "::1"):
        warnings.append(f"Health/metrics endpoint exposed on {config.health.host}")

    if config.logging.level.lower() == "debug":
        warnings.append("Debug logging enabled (transcripts appear in logs)")

    return errors, warnings


__all__ = [
    "AppConfig",
    "BridgeConfig",
    "CallDefaultsConfig",
    "ConversationConfig",
    "EventStreamConfig",
    "HealthConfig",
    "LoggingConfig",
    "load_config",
    "validate_production_config",
]
