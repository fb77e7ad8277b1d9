"""
Default value application for configuration.

This module handles:
- Bridge endpoint defaults (api_url)
- Event stream reconnect defaults
- Conversation timing defaults (utterance silence window)
- Outbound call defaults (caller id)
- Health/metrics endpoint bind address
"""

import os
from typing import Any, Dict

DEFAULT_API_URL = "http://localhost:3456"
DEFAULT_RECONNECT_DELAY_MS = 3000
DEFAULT_UTTERANCE_SILENCE_MS = 1500
DEFAULT_HEALTH_HOST = "127.0.0.1"
DEFAULT_HEALTH_PORT = 15000


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name)
    if not isinstance(section, dict):
        section = {}
    config_data[name] = section
    return section


def _int_env(name: str, fallback: int) -> int:
    try:
        return int(os.getenv(name, str(fallback)))
    except ValueError:
        return fallback


def apply_bridge_defaults(config_data: Dict[str, Any]) -> None:
    """
    Environment variables:
    - VOICECALL_API_URL: Override the bridge base URL
    """
    bridge = _section(config_data, "bridge")
    env_url = os.getenv("VOICECALL_API_URL", "").strip()
    if env_url:
        bridge["api_url"] = env_url
    bridge.setdefault("api_url", DEFAULT_API_URL)


def apply_event_stream_defaults(config_data: Dict[str, Any]) -> None:
    """
    Reconnect delay is fixed, not a backoff.

    Environment variables:
    - VOICECALL_RECONNECT_DELAY_MS: Override reconnect delay
    """
    events = _section(config_data, "events")
    events.setdefault("auto_reconnect", True)
    if os.getenv("VOICECALL_RECONNECT_DELAY_MS") is not None:
        events["reconnect_delay_ms"] = _int_env(
            "VOICECALL_RECONNECT_DELAY_MS", events.get("reconnect_delay_ms", DEFAULT_RECONNECT_DELAY_MS)
        )
    events.setdefault("reconnect_delay_ms", DEFAULT_RECONNECT_DELAY_MS)


def apply_conversation_defaults(config_data: Dict[str, Any]) -> None:
    """
    Environment variables:
    - VOICECALL_UTTERANCE_SILENCE_MS: Override the debounce window
    """
    conversation = _section(config_data, "conversation")
    if os.getenv("VOICECALL_UTTERANCE_SILENCE_MS") is not None:
        conversation["utterance_silence_ms"] = _int_env(
            "VOICECALL_UTTERANCE_SILENCE_MS",
            conversation.get("utterance_silence_ms", DEFAULT_UTTERANCE_SILENCE_MS),
        )
    conversation.setdefault("utterance_silence_ms", DEFAULT_UTTERANCE_SILENCE_MS)


def apply_call_defaults(config_data: Dict[str, Any]) -> None:
    """
    Environment variables:
    - VOICECALL_FROM_NUMBER: Caller id used when originating (E.164)
    """
    calls = _section(config_data, "calls")
    from_number = os.getenv("VOICECALL_FROM_NUMBER", "").strip()
    if from_number:
        calls["from_number"] = from_number


def apply_health_defaults(config_data: Dict[str, Any]) -> None:
    """
    Precedence: env overrides > YAML health.* > defaults.

    Environment variables:
    - HEALTH_BIND_HOST: Bind address for /live, /ready, /health, /metrics
    - HEALTH_BIND_PORT: Bind port
    """
    health = _section(config_data, "health")
    host = os.getenv("HEALTH_BIND_HOST", "").strip()
    if host:
        health["host"] = host
    if os.getenv("HEALTH_BIND_PORT") is not None:
        health["port"] = _int_env("HEALTH_BIND_PORT", health.get("port", DEFAULT_HEALTH_PORT))
    health.setdefault("enabled", True)
    health.setdefault("host", DEFAULT_HEALTH_HOST)
    health.setdefault("port", DEFAULT_HEALTH_PORT)
