"""
Credential injection.

SECURITY POLICY:
- The bridge API key MUST NEVER be read from YAML files
- It comes from the VOICECALL_API_KEY environment variable only
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    return isinstance(val, str) and val.strip() != ""


def inject_bridge_credentials(config_data: Dict[str, Any]) -> None:
    """
    Overwrite ``bridge.api_key`` with the environment value.

    A key present in YAML is discarded even when the environment has none,
    so a committed config file can never authenticate on its own.

    Environment variables:
    - VOICECALL_API_KEY (optional; sent as a bearer token)
    """
    bridge = config_data.get("bridge")
    if not isinstance(bridge, dict):
        bridge = {}

    api_key = os.getenv("VOICECALL_API_KEY")
    bridge["api_key"] = api_key.strip() if _is_nonempty_string(api_key) else None
    config_data["bridge"] = bridge
