"""
Configuration file loading.

Resolves the config path against the project root and reads YAML with
${VAR} / $VAR environment expansion applied before parsing.
"""

import os
from pathlib import Path

import yaml

# Project root directory (parent of voicecall/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

DEFAULT_CONFIG_PATH = "config/voicecall.yaml"


def resolve_config_path(path: str) -> str:
    """Return ``path`` unchanged if absolute, else anchored at the project root."""
    if os.path.isabs(path):
        return path
    return os.path.join(_PROJ_DIR, path)


def load_yaml_with_env_expansion(path: str) -> dict:
    """
    Load a YAML mapping, expanding environment references first.

    Undefined variables are left as written. An empty file yields ``{}``.

    Raises:
        FileNotFoundError: the file does not exist
        yaml.YAMLError: the content is not valid YAML
    """
    try:
        with open(path, "r") as f:
            raw = f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        data = yaml.safe_load(os.path.expandvars(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"Configuration root must be a mapping, got {type(data).__name__}")
    return data
