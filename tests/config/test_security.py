"""
Unit tests for voicecall.config.security.

The bridge API key comes from the environment only; YAML values are
always discarded.
"""

import pytest

from voicecall.config.security import _is_nonempty_string, inject_bridge_credentials


class TestIsNonemptyString:

    def test_valid_string_returns_true(self):
        assert _is_nonempty_string("hello") is True

    def test_whitespace_only_returns_false(self):
        assert _is_nonempty_string("   ") is False
        assert _is_nonempty_string("") is False

    def test_non_string_returns_false(self):
        assert _is_nonempty_string(None) is False
        assert _is_nonempty_string(42) is False


class TestInjectBridgeCredentials:

    def test_env_key_injected(self, monkeypatch):
        monkeypatch.setenv("VOICECALL_API_KEY", "  secret-token  ")
        config_data = {"bridge": {"api_url": "http://localhost:3456"}}

        inject_bridge_credentials(config_data)

        assert config_data["bridge"]["api_key"] == "secret-token"
        assert config_data["bridge"]["api_url"] == "http://localhost:3456"

    def test_yaml_key_discarded_without_env(self, monkeypatch):
        """A key committed to YAML must never be used."""
        monkeypatch.delenv("VOICECALL_API_KEY", raising=False)
        config_data = {"bridge": {"api_key": "from-yaml"}}

        inject_bridge_credentials(config_data)

        assert config_data["bridge"]["api_key"] is None

    def test_yaml_key_overridden_by_env(self, monkeypatch):
        monkeypatch.setenv("VOICECALL_API_KEY", "from-env")
        config_data = {"bridge": {"api_key": "from-yaml"}}

        inject_bridge_credentials(config_data)

        assert config_data["bridge"]["api_key"] == "from-env"

    def test_missing_bridge_section_created(self, monkeypatch):
        monkeypatch.delenv("VOICECALL_API_KEY", raising=False)
        config_data = {}

        inject_bridge_credentials(config_data)

        assert config_data == {"bridge": {"api_key": None}}

    @pytest.mark.parametrize("value", ["", "   "])
    def test_blank_env_treated_as_unset(self, monkeypatch, value):
        monkeypatch.setenv("VOICECALL_API_KEY", value)
        config_data = {}

        inject_bridge_credentials(config_data)

        assert config_data["bridge"]["api_key"] is None
