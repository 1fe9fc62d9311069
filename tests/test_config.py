"""Tests for ClientSettings and YAML config loading."""

import pytest
from pydantic import ValidationError

from basekit.core.config import ClientSettings, load_settings


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep BASEKIT_* variables and .env files from leaking into tests."""
    for key in ("BASEKIT_URL", "BASEKIT_API_KEY", "BASEKIT_QUERY_TIMEOUT", "BASEKIT_RECONNECT_MAX_DELAY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


class TestClientSettings:
    """Test settings defaults, validation and derived URLs."""

    def test_defaults(self):
        """Test defaults for optional settings."""
        settings = ClientSettings(url="https://project.example.co", api_key="key")

        assert settings.schema_name == "public"
        assert settings.reconnect_base_delay == 1.0
        assert settings.reconnect_max_delay == 30.0
        assert settings.reconnect_jitter == 0.5
        assert settings.query_timeout is None
        assert settings.persist_session is False

    def test_derived_urls(self):
        """Test service URLs derive from the base URL."""
        settings = ClientSettings(url="https://project.example.co/", api_key="key")

        assert settings.url == "https://project.example.co"
        assert settings.rest_url == "https://project.example.co/rest/v1"
        assert settings.auth_url == "https://project.example.co/auth/v1"
        assert settings.realtime_url == "wss://project.example.co/realtime/v1/websocket"

    def test_plain_http_maps_to_ws(self):
        """Test local http URLs use ws for realtime."""
        settings = ClientSettings(url="http://localhost:54321", api_key="key")

        assert settings.realtime_url == "ws://localhost:54321/realtime/v1/websocket"

    def test_rejects_non_http_url(self):
        """Test a URL without http(s) scheme is rejected."""
        with pytest.raises(ValidationError):
            ClientSettings(url="project.example.co", api_key="key")

    def test_rejects_out_of_range_jitter(self):
        """Test jitter must be within [0, 1]."""
        with pytest.raises(ValidationError):
            ClientSettings(url="https://x.example.co", api_key="key", reconnect_jitter=2)

    def test_reads_environment(self, monkeypatch):
        """Test BASEKIT_* environment variables populate settings."""
        monkeypatch.setenv("BASEKIT_URL", "https://env.example.co")
        monkeypatch.setenv("BASEKIT_API_KEY", "env-key")
        monkeypatch.setenv("BASEKIT_QUERY_TIMEOUT", "12.5")

        settings = ClientSettings()

        assert settings.url == "https://env.example.co"
        assert settings.api_key == "env-key"
        assert settings.query_timeout == 12.5


class TestLoadSettings:
    """Test YAML loading and override priority."""

    def test_yaml_with_nested_reconnect(self, tmp_path):
        """Test the nested reconnect section maps to flat fields."""
        path = tmp_path / "basekit.yaml"
        path.write_text(
            "url: https://yaml.example.co\n"
            "api_key: yaml-key\n"
            "reconnect:\n"
            "  base_delay: 0.5\n"
            "  max_delay: 20\n"
            "  jitter: 0.25\n"
        )

        settings = load_settings(path)

        assert settings.url == "https://yaml.example.co"
        assert settings.reconnect_base_delay == 0.5
        assert settings.reconnect_max_delay == 20
        assert settings.reconnect_jitter == 0.25

    def test_overrides_win_over_file(self, tmp_path):
        """Test keyword overrides beat file values."""
        path = tmp_path / "basekit.yaml"
        path.write_text("url: https://yaml.example.co\napi_key: yaml-key\n")

        settings = load_settings(path, api_key="override-key")

        assert settings.api_key == "override-key"
        assert settings.url == "https://yaml.example.co"

    def test_file_wins_over_environment(self, tmp_path, monkeypatch):
        """Test file values beat environment variables."""
        monkeypatch.setenv("BASEKIT_RECONNECT_MAX_DELAY", "99")
        path = tmp_path / "basekit.yaml"
        path.write_text("url: https://yaml.example.co\napi_key: k\nreconnect:\n  max_delay: 10\n")

        assert load_settings(path).reconnect_max_delay == 10

    def test_missing_file_uses_environment(self, tmp_path, monkeypatch):
        """Test a missing file falls back to environment variables."""
        monkeypatch.setenv("BASEKIT_URL", "https://env.example.co")
        monkeypatch.setenv("BASEKIT_API_KEY", "env-key")

        settings = load_settings(tmp_path / "missing.yaml")

        assert settings.url == "https://env.example.co"

    def test_non_mapping_file_rejected(self, tmp_path):
        """Test a YAML list is rejected."""
        path = tmp_path / "basekit.yaml"
        path.write_text("- url\n- api_key\n")

        with pytest.raises(ValueError):
            load_settings(path)
