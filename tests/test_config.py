"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from pyusd_dashboard.config import Settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("RPC_URL", "RPC_MAX_BLOCK_RANGE", "FEED_SIZE", "FEED_ENABLED", "FRONTRUN_TOLERANCE",
                 "GEMINI_API_KEY", "TOKEN_DECIMALS", "HTTP_PORT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    """Test cases for Settings."""

    def test_defaults(self, clean_env):
        settings = Settings(_env_file=None)

        assert settings.rpc_max_block_range == 5
        assert settings.token_decimals == 6
        assert settings.feed_size == 20
        assert settings.feed_max_size == 50
        assert settings.sandwich_min_transfers == 3
        assert settings.frontrun_tolerance == 0.1
        assert settings.gemini_api_key is None

    def test_environment_override(self, clean_env):
        """Test variables are read case-insensitively from the environment."""
        clean_env.setenv("rpc_url", "https://mainnet.example.org")
        clean_env.setenv("FEED_SIZE", "35")
        clean_env.setenv("FEED_ENABLED", "false")
        clean_env.setenv("FRONTRUN_TOLERANCE", "0.05")

        settings = Settings(_env_file=None)

        assert settings.rpc_url == "https://mainnet.example.org"
        assert settings.feed_size == 35
        assert settings.feed_enabled is False
        assert settings.frontrun_tolerance == 0.05

    def test_invalid_value(self, clean_env):
        clean_env.setenv("HTTP_PORT", "eighty")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)
