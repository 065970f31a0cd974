"""
Tests for settings validation.
"""

import pytest

from gateway.config import ConfigurationError, Settings


def test_defaults():
    settings = Settings(database_url="sqlite+aiosqlite:///:memory:")

    assert settings.default_max_output_tokens == 4096
    assert settings.anthropic_version == "2023-06-01"
    assert settings.subscription_extension_days == 35


def test_missing_database_url_fails_fast():
    with pytest.raises(ConfigurationError) as exc_info:
        Settings(database_url="")
    assert "DATABASE_URL is required" in str(exc_info.value)


def test_unsupported_database_url():
    with pytest.raises(ConfigurationError):
        Settings(database_url="mysql://localhost/db")


def test_non_positive_output_default():
    with pytest.raises(ConfigurationError):
        Settings(database_url="sqlite:///x.db", default_max_output_tokens=0)
