"""
Unit tests for configuration and logging setup.

Tests cover:
- Default settings
- Environment overrides and validation
- Settings caching
- Schema defaults taken from settings
- Root logger configuration
"""

import logging

import json_log_formatter
import pytest
from pydantic import ValidationError as PydanticValidationError

from polydoc.config import Settings, StoreBackend, get_settings, reset_settings
from polydoc.logging_config import setup_logging
from polydoc.schema import Schema


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings()

        assert settings.discriminator_key == "__t"
        assert settings.type_key == "type"
        assert settings.strict is True
        assert settings.apply_plugins_to_discriminators is False
        assert settings.store_backend == StoreBackend.MEMORY
        assert settings.log_format == "text"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("POLYDOC_DISCRIMINATOR_KEY", "kind")
        monkeypatch.setenv("POLYDOC_STORE_BACKEND", "sqlite")

        settings = Settings()

        assert settings.discriminator_key == "kind"
        assert settings.store_backend == StoreBackend.SQLITE

    def test_invalid_log_format(self):
        with pytest.raises(PydanticValidationError):
            Settings(log_format="xml")

    def test_negative_timeout(self):
        with pytest.raises(PydanticValidationError):
            Settings(sqlite_busy_timeout_ms=-1)

    def test_cached(self):
        assert get_settings() is get_settings()

    def test_reset(self, monkeypatch):
        """reset_settings() picks up environment changes."""
        get_settings()
        monkeypatch.setenv("POLYDOC_DISCRIMINATOR_KEY", "type_tag")
        reset_settings()

        assert get_settings().discriminator_key == "type_tag"

    def test_schema_uses_settings(self, monkeypatch):
        """New schemas take their default discriminator key from settings."""
        monkeypatch.setenv("POLYDOC_DISCRIMINATOR_KEY", "kind")
        reset_settings()

        assert Schema().discriminator_key == "kind"


class TestSetupLogging:
    """Tests for setup_logging()."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_text_format(self):
        setup_logging(Settings(log_level="debug"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_json_format(self):
        setup_logging(Settings(log_format="json"))

        root = logging.getLogger()
        assert root.level == logging.INFO
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(Settings(log_level="chatty"))

        assert logging.getLogger().level == logging.INFO
