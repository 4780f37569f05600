"""Tests for Settings and logging setup."""

import logging
from unittest.mock import patch

from lens.config import Settings, configure_logging


class TestConfigureLogging:
    def test_uses_settings_level(self):
        with patch("lens.config.logging.basicConfig") as basic:
            configure_logging(Settings(log_level="debug"))
        basic.assert_called_once()
        assert basic.call_args.kwargs["level"] == logging.DEBUG
        assert "%(name)s" in basic.call_args.kwargs["format"]

    def test_unknown_level_falls_back_to_info(self):
        with patch("lens.config.logging.basicConfig") as basic:
            configure_logging(Settings(log_level="chatty"))
        assert basic.call_args.kwargs["level"] == logging.INFO

    def test_log_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("LENS_LOG_LEVEL", "warning")
        with patch("lens.config.logging.basicConfig") as basic:
            configure_logging()
        assert basic.call_args.kwargs["level"] == logging.WARNING
