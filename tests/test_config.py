"""Tests for settings and logging setup."""

import structlog

from src.orchestrator.config import Settings, configure_logging


class TestSettings:
    """Test settings defaults and overrides."""

    def test_defaults(self):
        """Defaults match the documented thresholds."""
        settings = Settings()
        assert settings.success_rate_threshold == 0.8
        assert settings.recent_task_limit == 50
        assert settings.single_timeout_ms == 300000
        assert settings.max_iterations == 5

    def test_environment_override(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("MAX_ITERATIONS", "3")
        monkeypatch.setenv("ENSEMBLE_TIMEOUT_MS", "1500")
        settings = Settings()
        assert settings.max_iterations == 3
        assert settings.ensemble_timeout_ms == 1500


class TestLogging:
    """Test structlog setup."""

    def test_configure_logging(self):
        """Logging setup yields a usable structlog logger."""
        configure_logging(Settings(log_level="debug"))
        logger = structlog.get_logger()
        logger.debug("Logging configured", check=True)
        assert structlog.is_configured()
        structlog.reset_defaults()
