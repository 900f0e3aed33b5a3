"""Tests for logging setup and the structured logger."""

import logging

import pytest

from relctl.core.logging import LogLevel, StructuredLogger, get_logger, setup_logging
from relctl.release.models import ReleaseStatus


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_accepts_level_name(self):
        logger = setup_logging("DEBUG", rich_output=False)
        assert logger.name == "relctl"
        assert logger.level == logging.DEBUG

    def test_accepts_enum(self):
        logger = setup_logging(LogLevel.ERROR, rich_output=False)
        assert logger.level == logging.ERROR
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging("chatty", rich_output=False)


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_namespaced_under_relctl(self):
        assert get_logger("engine").name == "relctl.engine"
        assert StructuredLogger("relctl.release.engine").name == "relctl.release.engine"

    def test_context_rendering(self):
        log = StructuredLogger("engine").bind(target="web", release=None)
        message = log._format_message(
            "Transition",
            state=ReleaseStatus.ROLLED_BACK,
            reason="health check failed",
        )
        assert message == 'Transition [target=web state=rolled_back reason="health check failed"]'

    def test_no_context(self):
        assert StructuredLogger("engine")._format_message("Started") == "Started"

    def test_bind_does_not_leak(self):
        base = StructuredLogger("engine")
        base.bind(target="web")
        assert base._format_message("x", attempt=2) == "x [attempt=2]"
