"""Tests for structured logging."""

import json
import logging
from pathlib import Path

import structlog

from codescout.config.models import LoggingConfig, LogOutputConfig
from codescout.core.logging import (
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)


class TestCorrelationId:
    def setup_method(self) -> None:
        clear_correlation_id()

    def test_set_and_get(self) -> None:
        assert set_correlation_id("query-1") == "query-1"
        assert get_correlation_id() == "query-1"

    def test_generated_when_missing(self) -> None:
        cid = set_correlation_id()
        assert len(cid) == 12
        assert get_correlation_id() == cid

    def test_clear(self) -> None:
        set_correlation_id("to-clear")
        clear_correlation_id()
        assert get_correlation_id() is None


class TestConfigureLogging:
    """Logging configuration tests."""

    def setup_method(self) -> None:
        structlog.reset_defaults()
        logging.getLogger().handlers.clear()
        clear_correlation_id()

    def teardown_method(self) -> None:
        for handler in logging.getLogger().handlers:
            handler.close()
        logging.getLogger().handlers.clear()
        structlog.reset_defaults()

    def test_json_file_output_carries_correlation_id(self, tmp_path: Path) -> None:
        # Given
        log_file = tmp_path / "codescout.log"
        config = LoggingConfig(
            level="INFO",
            outputs=[LogOutputConfig(format="json", destination=str(log_file))],
        )
        configure_logging(config=config)
        set_correlation_id("abc123")

        # When
        get_logger("search").info("search.completed", strategy="lexical")

        # Then
        data = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert data["event"] == "search.completed"
        assert data["strategy"] == "lexical"
        assert data["correlation_id"] == "abc123"
        assert data["logger"] == "search"
        assert data["level"] == "info"
        assert "timestamp" in data

    def test_config_object_takes_precedence(self, tmp_path: Path) -> None:
        log_file = tmp_path / "debug.log"
        config = LoggingConfig(
            level="DEBUG",
            outputs=[LogOutputConfig(format="json", destination=str(log_file))],
        )

        configure_logging(config=config, level="ERROR")
        get_logger().debug("debug msg")

        assert "debug msg" in log_file.read_text()

    def test_per_output_levels(self, tmp_path: Path) -> None:
        """Each output filters by its own level."""
        # Given
        debug_file = tmp_path / "debug.log"
        warn_file = tmp_path / "warn.log"
        config = LoggingConfig(
            level="DEBUG",
            outputs=[
                LogOutputConfig(format="json", destination=str(debug_file)),
                LogOutputConfig(format="console", destination=str(warn_file), level="WARNING"),
            ],
        )
        configure_logging(config=config)
        logger = get_logger()

        # When
        logger.debug("chatty")
        logger.warning("loud")

        # Then
        debug_text = debug_file.read_text()
        warn_text = warn_file.read_text()
        assert "chatty" in debug_text and "loud" in debug_text
        assert "chatty" not in warn_text
        assert "loud" in warn_text

    def test_stdlib_records_are_rendered(self, tmp_path: Path) -> None:
        log_file = tmp_path / "stdlib.log"
        config = LoggingConfig(
            outputs=[LogOutputConfig(format="json", destination=str(log_file))],
        )
        configure_logging(config=config)

        logging.getLogger("some.library").warning("plain stdlib")

        data = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert data["event"] == "plain stdlib"
        assert data["level"] == "warning"

    def test_noisy_loggers_are_quieted(self) -> None:
        configure_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("watchfiles.main").level == logging.WARNING
