"""
Tests for structlog configuration.
"""

import logging

import pytest
import structlog

from ..logging_config import configure_logging


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()
    logging.getLogger("sightline").setLevel(logging.NOTSET)


class TestConfigureLogging:

    def test_events_reach_stdlib_handlers(self, restore_structlog, caplog):
        """Engine events go through the logging module."""
        configure_logging("info", "production")

        with caplog.at_level(logging.INFO, logger="sightline"):
            structlog.get_logger("sightline.engine.scheduler").info(
                "batch_processed", tokens=2
            )

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.name == "sightline.engine.scheduler"
        assert '"event": "batch_processed"' in record.getMessage()
        assert '"tokens": 2' in record.getMessage()

    def test_level_filters_events(self, restore_structlog, caplog):
        configure_logging("warning")

        structlog.get_logger("sightline.core.calculator").info("pair_decided")

        assert caplog.records == []
        assert logging.getLogger("sightline").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, restore_structlog):
        configure_logging("verbose")

        assert logging.getLogger("sightline").level == logging.INFO
