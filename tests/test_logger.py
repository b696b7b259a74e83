"""Tests for logging setup."""

import json
import logging
import sys
from pathlib import Path

import pytest

from report_sync.config import LoggingConfig
from report_sync.utils.logger import ROOT_LOGGER, JsonFormatter, get_logger, setup_logging


@pytest.fixture(autouse=True)
def reset_handlers():
    yield
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


class TestSetupLogging:
    def test_file_gets_json_lines(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "sync.log"
        setup_logging(LoggingConfig(format="simple", file=log_file))

        get_logger("core.recalc").info("Recalculated", extra={"sync_queue_id": 3})
        for handler in logging.getLogger(ROOT_LOGGER).handlers:
            handler.flush()

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["message"] == "Recalculated"
        assert record["level"] == "INFO"
        assert record["component"] == "core.recalc"
        assert record["sync_queue_id"] == 3

    def test_setup_replaces_handlers(self) -> None:
        setup_logging(LoggingConfig(format="json"))
        logger = setup_logging(LoggingConfig(format="simple", level="DEBUG"))

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG

    def test_http_loggers_quieted(self) -> None:
        setup_logging(LoggingConfig(level="DEBUG"))
        assert logging.getLogger("httpx").level == logging.WARNING


class TestJsonFormatter:
    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.getLogger("report_sync.core").makeRecord(
                "report_sync.core", logging.ERROR, __file__, 1,
                "failed", (), exc_info=sys.exc_info(),
            )

        data = json.loads(JsonFormatter().format(record))
        assert data["component"] == "report_sync.core"
        assert "RuntimeError: boom" in data["exception"]

    def test_get_logger_without_component(self) -> None:
        assert get_logger() is logging.getLogger(ROOT_LOGGER)
        assert get_logger("connectors.sqlite").name == "report_sync.connectors.sqlite"
