"""Tests for service.logging — handlers, request ids, and error logging."""

import logging
import threading
from unittest import mock

import pytest

from service import logging as tv_logging


@pytest.fixture
def logger(tmp_path):
    with mock.patch("config.get", side_effect=lambda k, d=None: "clean" if k == "console_format" else d):
        log = tv_logging.setup_logging(verbose=False, log_dir=tmp_path)
    yield log
    for handler in list(log.handlers):
        handler.close()
    log.handlers.clear()
    tv_logging.set_request_id("")


def _read_log():
    for handler in tv_logging.get_logger().handlers:
        handler.flush()
    return tv_logging.get_current_log_file().read_text(encoding="utf-8")


class TestSetupLogging:
    def test_creates_log_file(self, logger, tmp_path):
        log_file = tv_logging.get_current_log_file()
        assert log_file.parent == tmp_path
        assert log_file.name.startswith("trendview_")
        assert "Run started" in _read_log()

    def test_clean_format_has_no_console_handler(self, logger):
        assert all(isinstance(h, logging.FileHandler) for h in logger.handlers)

    def test_reinit_replaces_handlers(self, logger, tmp_path):
        with mock.patch("config.get", side_effect=lambda k, d=None: d):
            tv_logging.setup_logging(verbose=True, log_dir=tmp_path)
        assert len(logger.handlers) == 2

    def test_request_id_in_file(self, logger):
        tv_logging.set_request_id("abc12345")
        logger.info("fetching")
        assert "| abc12345 | fetching" in _read_log()
        tv_logging.set_request_id("")
        logger.info("idle")
        assert "| - | idle" in _read_log()

    def test_reset_restores_previous_id(self, logger):
        outer = tv_logging.set_request_id("outer")
        inner = tv_logging.set_request_id("inner")
        assert tv_logging.get_request_id() == "inner"
        tv_logging.reset_request_id(inner)
        assert tv_logging.get_request_id() == "outer"
        tv_logging.reset_request_id(outer)
        assert tv_logging.get_request_id() == ""

    def test_request_id_is_per_thread(self, logger):
        tv_logging.set_request_id("main0001")
        started = threading.Event()
        release = threading.Event()

        def other():
            token = tv_logging.set_request_id("other001")
            started.set()
            release.wait(5)
            logger.info("from other")
            tv_logging.reset_request_id(token)

        thread = threading.Thread(target=other)
        thread.start()
        assert started.wait(5)
        logger.info("from main")
        release.set()
        thread.join(5)
        logger.info("main again")

        text = _read_log()
        assert "| main0001 | from main" in text
        assert "| other001 | from other" in text
        assert "| main0001 | main again" in text


class TestLogError:
    def test_includes_context_and_traceback(self, logger):
        try:
            raise RuntimeError("query failed")
        except RuntimeError as e:
            tv_logging.log_error("Fetch failed", exc=e, context={"table": "Trend00005Data"})
        text = _read_log()
        assert "Fetch failed" in text
        assert "table: Trend00005Data" in text
        assert "Exception type: RuntimeError" in text
        assert "Stack trace:" in text

    def test_tagged(self):
        assert tv_logging.tagged("cache") == {"log_tag": "cache"}
        assert "cache" in tv_logging.LOG_TAGS
