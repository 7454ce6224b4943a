"""Tests for logging setup and secret masking."""

import logging

from rich.logging import RichHandler

from nvdsync.utils.logging_config import SensitiveDataFilter, setup_logging


def _record(msg, args=()):
    return logging.LogRecord("nvdsync.test", logging.INFO, __file__, 1, msg, args, None)


def test_masks_api_key_in_message():
    record = _record("GET https://x/cves?apiKey=abcdef123&resultsPerPage=1")
    SensitiveDataFilter().filter(record)
    assert "abcdef123" not in record.msg
    assert "resultsPerPage=1" in record.msg


def test_masks_api_key_in_args():
    record = _record("headers: %s", ("{'apiKey': 'abcdef123'}",))
    SensitiveDataFilter().filter(record)
    assert "abcdef123" not in record.getMessage()


def test_setup_is_idempotent():
    logger = setup_logging("WARNING")
    setup_logging("DEBUG")
    handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
    assert len(handlers) == 1
    assert logger.level == logging.DEBUG
