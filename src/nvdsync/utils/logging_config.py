"""
logging_config.py
Logging setup for nvdsync: Rich console output with API key masking.
"""

import logging
import os
import re
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "nvdsync"


class SensitiveDataFilter(logging.Filter):
    """Filter to mask API keys and tokens in log records."""

    PATTERNS = [
        (re.compile(r'(api[_-]?key["\']?\s*[:=]\s*["\']?)([^"\'}\s,&]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'}\s,&]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r'\1***MASKED***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    def _mask(self, text: str) -> str:
        for pattern, replacement in self.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _mask_value(self, value):
        if isinstance(value, str):
            return self._mask(value)
        return value


def setup_logging(log_level: Optional[str] = None, console: Optional[Console] = None) -> logging.Logger:
    """
    Configure the nvdsync logger once.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to $NVDSYNC_LOG_LEVEL or INFO
        console: Rich console to log to (stderr by default)

    Returns:
        The configured "nvdsync" logger
    """
    if log_level is None:
        log_level = os.getenv("NVDSYNC_LOG_LEVEL", "INFO")
    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    for handler in logger.handlers:
        if isinstance(handler, RichHandler):
            handler.setLevel(level)
            return logger

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="[%X]"))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    return logger
