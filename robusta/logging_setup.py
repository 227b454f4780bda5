"""
Logging Setup
-------------
Root logger configuration for CLI and live runs: console handler on
stderr (stdout is reserved for the CLI's JSON output) plus an optional
rotating file handler.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE = "robusta.log"


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach and close all handlers of `logger` (root by default)."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.flush()
        handler.close()


def setup_logging(
    log_level: str = "INFO",
    logs_dir: Optional[str | Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        logs_dir: directory for a rotating log file; no file when None.
        console_output: whether to log to stderr.

    Returns:
        The configured root logger.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(level)
    teardown_logging(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if logs_dir is not None:
        path = Path(logs_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path / LOG_FILE,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console_output:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(level)
        console.setFormatter(formatter)
        logger.addHandler(console)

    logger.debug("logging initialized at %s", logging.getLevelName(level))
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
