"""Logging configuration for the project."""

import logging
import logging.handlers
import os
import sys
from typing import Optional


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    debug: bool = False,
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
) -> None:
    """Set up logging configuration for the application.

    Args:
        log_level: The logging level to use (INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a log file. If None, logs only go to stderr
        debug: Allow DEBUG output (score and probe diagnostics). Without it a
            requested DEBUG level is raised to INFO.
        log_format: The format string to use for log messages
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    if debug:
        numeric_level = logging.DEBUG
    elif numeric_level < logging.INFO:
        numeric_level = logging.INFO

    handlers = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter(log_format))
    handlers.append(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)

    logging.basicConfig(
        level=numeric_level,
        format=log_format,
        handlers=handlers,
        force=True
    )

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
