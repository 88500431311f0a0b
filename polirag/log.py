"""Structured logging setup."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure structlog on top of stdlib logging.

    With a log file, everything goes to the file and only errors reach stderr
    so an interactive terminal stays clean.

    Args:
        level: Minimum level name for the main handler
        log_file: Optional file to write logs to
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level.upper())
        root.addHandler(file_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.ERROR)
        root.addHandler(stderr_handler)
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level.upper())
        root.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
