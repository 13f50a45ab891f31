"""Unified logging configuration for the workflow engine."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from . import settings

# Prevent duplicate handlers
_configured_loggers: set[str] = set()


def setup_logger(name: str, filename: Optional[str] = None) -> logging.Logger:
    """Setup a logger with console and (optionally) file handlers.

    A file handler is only attached when LOG_DIR is configured.

    Args:
        name: Logger name (e.g., 'flowengine', 'flowengine.engine')
        filename: Log file name (e.g., 'engine.log')

    Returns:
        Configured logger instance
    """
    if name in _configured_loggers:
        return logging.getLogger(name)

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False  # Prevent duplicate logs

    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] %(message)s"
    ))
    logger.addHandler(sh)

    if settings.LOG_DIR and filename:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / filename, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(
            "%(asctime)s [%(name)s] [%(levelname)s] %(message)s"
        ))
        logger.addHandler(fh)

    _configured_loggers.add(name)
    return logger


def configure_logging() -> logging.Logger:
    """Configure the package root logger (engine.log when LOG_DIR is set)."""
    return setup_logger("flowengine", "engine.log")
