"""Structured logging for vmware2xcp."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.logging import RichHandler

ROOT_LOGGER = "vmware2xcp"


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter("%(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger


def set_log_level(level: str) -> None:
    """Set log level (DEBUG, INFO, WARNING, ERROR) on every vmware2xcp logger."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger(ROOT_LOGGER).setLevel(numeric)
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith(ROOT_LOGGER) and isinstance(logger, logging.Logger):
            logger.setLevel(numeric)


def add_file_handler(path: Path | str) -> logging.Handler:
    """Mirror every vmware2xcp logger into a plain-text file.

    The handler sits on the package root logger; module loggers reach it
    through propagation, including those created later. Returns the handler
    so the caller can detach it once the migration attempt is over.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.getLogger(ROOT_LOGGER).addHandler(handler)
    return handler


def remove_file_handler(handler: logging.Handler) -> None:
    logging.getLogger(ROOT_LOGGER).removeHandler(handler)
    handler.close()
