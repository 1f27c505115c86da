"""Logging helpers shared by the relay entry points."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(log_dir: Optional[str], level: int = logging.INFO) -> logging.Logger:
    """Configure console and rotating file logging for the ``chat_relay`` package.

    Calling this more than once is harmless; handlers are only attached the
    first time.
    """
    logger = logging.getLogger("chat_relay")
    logger.setLevel(level)
    if getattr(logger, "_chat_relay_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path / "chat_relay.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger._chat_relay_configured = True  # type: ignore[attr-defined]
    logger.debug("Logging configured (log_dir=%s)", log_dir)
    return logger
