"""Log file setup for the donation sink."""

from __future__ import annotations

import logging
from pathlib import Path

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handlers: dict[str, logging.Handler] = {}


def configure_logging(log_path: str | Path, *, level: int = logging.INFO) -> logging.Logger:
    """Attach an append-mode file handler to the ``nut_sink`` logger.

    Safe to call repeatedly; each path gets one handler per process.
    """
    logger = logging.getLogger("nut_sink")
    logger.setLevel(level)

    key = str(Path(log_path).resolve())
    if key not in _handlers:
        # delay=True: an unwritable path only fails at emit time, where
        # logging's handleError absorbs it
        handler = logging.FileHandler(key, mode="a", encoding="utf-8", delay=True)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        _handlers[key] = handler
    return logger
