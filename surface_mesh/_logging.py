"""Logger factory shared by all modules (log.txt hook)."""

from __future__ import annotations

import logging
from pathlib import Path

_LOG_PATH = Path(__file__).resolve().parents[1] / "log.txt"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` writing to ``log.txt`` unless configured."""

    logger = logging.getLogger(name)
    if logger.handlers:  # pragma: no cover - logger configured by application
        logger.addHandler(logging.NullHandler())
        return logger

    logger.setLevel(logging.INFO)
    try:
        _LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(_LOG_PATH, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    except OSError:  # pragma: no cover - best effort logging setup
        logger.addHandler(logging.NullHandler())
    return logger


__all__ = ["get_logger"]
