"""Process-wide logging setup.

Each service calls `setup_logging()` once at import of its entry module.
Modules log through `logging.getLogger(__name__)`.
"""

from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS = ("aiormq", "aio_pika", "pymongo", "httpx", "httpcore")


def setup_logging(level: str | int | None = None) -> None:
    """Configure the root logger with a single stderr handler.

    `level` defaults to the LOG_LEVEL environment variable, then INFO.
    Calling it again only updates the level.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, "_movie_events", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._movie_events = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
