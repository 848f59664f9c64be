"""
Logging setup shared by the API, services and maintenance scripts.

Call ``setup_logging()`` once at process start; modules then grab their own
logger with ``get_logger(__name__)``.
"""

import logging
import sys

from foldly.config import config

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_NOISY_LOGGERS = ("sqlalchemy.engine", "asyncio", "aiosqlite", "multipart")

_configured = False


def setup_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("foldly")
    root.setLevel(level or config.LOG_LEVEL)
    root.addHandler(handler)
    root.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not name.startswith("foldly"):
        name = f"foldly.{name}"
    return logging.getLogger(name)
