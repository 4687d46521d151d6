"""
logging_config.py — logging setup for the order service

All modules log through ``logging.getLogger(__name__)``; this module wires
the root logger once at startup.

    • Console output on stdout (container friendly)
    • Optional file output when LOG_FILE is set
    • Process ID tagging for multi-worker deployments
    • Quieter third-party loggers (SQLAlchemy, redis, httpx)
"""

import logging
import sys

from . import config

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger. Safe to call more than once."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE))

    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        handlers=handlers,
    )

    for noisy in ("sqlalchemy.engine", "redis", "httpx", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
