"""
knowledge_base/core/logger.py

Centralised logging configuration.
Every module should obtain its logger via:

    from knowledge_base.core.logger import get_logger
    logger = get_logger(__name__)

Records go to stdout and, when ``settings.log_file`` is set, to a
rotating file next to the app data. Provider credentials are masked
before any handler sees them, since API keys travel with every
embedding call.
"""

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from knowledge_base.core.config import settings

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

#: Bearer tokens and sk-style keys.
_SECRET = re.compile(r"(Bearer\s+|sk-)[A-Za-z0-9._\-]{4,}")

#: Third-party loggers that are chatty at INFO.
_QUIET = ("uvicorn.access", "httpx", "httpcore", "chromadb", "sentence_transformers")


class RedactSecretsFilter(logging.Filter):
    """Replace credentials in the rendered message with a fixed marker."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET.sub(lambda m: m.group(1) + "***", message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


def _level() -> int:
    if settings.debug:
        return logging.DEBUG
    level = logging.getLevelName(settings.log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def _handlers() -> list:
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)

    stream = logging.StreamHandler(sys.stdout)
    handlers: list = [stream]
    if settings.log_file:
        path = Path(settings.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RedactSecretsFilter())
    return handlers


def _configure_root_logger() -> None:
    """Configure the root logger once at import time."""
    root = logging.getLogger()
    if root.handlers:
        # Already configured (e.g. by a test framework) — leave it alone.
        return

    root.setLevel(_level())
    for handler in _handlers():
        root.addHandler(handler)

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)


_configure_root_logger()


def get_logger(name: str) -> logging.Logger:
    """Return a named logger."""
    return logging.getLogger(name)
