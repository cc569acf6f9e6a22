"""Logging for ``ledger_sense``: one stream handler on the package logger.

Library modules only call ``get_logger("ledger_sense.<module>")``; the CLI
calls ``configure_logging`` once. The openai SDK and its httpx transport log
every chat request at INFO, so they are held at WARNING unless DEBUG output
was asked for.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

PACKAGE_LOGGER = "ledger_sense"
LEVEL_ENV = "LEDGER_SENSE_LOG_LEVEL"
TRANSPORT_LOGGERS: tuple[str, ...] = ("openai", "httpx", "httpcore")

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_CONFIGURED = False


def resolve_level(level: int | str | None) -> int:
    """Explicit level, else ``LEDGER_SENSE_LOG_LEVEL``, else INFO."""

    if level is None:
        level = os.getenv(LEVEL_ENV) or logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    numeric = logging.getLevelName(name)
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_logging(level: int | str | None = None, *, stream: IO[str] = sys.stderr) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved = resolve_level(level)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.handlers = [h for h in logger.handlers if not isinstance(h, logging.NullHandler)]
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False

    transport_level = resolved if resolved <= logging.DEBUG else logging.WARNING
    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    pkg = logging.getLogger(PACKAGE_LOGGER)
    if not _CONFIGURED and not pkg.handlers:
        pkg.addHandler(logging.NullHandler())
    return logging.getLogger(name)
