"""Root and access logger wiring."""

from __future__ import annotations

import logging
import os
from typing import Mapping

from .structured import JsonFormatter

__all__ = ["setup_logging"]

# Loggers that are too chatty at INFO for a long-running bot.
_QUIET_LOGGERS = ("discord.gateway", "discord.client", "googleapiclient.discovery_cache")


def _ensure_stream_handler(logger: logging.Logger, formatter: logging.Formatter) -> None:
    stream_handler_found = False
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setFormatter(formatter)
            stream_handler_found = True
    if not stream_handler_found:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    *,
    static_fields: Mapping[str, str] | None = None,
    level: str | int | None = None,
    access_logger_name: str = "aiohttp.access",
    access_static_fields: Mapping[str, str] | None = None,
) -> logging.Logger:
    """Configure JSON logging for the bot and web server.

    Parameters
    ----------
    static_fields:
        Fields included with every log event (environment and bot name).
    level:
        Root level; defaults to ``LOG_LEVEL`` or ``INFO``.
    access_logger_name:
        Logger that receives one entry per HTTP request.
    access_static_fields:
        Extra static fields for the access logger, merged over ``static_fields``.

    Returns
    -------
    logging.Logger
        The configured access logger.
    """

    base_static = dict(static_fields or {})

    root_logger = logging.getLogger()
    root_logger.setLevel(_resolve_level(level))
    _ensure_stream_handler(root_logger, JsonFormatter(static=base_static))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    access_static = dict(base_static)
    access_static.update(access_static_fields or {})

    access_logger = logging.getLogger(access_logger_name)
    access_logger.propagate = False
    access_logger.handlers.clear()
    access_handler = logging.StreamHandler()
    access_handler.setFormatter(JsonFormatter(static=access_static))
    access_logger.addHandler(access_handler)
    access_logger.setLevel(logging.INFO)

    return access_logger
