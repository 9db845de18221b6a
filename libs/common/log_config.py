"""Structured logging setup.

Modules only ever call ``structlog.get_logger(__name__)``; the composition
root (chat handler, evaluation runner, tests) calls ``configure_logging`` once.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

from libs.common.settings import get_settings


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog on top of the stdlib logging module.

    Args:
        level: Log level name; defaults to ``Settings.log_level``
        json_logs: Render JSON lines instead of console output; defaults to
            ``Settings.log_json``
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.log_json

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
