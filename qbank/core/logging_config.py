"""Central structured logging configuration using structlog.

Other modules can do:

    from qbank.core.logging_config import get_logger
    logger = get_logger(__name__, submission_id="abc123")

Logs are JSON-formatted by default and include ISO timestamps. The bound
*submission_id* correlates every entry written while one submission moves
through the pipeline.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog

from qbank.core.settings import get_settings

_configured = False


def configure_logging(level: Optional[str] = None, *, json_logs: Optional[bool] = None) -> str:
    """Configure stdlib logging and structlog once per process.

    Explicit arguments win over settings. Returns the effective level name.
    """
    global _configured

    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    level_value = getattr(logging, level_name, logging.INFO)
    if not isinstance(level_value, int):
        level_value = logging.INFO
    use_json = settings.log_json if json_logs is None else json_logs

    # Standard library logging so that structlog ultimately prints via it.
    logging.basicConfig(
        level=level_value,
        format="%(message)s",  # structlog already renders timestamp and level
        stream=sys.stderr,
    )
    logging.getLogger().setLevel(level_value)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer(indent=None, sort_keys=True)
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        cache_logger_on_first_use=False,
    )
    _configured = True
    return level_name


def get_logger(name: str, **bound_values: Any) -> structlog.BoundLogger:
    """Return a structured logger bound with *bound_values* (e.g. submission_id).

    The logger resolves its configuration lazily, so module-level loggers follow
    later calls to configure_logging().
    """
    if not _configured:
        configure_logging()
    return structlog.get_logger(name, logger_name=name, **bound_values)
