"""
Structured logging configuration using structlog.
JSON lines in production, coloured console when DEBUG is set.
Both the API and the rq worker call setup_logging() once at startup.
"""

import logging
import sys
from typing import Optional

import structlog

from docledger.config import settings

# Libraries that log every page or job at INFO
NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "pdfminer": logging.WARNING,
    "pypdf": logging.ERROR,
    "PIL": logging.WARNING,
    "rq.worker": logging.WARNING,
}


def _add_service(_, __, event_dict):
    event_dict.setdefault("service", settings.APP_NAME)
    return event_dict


def setup_logging(component: Optional[str] = None) -> None:
    """
    Configure structlog and route stdlib logging through it.
    ``component`` ("api", "worker") is bound to every event.
    """

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DB_ECHO else logging.WARNING
    )

    structlog.contextvars.clear_contextvars()
    if component:
        structlog.contextvars.bind_contextvars(component=component)
