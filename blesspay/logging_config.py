"""
Structured logging setup.

structlog hands its event dicts to the standard library root logger so that
uvicorn, SQLAlchemy and requests logs share one stream. With ``LOG_JSON`` set
the stream is JSON lines (python-json-logger), otherwise plain key=value text.
"""
import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger

from blesspay.config import Settings, get_settings


def setup_logging(settings: Settings = None) -> None:
    settings = settings or get_settings()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.log_json:
        # event dict travels as `extra`, JsonFormatter flattens it
        processors.append(structlog.stdlib.render_to_log_kwargs)
        formatter = jsonlogger.JsonFormatter(
            "%(message)s", rename_fields={"message": "event"}
        )
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
        formatter = logging.Formatter("%(message)s")

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, json=settings.log_json
    )
