"""
Logging Configuration for the Catalog Service

structlog renders every record, including the ones emitted through the
stdlib tree by uvicorn, gunicorn and SQLAlchemy. Each line is stamped
with the service name, environment and the process component (api or
seed); request-scoped keys such as request_id arrive through contextvars.
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter
from structlog.types import Processor

from catalog.config.settings import Settings, get_settings

# Third-party loggers routed through the structlog formatter
ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn.error", "gunicorn.access")


def _service_stamp(settings: Settings, component: str) -> Processor:
    def stamp(logger, method_name, event_dict):
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        event_dict.setdefault("component", component)
        return event_dict

    return stamp


def _shared_processors(settings: Settings, component: str) -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        _service_stamp(settings, component),
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(settings: Settings) -> Processor:
    if settings.monitoring.log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(log_level: Optional[str] = None, component: str = "api") -> None:
    """
    Configure structured logging for one process.

    Args:
        log_level: Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)
        component: Stamped on every line to tell the API from the seed job
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    numeric_level = getattr(logging, level, logging.INFO)
    shared = _shared_processors(settings, component)

    structlog.configure(
        processors=shared + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processor=_renderer(settings), foreign_pre_chain=shared))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for name in ROUTED_LOGGERS:
        routed = logging.getLogger(name)
        routed.handlers = [handler]
        routed.propagate = False
        routed.setLevel(numeric_level)

    # Statement echo propagates to the root handler
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database.echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
    )
