import logging
from typing import Optional

import structlog

from merenda.config import settings


def setup_logging(level: Optional[str] = None, json_logs: Optional[bool] = None):
    """Configure structlog for the API and the operator CLIs.

    The CLIs pass ``level`` from ``--verbose`` and ``json_logs`` when the
    output is meant for log shipping rather than a terminal.
    """
    if json_logs is None:
        json_logs = settings.ENVIRONMENT != "development"
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # SQLAlchemy logs through stdlib logging; keep it quiet unless debugging
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )
