"""
Logging and Metrics Configuration for the Sales Rollup Engine

Structured logging shared by the builder, the rebuild pipeline and the
planner. Rebuild runs bind ``run_id`` and ``stage`` as context variables
(see ``run_context``), so every line logged while a unit executes carries
them without the builder knowing about runs.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from prometheus_client import start_http_server
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter

from sales_rollups.config.settings import get_settings

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("asyncio", "aiosqlite", "httpx")


def _add_app_context(app_name: str, environment: str):
    def processor(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("app", app_name)
        event_dict.setdefault("env", environment)
        return event_dict

    return processor


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Configure structured logging for the engine.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
    """
    settings = get_settings()
    level = log_level or settings.monitoring.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        _add_app_context(settings.app_name, settings.app_env),
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.monitoring.log_format == "json":
        renderer = JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database.echo else logging.WARNING
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
    )


@contextmanager
def run_context(**values: Any) -> Iterator[None]:
    """Bind values (run_id, stage, ...) to every log line in this context."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


# =============================================================================
# METRICS ENDPOINT
# =============================================================================

def start_metrics_server(port: Optional[int] = None) -> int:
    """Expose the prometheus_client registry over HTTP; returns the port."""
    port = port or get_settings().monitoring.prometheus_port
    start_http_server(port)
    structlog.get_logger(__name__).info("Metrics endpoint started", port=port)
    return port
