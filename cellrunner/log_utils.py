import logging
import sys
from typing import Union

import structlog


def setup_logging(log_level: Union[int, str] = logging.INFO, json_logs: bool = False) -> None:
    """
    Route both structlog and vanilla logging through the same structlog processors so that
    `logger.info("...", extra={...})` and `structlog_logger.info("...", key=value)` render the
    same way, as colored console lines or one JSON object per line.
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        # Pull the extra={} kwargs from vanilla logging calls into the event dict
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_logs:
        renderer = structlog.processors.JSONRenderer()
        final_processors = [structlog.processors.format_exc_info, renderer]
    else:
        renderer = structlog.dev.ConsoleRenderer()
        final_processors = [renderer]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + final_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # websockets logs every frame at debug
    logging.getLogger("websockets").setLevel(max(log_level, logging.INFO))
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
