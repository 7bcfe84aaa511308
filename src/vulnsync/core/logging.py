"""structlog setup for command line runs."""

import logging

import structlog


def configure_logging(level: str = "info", json: bool = False) -> None:
    """Configure structlog processors and the minimum log level.

    Args:
        level: Minimum level name ("debug", "info", "warning", "error")
        json: Render JSON lines instead of the console renderer
    """
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=False,
    )
