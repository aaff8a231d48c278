"""Structured logging setup shared by the probe endpoint and the scheduler."""

import logging

import structlog


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog once per process."""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=numeric_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Request-level chatter from the transport libraries drowns the probe's own events.
    for name in ("httpx", "httpcore", "hpack", "h2", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)
