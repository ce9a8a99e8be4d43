"""Structured logging setup."""

import sys

import structlog

LEVELS = {
    "INFO": 20,
    "DEBUG": 10,
    "TRACE": 5,
}


def configure_logging(level_name: str) -> None:
    """Render JSON lines to stderr, dropping events below ``level_name``."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(LEVELS.get(level_name, 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Level changes after reload_config() take effect on existing loggers
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger for ``name`` at the configured ``advanced.log_level``."""
    from featurepkg.config import get_config

    configure_logging(get_config().advanced.log_level)
    return structlog.get_logger(name)
