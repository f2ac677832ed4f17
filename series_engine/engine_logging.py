"""
Central logging configuration for series_engine.

Every record emitted while an operation runs on behalf of a series is
stamped with that series' slug, so interleaved concurrent materializations
can be told apart in the console output.
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

from colorlog import ColoredFormatter

# Slug of the series the current task is working on
series_slug_var: ContextVar[str] = ContextVar("series_slug", default="")

NO_SERIES = "-"

ENGINE_MODULES = [
    "series_engine",
    "series_engine.recurrence.pattern_generator",
    "series_engine.domain.materializer",
    "series_engine.domain.series_lifecycle",
    "series_engine.stores.memory",
    "series_engine.core.async_utils",
    "series_engine.core.config_manager",
]

# Readable colorized format: HH:MM:SS  LEVEL   [slug] logger.name: message
CONSOLE_FORMAT = (
    "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s [%(series_slug)s] %(name)s: %(message)s"
)

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


def get_series_slug() -> str:
    """Return the series slug bound to the current context, or ``"-"``."""
    return series_slug_var.get() or NO_SERIES


@contextmanager
def series_context(slug: str) -> Iterator[None]:
    """Bind ``slug`` to log records emitted inside the block.

    Tasks created inside the block inherit the binding.
    """
    token = series_slug_var.set(slug)
    try:
        yield
    finally:
        series_slug_var.reset(token)


class SeriesContextFilter(logging.Filter):
    """Add the current series slug to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.series_slug = get_series_slug()
        return True


def _has_series_filter(handler: logging.Handler) -> bool:
    return any(isinstance(f, SeriesContextFilter) for f in handler.filters)


def _make_console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt="%H:%M:%S", log_colors=LOG_COLORS))
    handler.addFilter(SeriesContextFilter())
    return handler


def init_logging(level_name: Optional[str] = None) -> None:
    """Initialize root logging to stream colorized output to the console.

    Honors SERIES_ENGINE_DEBUG (truthy values: "1", "true", "yes", "on"),
    which forces DEBUG verbosity.
    """
    debug_env = os.environ.get("SERIES_ENGINE_DEBUG", "")
    if debug_env.strip().lower() in ("1", "true", "yes", "on"):
        level_name = "DEBUG"

    level = logging.INFO
    if isinstance(level_name, str):
        level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    if not root.handlers:
        root.addHandler(_make_console_handler(logging.NOTSET))
    root.setLevel(level)
    logging.getLogger(__name__).debug("Logging initialized at level %s", logging.getLevelName(level))


def configure_engine_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Configure logging levels for series_engine modules.

    Args:
        debug_mode: Whether to enable debug logging for series_engine modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        SERIES_ENGINE_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        SERIES_ENGINE_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("SERIES_ENGINE_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("SERIES_ENGINE_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    # Preserve handlers installed elsewhere; they only need the slug filter
    if not root_logger.handlers:
        root_logger.addHandler(_make_console_handler(root_level))
    else:
        for existing_handler in root_logger.handlers:
            if not _has_series_filter(existing_handler):
                existing_handler.addFilter(SeriesContextFilter())

    logger_config: dict[str, int] = {
        "asyncio": logging.WARNING,
        "icalendar": logging.INFO,
    }

    engine_level = logging.DEBUG if final_debug else logging.INFO
    for module in ENGINE_MODULES:
        logger_config[module] = engine_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for series_engine modules")
    else:
        root_logger.info("Production logging configuration applied")


def reset_logging_to_debug() -> None:
    """Reset root and engine loggers to DEBUG level for troubleshooting."""
    logging.getLogger().setLevel(logging.DEBUG)
    for logger_name in [*ENGINE_MODULES, "asyncio"]:
        logging.getLogger(logger_name).setLevel(logging.DEBUG)

    logging.getLogger().info("All loggers reset to DEBUG level for troubleshooting")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}

    for logger_name in ["series_engine", "series_engine.domain.materializer", "asyncio"]:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)

    return status
