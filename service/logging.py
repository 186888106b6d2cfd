"""
Logging configuration for the trend data service.

Two destinations:
  - File: always DEBUG, one file per run in <data_dir>/logs/
  - Console: DEBUG if --verbose, WARNING+ otherwise
  - Format: "timestamp | level | name | request_id | message"
  - Config console_format options:
    - "simple" — (default) bare messages for DEBUG/INFO, [LEVEL] prefix for WARNING+
    - "full"   — same structured format as the file handler
    - "clean"  — no console output at all (file logging still active)

Library modules only call ``logging.getLogger("trendview")``; handlers are
attached here, by the application entry point.
"""

import contextvars
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "trendview"

# Tags used with ``extra=tagged(...)`` so handlers can pick out categories.
LOG_TAGS = frozenset({
    "progress",   # Progress updates forwarded from a fetch
    "cache",      # Cache hits / partial hits / evictions
    "fetch",      # Table-group fetch results
    "error",      # log_error(): real errors with context/stack traces
})


def tagged(tag: str) -> dict:
    """Return ``extra`` dict for logger calls: ``logger.debug("...", extra=tagged("x"))``."""
    return {"log_tag": tag}


# Module-level state (shared across re-inits)
_request_filter: Optional["_RequestFilter"] = None
_current_log_file: Optional[Path] = None


# Request id of the current context; each thread (and each pool worker
# started under copy_context()) sees its own value.
_request_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trendview_request_id", default=""
)


class _RequestFilter(logging.Filter):
    """Injects the active request_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get() or "-"
        if not hasattr(record, "log_tag"):
            record.log_tag = ""
        return True


class _ConsoleFormatter(logging.Formatter):
    """Console formatter: shows [LEVEL] prefix only for WARNING and above."""

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            return f"  [{record.levelname}] {record.getMessage()}"
        return f"  {record.getMessage()}"


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure the trendview logger.

    Args:
        verbose: If True, show DEBUG level on console; otherwise WARNING+ only.
        log_dir: Directory for the log file (default ``<data_dir>/logs``).

    Returns:
        Configured logger instance.
    """
    global _request_filter, _current_log_file
    import config as _config

    log_dir = Path(log_dir) if log_dir is not None else _config.get_data_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # Capture everything, filter at handler level

    # Clear existing handlers (in case of re-init)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    # Reuse the filter instance so request_id survives re-inits
    if _request_filter is None:
        _request_filter = _RequestFilter()
    if _request_filter not in logger.filters:
        logger.addFilter(_request_filter)

    run_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"trendview_{run_timestamp}.log"
    _current_log_file = log_file
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)

    console_format = _config.get("console_format", "simple")
    if console_format != "clean":
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        if console_format == "full":
            console_handler.setFormatter(file_format)
        else:
            console_handler.setFormatter(_ConsoleFormatter())
        logger.addHandler(console_handler)

    logger.info("=" * 60)
    logger.info(f"Run started at {datetime.now().isoformat()}")
    logger.info(f"Log file: {log_file}")
    return logger


def get_logger() -> logging.Logger:
    """Get the trendview logger (handlers may not be attached yet)."""
    return logging.getLogger(LOGGER_NAME)


def get_current_log_file() -> Optional[Path]:
    """Path of the log file opened by the last setup_logging() call."""
    return _current_log_file


def set_request_id(request_id: str) -> contextvars.Token:
    """Set the request ID included in this context's log lines ("" clears it).

    Returns:
        Token for ``reset_request_id()`` to restore the previous value.
    """
    global _request_filter
    if _request_filter is None:
        # Logger not set up yet, create filter so it's ready when logging starts
        _request_filter = _RequestFilter()
        logging.getLogger(LOGGER_NAME).addFilter(_request_filter)
    return _request_id.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    """Restore the request ID that was active before ``set_request_id()``."""
    _request_id.reset(token)


def get_request_id() -> str:
    """Request ID of the current context ("" when none is set)."""
    return _request_id.get()


def log_error(
    message: str,
    exc: Optional[BaseException] = None,
    context: Optional[dict] = None,
) -> None:
    """Log an error with full details including stack trace.

    Args:
        message: Error description
        exc: Optional exception to include stack trace from
        context: Optional dict of additional context (request, table, tags)
    """
    logger = get_logger()

    lines = [message]
    if context:
        lines.append("Context:")
        for key, value in context.items():
            lines.append(f"  {key}: {value}")

    if exc is not None:
        lines.append(f"Exception type: {type(exc).__name__}")
        lines.append(f"Exception message: {exc}")
        if exc.__traceback__ is not None:
            lines.append("Stack trace:")
            lines.append("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))

    logger.error("\n".join(lines), extra=tagged("error"))
