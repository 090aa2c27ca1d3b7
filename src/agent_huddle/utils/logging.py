"""Structured logging configuration with secret sanitization.

Every module logs through ``structlog.get_logger()`` with snake_case event
names. This module wires those loggers into the standard library handlers:
- JSON output for aggregation, colored console output for development
- Secrets redacted from every event before rendering
- Per-event context (channel, thread) bound through contextvars
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from enum import StrEnum
from pathlib import Path
from typing import Any, cast

import structlog

from agent_huddle.utils.security import SecretRedactor


class LogFormat(StrEnum):
    """Log output format options."""

    JSON = "json"
    CONSOLE = "console"


class LogLevel(StrEnum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_redactor: SecretRedactor | None = None


def _get_redactor() -> SecretRedactor:
    global _redactor
    if _redactor is None:
        _redactor = SecretRedactor()
    return _redactor


def sanitize_log_value(value: Any) -> Any:
    """Recursively redact secrets from a log value.

    Chat text and subprocess output both end up in log fields, and either
    can carry tokens pasted by a teammate.

    Args:
        value: Value to sanitize (nested dict/list/tuple/str)

    Returns:
        The same structure with secrets replaced.
    """
    redactor = _get_redactor()

    if isinstance(value, str):
        return redactor.redact(value)
    if isinstance(value, dict):
        return {k: sanitize_log_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_log_value(v) for v in value)
    return value


def secret_sanitizer(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts secrets from every log entry."""
    return cast(MutableMapping[str, Any], sanitize_log_value(event_dict))


def add_service_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Stamp each entry with the service name and version."""
    event_dict["service"] = "agent-huddle"

    try:
        from agent_huddle._version import __version__

        event_dict["version"] = __version__
    except (ImportError, RuntimeError):
        pass

    return event_dict


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    log_format: LogFormat | str = LogFormat.JSON,
    file_path: Path | str | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structlog and the stdlib handlers behind it.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        file_path: Path to log file (if file logging enabled)
        file_enabled: Whether to enable file logging

    Example:
        configure_logging(level="DEBUG", log_format="console")
    """
    if isinstance(level, str):
        level = LogLevel(level.upper())
    if isinstance(log_format, str):
        log_format = LogFormat(log_format.lower())

    numeric_level = getattr(logging, level.value)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_sanitizer,
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == LogFormat.JSON:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True, exception_formatter=structlog.dev.plain_traceback
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    handlers.append(console_handler)

    if file_enabled and file_path:
        try:
            file_path = Path(file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(file_path)
            file_handler.setLevel(numeric_level)
            handlers.append(file_handler)
        except OSError as e:
            # Console output still works, keep going without the file
            logging.getLogger("agent_huddle.logging").warning(
                "Could not create log file %s: %s", file_path, e
            )

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )


def bind_context(**kwargs: Any) -> None:
    """Bind contextual variables for all subsequent log calls in this task.

    Example:
        bind_context(channel="C123", thread_ts="1700000000.000100")
        log.info("routing_event")  # Includes channel and thread_ts
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound contextual variables."""
    structlog.contextvars.clear_contextvars()
