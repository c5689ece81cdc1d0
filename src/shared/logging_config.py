"""Structured logging setup for Hearth processes"""

import os
import sys
import logging
import structlog
from typing import Optional

# Transcripts and room documents can be long; keep log lines readable
MAX_FIELD_CHARS = 500


def compact_event_fields(logger, method_name, event_dict):
    """Replace raw audio with its size and clip oversized strings."""
    for key, value in list(event_dict.items()):
        if isinstance(value, (bytes, bytearray)):
            event_dict[key] = f"<{len(value)} bytes>"
        elif isinstance(value, str) and key != "event" and len(value) > MAX_FIELD_CHARS:
            event_dict[key] = value[:MAX_FIELD_CHARS] + "..."
    return event_dict


def configure_logging(service_name: str, level: Optional[str] = None, log_format: Optional[str] = None):
    """Configure structlog for one Hearth process and return a bound logger.

    Args:
        service_name: Bound to every event as ``service``
        level: Log level (default: LOG_LEVEL env var, then INFO)
        log_format: "json" or "console" (default: LOG_FORMAT env var, then json)
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = log_format or os.getenv("LOG_FORMAT", "json")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        compact_event_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name)

    return structlog.get_logger(service_name)
