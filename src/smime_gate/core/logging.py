"""Logging configuration for smime-gate.

This module provides structlog configuration and utility functions
for keeping mail addresses and rule credentials out of log output.
"""

import logging
import re
from collections.abc import MutableMapping
from typing import Any

import structlog

# Event keys that may carry credentials; their values are masked
SECRET_KEYS = frozenset({"passphrase", "password", "pass", "secret"})
REDACTED = "**********"


def sanitize_for_log(text: str, max_length: int = 100) -> str:
    """Remove control characters and limit length for safe logging.

    Envelope addresses come straight from the SMTP client, so they are
    passed through here before being attached to a log event.

    Args:
        text: The text to sanitize.
        max_length: Maximum length of returned string.

    Returns:
        Sanitized text safe for logging.
    """
    if not text:
        return ""
    # ANSI codes first, the control char pass would strip their ESC
    text = re.sub(r"\x1b\[[0-9;]*m", "", text)
    text = re.sub(r"[\x00-\x1f\x7f]", "", text)
    return text[:max_length]


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking any credential-looking keys."""
    for key in event_dict:
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(json_format: bool = False, debug: bool = False) -> None:
    """Configure structlog for the application.

    Args:
        json_format: If True, output JSON logs (for production).
        debug: If True, enable DEBUG level logging.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
