"""
Structured Logging with Structlog.

Call sites log account ids, providers and error classes, never tokens.
redact_secrets is the backstop: any event key that names a credential
is masked before rendering, whatever the caller passed.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from credpool.config import settings

REDACTED = "[redacted]"

# Event keys whose values are credentials
SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "client_secret",
        "api_key",
        "authorization",
        "password",
        "accessToken",
        "refreshToken",
        "clientSecret",
    }
)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential values, including inside one level of nested dicts."""
    for key, value in event_dict.items():
        if key in SECRET_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if k in SECRET_KEYS and v is not None else v
                for k, v in value.items()
            }
    return event_dict


def _renderer() -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    A JSON line looks like:
    {
        "event": "token_refresh_succeeded",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "credpool.services.pool_manager",
        "service": "credential-pool-api",
        "account_id": "3f0c...",
        "provider": "qwen",
        "request_id": "..."
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """
    Bind context variables for every log line inside the block.

    Usage:
        with log_context(request_id="req-123"):
            logger.info("account_selected", account_id=account_id)
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
