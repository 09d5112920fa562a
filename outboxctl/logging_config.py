import logging
import logging.config
import sys
from typing import Any, Dict

import structlog

# Secrets to redact
SENSITIVE_KEYS = ("password", "token", "authorization", "secret", "api_key", "apikey")

# Keys structlog itself adds; never redacted.
_RESERVED = {"event", "level", "logger", "timestamp", "exception"}


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(s in lowered for s in SENSITIVE_KEYS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: "[REDACTED]" if _is_sensitive(str(k)) else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def redact_sensitive(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor masking credential-looking fields, nested ones included."""
    for k in list(event_dict):
        if k in _RESERVED:
            continue
        if _is_sensitive(k):
            event_dict[k] = "[REDACTED]"
        else:
            event_dict[k] = _redact(event_dict[k])
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True):
    """
    Configure structured logging for the worker and CLI.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: One JSON object per line when True, console rendering otherwise.
    """
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"format": "%(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "plain",
                "stream": sys.stderr,
            },
        },
        "loggers": {
            "": {
                "level": log_level,
                "handlers": ["console"],
            },
            # request lines from the email client are noise at INFO
            "httpx": {"level": "WARNING"},
        },
    })

    return structlog.get_logger("outboxctl")

