"""Structured logging configuration (Splunk key=value or JSON).

Every line logged while a sync cycle runs carries the cycle's context
(``cycle``, ``reason``) through structlog's contextvars, including lines
logged from the worker threads that make the HTTP calls.
"""

import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import structlog

from . import audit
from .config import Config

# Never written to a log line, whatever the format
SENSITIVE_KEYS = frozenset({"password", "password_hash", "token", "authorization"})
REDACTED = "***"

# stdlib logger the audit module writes through
AUDIT_LOGGER = "audit"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def redact_secrets(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mask credentials passed as log fields."""
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _splunk_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        value = json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))
    else:
        value = str(value)
    if " " in value or "=" in value or '"' in value:
        return '"' + value.replace('"', '\\"') + '"'
    return value


def splunk_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> str:
    """Format log entries in Splunk key=value format.

    Format: 2026-01-08T12:15:00Z INFO  sync_completed cycle=3 pulled=2 reason=tick
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    level = event_dict.pop("level", "INFO").upper()
    event = event_dict.pop("event", "")

    kv_str = " ".join(
        f"{key}={_splunk_value(value)}"
        for key, value in sorted(event_dict.items())
        # Skip internal structlog keys
        if not key.startswith("_")
    )

    if kv_str:
        return f"{timestamp} {level:5} {event} {kv_str}"
    return f"{timestamp} {level:5} {event}"


def json_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Format log entries as JSON."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    event_dict["level"] = event_dict.get("level", "info").upper()
    return event_dict


@contextmanager
def sync_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def _route_audit(config: Config, level: int) -> None:
    """Send audit events to their own file as well, when configured."""
    audit_logger = logging.getLogger(AUDIT_LOGGER)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    if config.logging.audit_file:
        config.logging.audit_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.logging.audit_file)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.setLevel(level)
        audit_logger.addHandler(handler)

    audit.configure(enabled=config.logging.enabled)


def configure_logging(config: Config) -> structlog.BoundLogger:
    """Configure structured logging based on config.

    Args:
        config: Application configuration.

    Returns:
        Configured structlog logger.
    """
    log_level = _LEVELS.get(config.logging.level, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if config.logging.file:
        config.logging.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.logging.file))

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )
    # Connection pool chatter only matters when debugging
    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        redact_secrets,
    ]
    if config.logging.format == "json":
        processors = [*shared, json_processor, structlog.processors.JSONRenderer()]
    else:  # splunk format
        processors = [*shared, splunk_processor]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _route_audit(config, log_level)

    return structlog.get_logger()
