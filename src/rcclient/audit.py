"""Audit logging for local data and sync operations.

Emits structured log events named ``<event_type>.<action>`` that any log
aggregator reading JSON or key=value output can consume.

Configure via config.yaml:
    logging:
      enabled: true  # set to false to disable audit logging
      level: INFO
      format: json  # or 'splunk' for key=value format
      file: ./instance/rcclient.log  # optional
      audit_file: ./instance/audit.log  # optional, audit events only
"""

from typing import Any

import structlog

# Module state
_logger: structlog.BoundLogger | None = None
_enabled: bool = True


def configure(enabled: bool = True) -> None:
    """Enable or disable audit events."""
    global _enabled
    _enabled = enabled


def _get_logger() -> structlog.BoundLogger:
    """Get or create the audit logger."""
    global _logger
    if _logger is None:
        _logger = structlog.get_logger("audit")
    return _logger


def _emit(
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """Emit an audit log event.

    Args:
        event_type: Category of event (migration, session, sync, conflict, demo, snapshot)
        action: Specific action (applied, failed, signed_in, resolved, ...)
        **kwargs: Additional event-specific fields
    """
    if not _enabled:
        return

    logger = _get_logger()
    logger.info(
        f"{event_type}.{action}",
        event_type=event_type,
        action=action,
        **kwargs,
    )


# Migration events
def log_migration(from_version: int, to_version: int, applied: list[int]) -> None:
    """Log a completed schema upgrade."""
    _emit(
        "migration",
        "applied",
        from_version=from_version,
        to_version=to_version,
        migrations=",".join(str(v) for v in applied),
    )


def log_migration_failed(from_version: int, to_version: int, error: str) -> None:
    """Log an aborted schema upgrade."""
    _emit(
        "migration",
        "failed",
        from_version=from_version,
        to_version=to_version,
        error=error,
    )


# Session events
def log_sign_in(username: str, success: bool, reason: str | None = None) -> None:
    """Log a sign-in attempt."""
    _emit(
        "session",
        "signed_in" if success else "sign_in_failed",
        user=username,
        reason=reason,
    )


def log_sign_out(username: str | None, reason: str = "explicit") -> None:
    """Log the end of a session."""
    _emit("session", "signed_out", user=username, reason=reason)


# Sync events
def log_sync_cycle(
    reason: str,
    pulled: int,
    pushed: int,
    pending: int,
    error: str | None = None,
) -> None:
    """Log the outcome of one sync cycle."""
    _emit(
        "sync",
        "failed" if error else "completed",
        reason=reason,
        pulled=pulled,
        pushed=pushed,
        pending=pending,
        error=error,
    )


def log_conflict(entity: str, record_id: int, reason: str) -> None:
    """Log a record entering conflict state."""
    _emit("conflict", "detected", entity=entity, record_id=record_id, reason=reason)


def log_conflict_resolved(entity: str, record_id: int, choice: str, user: str | None) -> None:
    """Log a user decision on a conflict."""
    _emit(
        "conflict",
        "resolved",
        entity=entity,
        record_id=record_id,
        choice=choice,
        user=user,
    )


# Demo data events
def log_demo(action: str, counts: dict[str, int]) -> None:
    """Log demo data population or clearing."""
    _emit("demo", action, **counts)


# Snapshot events
def log_snapshot(action: str, name: str, label: str, schema_version: int) -> None:
    """Log a store snapshot being created or restored."""
    _emit("snapshot", action, name=name, label=label, schema_version=schema_version)
