"""Exception hierarchy for the client core.

Local store errors are raised to the direct caller. Remote errors are
raised by the API client and converted into journal state and events by
the sync engine.
"""

from typing import Any


class RCClientError(Exception):
    """Base class for all client core errors."""


# Local store


class RecordValidationError(RCClientError):
    """Input fails local invariants (negative amount, unknown status, ...)."""

    def __init__(self, entity: str, errors: list[dict[str, Any]] | str):
        self.entity = entity
        self.errors = errors
        super().__init__(f"Invalid {entity} record: {errors}")


class ConstraintError(RCClientError):
    """Uniqueness violation on commit."""

    def __init__(self, entity: str, detail: str):
        self.entity = entity
        self.detail = detail
        super().__init__(f"Constraint violated on {entity}: {detail}")


class RecordNotFoundError(RCClientError):
    """Record does not exist or is a tombstone."""

    def __init__(self, entity: str, record_id: int):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} record {record_id} not found")


class StorageError(RCClientError):
    """Local backing store problem."""


class StorageUnavailableError(StorageError):
    """Store closed, quarantined or missing."""


class StorageFullError(StorageError):
    """The backing store ran out of space."""


class MigrationFailed(StorageError):
    """A schema upgrade aborted and was rolled back."""

    def __init__(self, from_version: int, to_version: int, cause: BaseException):
        self.from_version = from_version
        self.to_version = to_version
        self.cause = cause
        super().__init__(
            f"Migration from v{from_version} to v{to_version} failed: {cause}"
        )


class SnapshotNotFoundError(StorageError):
    """No snapshot with the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Snapshot {name} not found")


# Session


class UnauthenticatedError(RCClientError):
    """Session absent, expired or rejected by the server."""


class ForbiddenError(RCClientError):
    """Principal lacks the required permission."""

    def __init__(self, permission: str, message: str | None = None):
        self.permission = permission
        super().__init__(message or f"Permission required: {permission}")


# Remote


class RemoteError(RCClientError):
    """Error response or failure talking to the remote API."""

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        self.status = status
        self.body = body
        super().__init__(message)


class TransientRemoteError(RemoteError):
    """Timeouts, connection failures and 5xx responses. Retried with backoff."""


class RejectedError(RemoteError):
    """The server refused the request for a reason other than staleness."""


class StaleRecordError(RemoteError):
    """The server holds a newer version than the one the request was based on."""

    def __init__(
        self,
        server_version: int | None,
        server_record: dict[str, Any] | None = None,
        body: Any = None,
    ):
        self.server_version = server_version
        self.server_record = server_record
        super().__init__(
            f"Stale write, server is at version {server_version}", status=409, body=body
        )


class RateLimitedError(RemoteError):
    """Too many requests. Callers wait ``retry_after`` seconds."""

    def __init__(self, retry_after: float, body: Any = None):
        self.retry_after = retry_after
        super().__init__(f"Rate limited, retry after {retry_after:.0f}s", status=429, body=body)


class DemoDataRefused(RCClientError):
    """Demo population is not allowed in the current store state."""
